"""structlog setup shared by the client core and the billing server.

Production renders one JSON object per line; other environments use the
console renderer. Context bound with ``structlog.contextvars`` (the request
id from the server middleware, for instance) is merged into every event.
"""

from __future__ import annotations

import logging

import structlog

from src.dealboard.config import Environment, Settings, get_settings

# httpx logs every outbound call at INFO.
_MUTED_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def configure_structlog(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    level = settings.LOG_LEVEL.upper()

    logging.basicConfig(format="%(message)s", level=level)
    for name in _MUTED_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.ENVIRONMENT == Environment.production:
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
