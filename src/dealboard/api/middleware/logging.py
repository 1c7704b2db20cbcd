"""Request logging for the billing server.

Each request gets a request id bound into structlog's context variables,
so log lines emitted by the webhook handler or the plan catalog carry it
too. An inbound ``X-Request-ID`` is reused; Lemon Squeezy's
``X-Event-Name`` header is bound for webhook deliveries.
"""

from __future__ import annotations

import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
EVENT_NAME_HEADER = "X-Event-Name"
QUIET_PATHS = frozenset({"/health", "/metrics"})


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        context = {"request_id": request_id, "path": request.url.path}
        event_name = request.headers.get(EVENT_NAME_HEADER)
        if event_name:
            context["event_name"] = event_name

        started = time.monotonic()
        with structlog.contextvars.bound_contextvars(**context):
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "request.crashed",
                    method=request.method,
                    elapsed_ms=_elapsed_ms(started),
                )
                raise

            response.headers[REQUEST_ID_HEADER] = request_id
            status = response.status_code
            if status >= 500:
                emit = logger.error
            elif status >= 400:
                emit = logger.warning
            elif request.url.path in QUIET_PATHS:
                emit = logger.debug
            else:
                emit = logger.info
            emit(
                "request.finished",
                method=request.method,
                status_code=status,
                elapsed_ms=_elapsed_ms(started),
            )
        return response


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 1)
