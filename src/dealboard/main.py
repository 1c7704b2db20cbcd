"""ASGI entry point for the billing server.

Serves the Lemon Squeezy webhook receiver and the plan listing the plans
page reads, plus ``/health`` and ``/metrics``. Run with
``uvicorn src.dealboard.main:app``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from src.dealboard.api.middleware.logging import LoggingMiddleware
from src.dealboard.api.v1.router import router as v1_router
from src.dealboard.config import Settings, get_settings
from src.dealboard.core.logging import configure_structlog
from src.dealboard.core.monitoring import MetricsMiddleware, get_metrics_response

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings: Settings = app.state.settings
    configure_structlog(settings)
    if not settings.LEMONSQUEEZY_WEBHOOK_SECRET:
        log.warning("billing.webhook_secret_missing")
    if not settings.LEMONSQUEEZY_API_KEY:
        log.warning("billing.api_key_missing")
    log.info(
        "server.started",
        environment=settings.ENVIRONMENT.value,
        plan_variants=[plan.variant_id for plan in settings.LEMONSQUEEZY_PLANS],
    )
    yield
    log.info("server.stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="Dealboard billing server",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Starlette wraps in reverse: metrics sees the full request, logging sits inside it.
    origins = settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["authorization", "content-type", "apikey", "x-client-info"],
    )
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)
    app.add_api_route(
        "/metrics",
        get_metrics_response,
        methods=["GET"],
        include_in_schema=False,
    )
    return app


app = create_app()
