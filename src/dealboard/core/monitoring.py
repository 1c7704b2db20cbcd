"""Prometheus metrics for the billing server and the client sync core.

The sync counters are process-wide, so an embedding UI process and the
server expose the same names. HTTP metrics are labelled by route template.
"""

from __future__ import annotations

import time

from prometheus_client import REGISTRY, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

NAMESPACE = "dealboard"
UNMATCHED_ROUTE = "unmatched"

# ── Server ───────────────────────────────────────────────────────────────────

server_requests_total = Counter(
    "server_requests_total",
    "Billing server requests by route and status",
    ["method", "route", "status_code"],
    namespace=NAMESPACE,
)

server_request_seconds = Histogram(
    "server_request_seconds",
    "Billing server latency by route",
    ["method", "route"],
    namespace=NAMESPACE,
    # Plan listing latency includes provider retries.
    buckets=(0.005, 0.025, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 15.0, 30.0),
)

# ── Sync core ────────────────────────────────────────────────────────────────

board_moves_total = Counter(
    "board_moves_total",
    "Optimistic deal moves by outcome",
    ["outcome"],  # committed | rolled_back | aborted
    namespace=NAMESPACE,
)

entitlement_resolutions_total = Counter(
    "entitlement_resolutions_total",
    "Entitlement resolutions by outcome",
    ["outcome"],  # active | inactive | unknown | timeout
    namespace=NAMESPACE,
)

webhook_events_total = Counter(
    "webhook_events_total",
    "Billing webhook deliveries by event and result",
    ["event_name", "result"],
    namespace=NAMESPACE,
)


def route_template(request: Request) -> str:
    """The matched route's path template, or a fixed label for 404s."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ROUTE


class MetricsMiddleware(BaseHTTPMiddleware):
    """Times each request and counts it by route template and status.

    Scrapes of ``/metrics`` are not counted.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            # The route is resolved during call_next, so read it afterwards.
            route = route_template(request)
            server_requests_total.labels(
                method=request.method, route=route, status_code=str(status_code)
            ).inc()
            server_request_seconds.labels(method=request.method, route=route).observe(
                time.perf_counter() - started
            )


def get_metrics_response() -> Response:
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
