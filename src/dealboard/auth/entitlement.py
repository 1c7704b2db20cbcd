"""Subscription entitlement resolution with a bounded wait.

Sources, in order:
1. The entitlement server function (bearer token attached by the gateway).
   A body with a ``productInfo`` object is the subscription record.
2. If the function answers with an error status or without ``productInfo``,
   the ``subscriptions`` table: newest row for the user whose status is
   entitled.

Transport failures, malformed bodies and timeouts yield UNKNOWN, never
INACTIVE. Nothing is retried here; retry is the caller's
``refresh_subscription``.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from pydantic import ValidationError

from src.dealboard.auth.schemas import (
    ENTITLED_STATUSES,
    Entitlement,
    EntitlementResult,
    Identity,
    Subscription,
)
from src.dealboard.core.errors import (
    AuthorityError,
    EntitlementTimeoutError,
    MalformedResponseError,
    RemoteError,
)
from src.dealboard.core.monitoring import entitlement_resolutions_total
from src.dealboard.remote.gateway import RemoteGateway

logger = structlog.get_logger(__name__)

SUBSCRIPTIONS_TABLE = "subscriptions"
DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_FUNCTION = "get-lemon-squeezy-subscription-portal"


def _discard_late_result(task: asyncio.Task) -> None:
    """Consume the outcome of a lookup that lost the race so it is not reported as unhandled."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("entitlement.late_result_discarded", error=str(exc))
    else:
        logger.debug("entitlement.late_result_discarded")


class EntitlementResolver:
    """Resolves whether an identity holds an entitled subscription.

    Args:
        gateway: RemoteGateway for the function call and the table fallback.
        timeout_seconds: Upper bound on how long ``resolve`` waits.
        function_name: Name of the entitlement server function.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        function_name: str = DEFAULT_FUNCTION,
    ) -> None:
        self._gateway = gateway
        self._timeout = timeout_seconds
        self._function_name = function_name

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    async def resolve(self, identity: Identity) -> Subscription | None:
        """Return the subscription record for the identity, or None.

        None covers both "no subscription" and "could not tell"; use
        ``resolve_entitlement`` when the difference matters.
        """
        result = await self.resolve_entitlement(identity)
        return result.subscription

    async def resolve_entitlement(self, identity: Identity) -> EntitlementResult:
        """Resolve entitlement, never waiting longer than the timeout.

        On timeout only the wait is abandoned: the lookup task keeps running
        and its eventual result is discarded.
        """
        lookup = asyncio.ensure_future(self._lookup(identity))
        try:
            result = await asyncio.wait_for(asyncio.shield(lookup), timeout=self._timeout)
        except asyncio.TimeoutError:
            lookup.add_done_callback(_discard_late_result)
            error = EntitlementTimeoutError(
                f"entitlement resolution exceeded {self._timeout:g}s"
            )
            entitlement_resolutions_total.labels(outcome="timeout").inc()
            logger.error("entitlement.timeout", user_id=identity.id, timeout=self._timeout)
            return EntitlementResult.unknown(error.detail)
        except RemoteError as exc:
            entitlement_resolutions_total.labels(outcome="unknown").inc()
            logger.error(
                "entitlement.failed",
                user_id=identity.id,
                error=exc.detail,
                error_type=exc.__class__.__name__,
            )
            return EntitlementResult.unknown(exc.detail)
        except Exception as exc:
            entitlement_resolutions_total.labels(outcome="unknown").inc()
            logger.exception("entitlement.unexpected_error", user_id=identity.id)
            return EntitlementResult.unknown(str(exc) or exc.__class__.__name__)

        entitlement_resolutions_total.labels(outcome=result.entitlement.value).inc()
        logger.info(
            "entitlement.resolved",
            user_id=identity.id,
            entitlement=result.entitlement.value,
            source=result.source,
            status=result.subscription.status.value if result.subscription else None,
        )
        return result

    async def _lookup(self, identity: Identity) -> EntitlementResult:
        try:
            body = await self._gateway.invoke_function(self._function_name)
        except AuthorityError as exc:
            logger.warning(
                "entitlement.function_error",
                user_id=identity.id,
                status_code=exc.status_code,
                error=exc.detail,
            )
            return await self._lookup_table(identity)

        product_info = body.get("productInfo") if isinstance(body, dict) else None
        if product_info is None:
            logger.info("entitlement.function_empty", user_id=identity.id)
            return await self._lookup_table(identity)
        return EntitlementResult.from_subscription(
            self._parse(product_info, "function"),
            source="function",
        )

    async def _lookup_table(self, identity: Identity) -> EntitlementResult:
        rows = await self._gateway.select(
            SUBSCRIPTIONS_TABLE,
            filters={
                "user_id": identity.id,
                "status": [s.value for s in sorted(ENTITLED_STATUSES, key=lambda s: s.value)],
            },
            order_by="created_at",
            descending=True,
            limit=1,
        )
        if not rows:
            return EntitlementResult(entitlement=Entitlement.INACTIVE, source="table")
        return EntitlementResult.from_subscription(self._parse(rows[0], "table"), source="table")

    @staticmethod
    def _parse(data: Any, source: str) -> Subscription:
        if not isinstance(data, dict):
            raise MalformedResponseError(f"subscription from {source} is not an object")
        try:
            return Subscription.model_validate(data)
        except ValidationError as exc:
            raise MalformedResponseError(f"invalid subscription from {source}: {exc}") from exc
