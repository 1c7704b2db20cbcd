"""Client-side billing actions: plan listing, checkout links, customer portal."""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from src.dealboard.auth.schemas import Identity, Subscription
from src.dealboard.billing.plans import PlanDetails
from src.dealboard.core.errors import MalformedResponseError
from src.dealboard.notifications import Notifier
from src.dealboard.remote.gateway import RemoteGateway

logger = structlog.get_logger(__name__)


def _describe(exc: Exception) -> str:
    return getattr(exc, "detail", None) or str(exc) or exc.__class__.__name__


class PlanListing(BaseModel):
    plans: list[PlanDetails] = []
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BillingClient:
    """Billing operations on behalf of the signed-in user.

    Args:
        gateway: RemoteGateway used to invoke the billing server functions.
        notifier: Sink for user-visible outcomes.
        plans_function: Server function returning the plan list.
        portal_function: Server function returning the customer portal link.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        notifier: Notifier,
        *,
        plans_function: str = "list-lemon-squeezy-plans",
        portal_function: str = "get-lemon-squeezy-subscription-portal",
    ) -> None:
        self._gateway = gateway
        self._notifier = notifier
        self._plans_function = plans_function
        self._portal_function = portal_function

    async def list_plans(self) -> PlanListing:
        """Fetch the sellable plans. Accepts a bare array or ``{"plans": [...]}``."""
        try:
            body = await self._gateway.invoke_function(self._plans_function, method="GET")
            items = body.get("plans") if isinstance(body, dict) else body
            if not isinstance(items, list):
                raise MalformedResponseError("Unexpected data format for plans.")
            try:
                plans = [PlanDetails.model_validate(item) for item in items]
            except ValidationError as exc:
                raise MalformedResponseError(f"Unexpected data format for plans: {exc}") from exc
        except Exception as exc:
            detail = _describe(exc)
            logger.error("billing.plans_failed", error=detail)
            self._notifier.error(detail or "Failed to load subscription plans.")
            return PlanListing(error=detail)

        logger.info("billing.plans_loaded", count=len(plans))
        return PlanListing(plans=plans)

    def checkout_url(self, plan: PlanDetails, identity: Identity | None) -> str | None:
        """Checkout link carrying the user id (and email when known) as custom data.

        The webhook relies on ``checkout[custom][user_id]`` to attach the
        subscription to the user.
        """
        if identity is None:
            self._notifier.error("You must be logged in to subscribe.")
            return None

        params: dict[str, str] = {"checkout[custom][user_id]": identity.id}
        if identity.email:
            params["checkout[email]"] = identity.email
        url = httpx.URL(plan.checkout_url).copy_merge_params(params)
        logger.info("billing.checkout_url_built", user_id=identity.id, plan_id=plan.id)
        return str(url)

    async def portal_url(self, subscription: Subscription | None) -> str | None:
        """Ask the server for the customer portal link of the subscription."""
        if subscription is None or not subscription.lemon_squeezy_subscription_id:
            self._notifier.error("No active subscription found to manage.")
            return None

        toast_id = self._notifier.loading("Fetching customer portal link...")
        try:
            data: Any = await self._gateway.invoke_function(
                self._portal_function,
                body={"subscriptionId": subscription.lemon_squeezy_subscription_id},
            )
        except Exception as exc:
            detail = _describe(exc)
            self._notifier.dismiss(toast_id)
            logger.error(
                "billing.portal_failed",
                subscription_id=subscription.lemon_squeezy_subscription_id,
                error=detail,
            )
            self._notifier.error(f"Failed to get portal link: {detail}")
            return None

        self._notifier.dismiss(toast_id)
        portal = data.get("portalUrl") if isinstance(data, dict) else None
        if not portal:
            logger.warning(
                "billing.portal_missing",
                subscription_id=subscription.lemon_squeezy_subscription_id,
            )
            self._notifier.error("Could not retrieve the customer portal link.")
            return None
        return str(portal)
