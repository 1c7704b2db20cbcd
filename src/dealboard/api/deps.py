"""FastAPI dependency injection for the billing endpoints.

Each dependency builds its collaborators from settings and closes any
HTTP client it opened once the request is done. Tests replace them through
``app.dependency_overrides``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from src.dealboard.billing.plans import LemonSqueezyClient, PlanCatalog
from src.dealboard.billing.webhook import SubscriptionWebhookHandler
from src.dealboard.config import get_settings
from src.dealboard.remote.supabase_gateway import SupabaseGateway


async def get_webhook_handler() -> AsyncGenerator[SubscriptionWebhookHandler, None]:
    """Webhook handler writing through a service-role gateway."""
    settings = get_settings()
    gateway = SupabaseGateway.from_settings(settings, service_role=True)
    try:
        yield SubscriptionWebhookHandler(gateway, settings.LEMONSQUEEZY_WEBHOOK_SECRET)
    finally:
        await gateway.aclose()


async def get_plan_catalog() -> AsyncGenerator[PlanCatalog | None, None]:
    """Plan catalog, or None when the provider API key is not configured."""
    settings = get_settings()
    if not settings.LEMONSQUEEZY_API_KEY:
        yield None
        return
    client = LemonSqueezyClient.from_settings(settings)
    try:
        yield PlanCatalog(
            client,
            settings.LEMONSQUEEZY_PLANS,
            settings.LEMONSQUEEZY_STORE_SUBDOMAIN,
        )
    finally:
        await client.aclose()
