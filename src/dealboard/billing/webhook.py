"""Billing provider (Lemon Squeezy) subscription webhook processing.

Verifies the HMAC-SHA256 signature of the raw body before anything else,
then upserts or updates the subscription row keyed by the provider's
subscription id. Rows are written through a service-role RemoteGateway.

Response codes:
- 500 secret not configured, or the store rejected the write
- 400 signature header missing, body not a valid envelope, no custom_data.user_id
- 401 signature mismatch (no write happens)
- 200 processed, or an event this handler does not act on
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.dealboard.core.errors import RemoteError
from src.dealboard.core.monitoring import webhook_events_total
from src.dealboard.remote.gateway import RemoteGateway

logger = structlog.get_logger(__name__)

SUBSCRIPTIONS_TABLE = "subscriptions"
CONFLICT_KEY = "lemon_squeezy_subscription_id"
SIGNATURE_HEADER = "X-Signature"

UPSERT_EVENTS = frozenset({"subscription_created", "subscription_updated"})
CANCEL_EVENT = "subscription_cancelled"


# ── Envelope ────────────────────────────────────────────────────────────────


class WebhookMeta(BaseModel):
    event_name: str
    custom_data: dict[str, Any] | None = None


class SubscriptionAttributes(BaseModel):
    model_config = ConfigDict(extra="allow")

    order_id: int | str | None = None
    product_id: int | str | None = None
    variant_id: int | str | None = None
    product_name: str | None = None
    variant_name: str | None = None
    status: str | None = None
    renews_at: datetime | None = None
    ends_at: datetime | None = None
    trial_ends_at: datetime | None = None
    created_at: datetime | None = None


class WebhookData(BaseModel):
    type: str | None = None
    id: str
    attributes: SubscriptionAttributes = Field(default_factory=SubscriptionAttributes)

    @field_validator("id", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value


class WebhookPayload(BaseModel):
    meta: WebhookMeta
    data: WebhookData


class WebhookResponse(BaseModel):
    status_code: int
    message: str


# ── Signature ───────────────────────────────────────────────────────────────


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    expected = compute_signature(secret, body)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8"))


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _str_or_none(value: Any) -> str | None:
    return str(value) if value is not None else None


# ── Handler ─────────────────────────────────────────────────────────────────


class SubscriptionWebhookHandler:
    """Processes one webhook delivery.

    Args:
        gateway: Service-role RemoteGateway for the subscriptions table.
        secret: Shared signing secret configured at the billing provider.
    """

    def __init__(self, gateway: RemoteGateway, secret: str) -> None:
        self._gateway = gateway
        self._secret = secret

    async def handle(self, body: bytes, signature: str | None) -> WebhookResponse:
        if not self._secret:
            logger.error("webhook.secret_not_configured")
            return WebhookResponse(status_code=500, message="Webhook secret not configured.")

        if not signature:
            logger.warning("webhook.signature_missing")
            return WebhookResponse(status_code=400, message="Signature missing.")

        if not verify_signature(self._secret, body, signature):
            logger.warning("webhook.invalid_signature")
            webhook_events_total.labels(event_name="unknown", result="unauthorized").inc()
            return WebhookResponse(status_code=401, message="Invalid signature.")

        try:
            payload = WebhookPayload.model_validate_json(body)
        except ValidationError as exc:
            logger.warning("webhook.invalid_payload", error=str(exc))
            return WebhookResponse(status_code=400, message="Invalid payload.")

        event_name = payload.meta.event_name
        user_id = (payload.meta.custom_data or {}).get("user_id")
        if not user_id:
            logger.warning(
                "webhook.user_id_missing",
                event_name=event_name,
                subscription_id=payload.data.id,
            )
            webhook_events_total.labels(event_name=event_name, result="rejected").inc()
            return WebhookResponse(status_code=400, message="User ID missing in custom_data.")

        logger.info(
            "webhook.processing",
            event_name=event_name,
            user_id=user_id,
            subscription_id=payload.data.id,
        )

        try:
            if event_name in UPSERT_EVENTS:
                await self._upsert(payload, str(user_id))
            elif event_name == CANCEL_EVENT:
                await self._cancel(payload)
            else:
                logger.info("webhook.unhandled_event", event_name=event_name)
                webhook_events_total.labels(event_name=event_name, result="ignored").inc()
                return WebhookResponse(status_code=200, message="Webhook processed.")
        except RemoteError as exc:
            logger.error(
                "webhook.store_failed",
                event_name=event_name,
                subscription_id=payload.data.id,
                error=exc.detail,
            )
            webhook_events_total.labels(event_name=event_name, result="error").inc()
            return WebhookResponse(
                status_code=500,
                message=f"Webhook processing error: {exc.detail}",
            )

        webhook_events_total.labels(event_name=event_name, result="processed").inc()
        return WebhookResponse(status_code=200, message="Webhook processed.")

    def _record(self, payload: WebhookPayload, user_id: str) -> dict[str, Any]:
        attributes = payload.data.attributes
        return {
            "user_id": user_id,
            "lemon_squeezy_subscription_id": payload.data.id,
            "lemon_squeezy_order_id": _str_or_none(attributes.order_id),
            "lemon_squeezy_product_id": _str_or_none(attributes.product_id),
            "lemon_squeezy_variant_id": _str_or_none(attributes.variant_id),
            "status": attributes.status,
            "renews_at": _iso(attributes.renews_at),
            "ends_at": _iso(attributes.ends_at),
            "trial_ends_at": _iso(attributes.trial_ends_at),
            "product_name": attributes.product_name,
            "variant_name": attributes.variant_name,
            "updated_at": _iso(datetime.now(timezone.utc)),
        }

    async def _upsert(self, payload: WebhookPayload, user_id: str) -> None:
        record = self._record(payload, user_id)
        if payload.meta.event_name == "subscription_created":
            record["created_at"] = _iso(
                payload.data.attributes.created_at or datetime.now(timezone.utc)
            )
        await self._gateway.upsert(SUBSCRIPTIONS_TABLE, record, on_conflict=CONFLICT_KEY)
        logger.info(
            "webhook.subscription_upserted",
            event_name=payload.meta.event_name,
            subscription_id=payload.data.id,
            user_id=user_id,
        )

    async def _cancel(self, payload: WebhookPayload) -> None:
        attributes = payload.data.attributes
        now = datetime.now(timezone.utc)
        await self._gateway.update(
            SUBSCRIPTIONS_TABLE,
            {
                "status": attributes.status,
                "ends_at": _iso(attributes.ends_at or now),
                "updated_at": _iso(now),
            },
            filters={CONFLICT_KEY: payload.data.id},
        )
        logger.info("webhook.subscription_cancelled", subscription_id=payload.data.id)
