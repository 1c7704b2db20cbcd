"""Billing provider webhook receiver.

The handler needs the exact bytes that were signed, so the body is read
raw and never parsed by FastAPI. The response is plain text with the
status chosen by SubscriptionWebhookHandler.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from src.dealboard.api.deps import get_webhook_handler
from src.dealboard.billing.webhook import SIGNATURE_HEADER, SubscriptionWebhookHandler

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/lemonsqueezy")
async def receive_lemonsqueezy_webhook(
    request: Request,
    handler: SubscriptionWebhookHandler = Depends(get_webhook_handler),
) -> PlainTextResponse:
    """Verify and apply one subscription event."""
    body = await request.body()
    result = await handler.handle(body, request.headers.get(SIGNATURE_HEADER))
    return PlainTextResponse(result.message, status_code=result.status_code)
