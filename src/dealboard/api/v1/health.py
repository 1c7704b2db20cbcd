"""Liveness endpoint.

The server keeps no connections open, so liveness is all there is to
report. The billing flags say which routes can do real work.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from src.dealboard.config import Settings, get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(settings: Settings = Depends(get_settings)):
    return {
        "status": "ok",
        "environment": settings.ENVIRONMENT.value,
        "billing": {
            "webhooks": bool(settings.LEMONSQUEEZY_WEBHOOK_SECRET),
            "plans": bool(settings.LEMONSQUEEZY_API_KEY),
        },
    }
