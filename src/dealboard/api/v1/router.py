"""Mounts the health, webhook and plan routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.dealboard.api.v1 import health, plans, webhooks

router = APIRouter()

for module in (health, webhooks, plans):
    router.include_router(module.router)
