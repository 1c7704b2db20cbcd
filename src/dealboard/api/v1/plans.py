"""Plan listing endpoint backing the plans page."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from src.dealboard.api.deps import get_plan_catalog
from src.dealboard.billing.plans import PlanCatalog
from src.dealboard.core.errors import RemoteError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/plans", tags=["plans"])


@router.get("")
async def list_plans(catalog: PlanCatalog | None = Depends(get_plan_catalog)) -> JSONResponse:
    """Return the configured plans enriched from the provider.

    Variants the provider refuses are left out. Any other failure answers
    500 with an ``error`` message.
    """
    if catalog is None:
        logger.error("plans.api_key_missing")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "LemonSqueezy API key not configured."},
        )

    try:
        plans = await catalog.list_plans()
    except RemoteError as exc:
        logger.error("plans.listing_failed", error=exc.detail)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": exc.detail or "An unexpected error occurred."},
        )

    return JSONResponse(content=[plan.model_dump(mode="json") for plan in plans])
