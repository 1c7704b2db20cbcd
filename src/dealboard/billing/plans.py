"""Plan catalog backed by the billing provider's REST API.

For each configured plan, fetches the variant together with its product
(``/variants/<id>?include=product``) and returns the variant enriched with
``product_details`` and a ``checkout_url``. Variant fetches run
concurrently; a variant the provider refuses is dropped from the listing
rather than failing the whole call.

HTTP calls retry with exponential backoff on transport failures only.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.dealboard.config import PlanConfig, Settings
from src.dealboard.core.errors import AuthorityError, MalformedResponseError, TransportError

logger = structlog.get_logger(__name__)

JSON_API = "application/vnd.api+json"


class PlanDetails(BaseModel):
    """A billing variant plus its product and buy link.

    Unknown provider fields are preserved so the UI can render whatever
    the provider returns (price, interval, description...).
    """

    model_config = ConfigDict(extra="allow")

    id: str
    type: str = "variants"
    attributes: dict[str, Any] = Field(default_factory=dict)
    relationships: dict[str, Any] = Field(default_factory=dict)
    product_details: dict[str, Any] | None = None
    checkout_url: str


class LemonSqueezyClient:
    """Thin async client for the Lemon Squeezy JSON:API.

    Args:
        api_key: Provider API key (bearer).
        api_base: API root, e.g. ``https://api.lemonsqueezy.com/v1``.
        client: Optional shared httpx.AsyncClient.
        timeout: Request timeout when the client is created here.
    """

    def __init__(
        self,
        api_key: str,
        *,
        api_base: str = "https://api.lemonsqueezy.com/v1",
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._api_base = api_base.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Settings) -> LemonSqueezyClient:
        return cls(
            settings.LEMONSQUEEZY_API_KEY,
            api_base=settings.LEMONSQUEEZY_API_BASE,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(TransportError),
        reraise=True,
    )
    async def get_variant(self, variant_id: str) -> dict[str, Any]:
        """Fetch one variant with its product included."""
        try:
            response = await self._client.get(
                f"{self._api_base}/variants/{variant_id}",
                params={"include": "product"},
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Accept": JSON_API,
                    "Content-Type": JSON_API,
                },
            )
        except httpx.HTTPError as exc:
            raise TransportError(str(exc) or exc.__class__.__name__) from exc

        if response.status_code >= 400:
            raise AuthorityError(response.text, status_code=response.status_code)
        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedResponseError(f"non-JSON variant {variant_id}") from exc
        if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
            raise MalformedResponseError(f"variant {variant_id} has no data object")
        return body


class PlanCatalog:
    """Builds the plan listing from configuration and the provider API.

    Args:
        client: LemonSqueezyClient used for variant lookups.
        plans: Configured variant/checkout pairs, in display order.
        store_subdomain: Store subdomain used in checkout URLs.
    """

    def __init__(
        self,
        client: LemonSqueezyClient,
        plans: list[PlanConfig],
        store_subdomain: str,
    ) -> None:
        self._client = client
        self._plans = plans
        self._store = store_subdomain

    def checkout_url(self, plan: PlanConfig) -> str:
        return f"https://{self._store}.lemonsqueezy.com/buy/{plan.checkout_url_path}"

    async def list_plans(self) -> list[PlanDetails]:
        results = await asyncio.gather(*(self._fetch(plan) for plan in self._plans))
        plans = [plan for plan in results if plan is not None]
        logger.info("plans.listed", configured=len(self._plans), returned=len(plans))
        return plans

    async def _fetch(self, plan: PlanConfig) -> PlanDetails | None:
        try:
            body = await self._client.get_variant(plan.variant_id)
        except AuthorityError as exc:
            logger.error(
                "plans.variant_fetch_failed",
                variant_id=plan.variant_id,
                status_code=exc.status_code,
                error=exc.detail,
            )
            return None

        variant = body["data"]
        relationships = _as_dict(variant.get("relationships"))
        product_ref = _as_dict(_as_dict(relationships.get("product")).get("data"))
        included = body.get("included")
        if not isinstance(included, list):
            included = []
        product = next(
            (
                item
                for item in included
                if isinstance(item, dict)
                and item.get("type") == "products"
                and item.get("id") == product_ref.get("id")
            ),
            None,
        )
        try:
            return PlanDetails.model_validate(
                {
                    **variant,
                    "relationships": relationships,
                    "product_details": product,
                    "checkout_url": self.checkout_url(plan),
                }
            )
        except ValidationError as exc:
            raise MalformedResponseError(
                f"Invalid variant {plan.variant_id} from billing provider: {exc}"
            ) from exc


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}
