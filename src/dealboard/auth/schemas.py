"""Pydantic schemas for identity, session, subscription and the auth snapshot.

Defines:
- Enums: AuthChangeEvent, SubscriptionStatus, Entitlement
- Session payloads: Identity, Session
- Billing: Subscription, EntitlementResult
- AuthSnapshot: the single immutable view of "who is signed in and what may they use"
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Enums ───────────────────────────────────────────────────────────────────


class AuthChangeEvent(str, Enum):
    """Session change events pushed by the remote authority."""

    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


class SubscriptionStatus(str, Enum):
    """Closed set of billing subscription states."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    PAID = "paid"
    REFUNDED = "refunded"
    UNKNOWN = "unknown"


# past_due stays entitled so a failed renewal gets a grace period.
ENTITLED_STATUSES: frozenset[SubscriptionStatus] = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
})


class Entitlement(str, Enum):
    """Tri-state entitlement kept distinct until routing folds it.

    UNKNOWN means resolution failed or timed out -- it is NOT a confirmed
    "no subscription". The gate folds UNKNOWN into INACTIVE explicitly.
    """

    ACTIVE = "active"
    INACTIVE = "inactive"
    UNKNOWN = "unknown"


# ── Session ─────────────────────────────────────────────────────────────────


class Identity(BaseModel):
    """The signed-in user as reported by the authority."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    email: str | None = None
    user_metadata: dict[str, Any] = Field(default_factory=dict)


class Session(BaseModel):
    """Authority session: bearer credentials plus the user they belong to."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    access_token: str
    refresh_token: str | None = None
    token_type: str = "bearer"
    expires_at: int | None = None
    user: Identity


# ── Subscription ────────────────────────────────────────────────────────────


class Subscription(BaseModel):
    """Subscription record as stored by the webhook and returned by the entitlement function."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    user_id: str | None = None
    lemon_squeezy_subscription_id: str | None = None
    lemon_squeezy_order_id: str | None = None
    lemon_squeezy_product_id: str | None = None
    lemon_squeezy_variant_id: str | None = None
    status: SubscriptionStatus = SubscriptionStatus.UNKNOWN
    product_name: str | None = None
    variant_name: str | None = None
    renews_at: datetime | None = None
    trial_ends_at: datetime | None = None
    ends_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> Any:
        if isinstance(value, SubscriptionStatus):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized == "canceled":
                normalized = "cancelled"
            try:
                return SubscriptionStatus(normalized)
            except ValueError:
                return SubscriptionStatus.UNKNOWN
        return SubscriptionStatus.UNKNOWN

    @field_validator(
        "lemon_squeezy_subscription_id",
        "lemon_squeezy_order_id",
        "lemon_squeezy_product_id",
        "lemon_squeezy_variant_id",
        mode="before",
    )
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @property
    def is_entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES


class EntitlementResult(BaseModel):
    """Outcome of one entitlement resolution."""

    model_config = ConfigDict(frozen=True)

    entitlement: Entitlement
    subscription: Subscription | None = None
    source: str | None = None  # "function" | "table" | None
    detail: str | None = None

    @classmethod
    def unknown(cls, detail: str) -> EntitlementResult:
        return cls(entitlement=Entitlement.UNKNOWN, detail=detail)

    @classmethod
    def from_subscription(cls, subscription: Subscription | None, source: str) -> EntitlementResult:
        if subscription is None:
            return cls(entitlement=Entitlement.INACTIVE, source=source)
        state = Entitlement.ACTIVE if subscription.is_entitled else Entitlement.INACTIVE
        return cls(entitlement=state, subscription=subscription, source=source)


# ── Snapshot ────────────────────────────────────────────────────────────────


class AuthSnapshot(BaseModel):
    """Immutable view of the current session and entitlement.

    Replaced wholesale by the SessionBootstrapper on every transition; never
    mutated in place.
    """

    model_config = ConfigDict(frozen=True)

    identity: Identity | None = None
    session: Session | None = None
    subscription: Subscription | None = None
    entitlement: Entitlement = Entitlement.UNKNOWN
    is_initializing: bool = True

    @property
    def session_valid(self) -> bool:
        return self.session is not None

    @property
    def is_subscribed(self) -> bool:
        """Routing boolean. UNKNOWN folds to False."""
        return self.entitlement == Entitlement.ACTIVE
