"""Route gating as a pure decision table.

``evaluate_gate(snapshot, requirement)`` has five reachable outcomes:

=================  ==========  =============  ==============================
is_initializing    identity    requirement    decision
=================  ==========  =============  ==============================
True               any         any            RENDER_PLACEHOLDER
False              None        any            REDIRECT -> PUBLIC_ENTRY
False              present     IDENTITY       RENDER_CONTENT
False              present     ENTITLEMENT    REDIRECT -> PLAN_SELECTION
                                              (not subscribed)
False              present     ENTITLEMENT    RENDER_CONTENT (subscribed)
=================  ==========  =============  ==============================

Entitlement UNKNOWN (resolution failed or timed out) is folded into "not
subscribed" here: access is denied rather than risk a false grant.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict

from src.dealboard.auth.schemas import AuthSnapshot, Entitlement

PUBLIC_ENTRY = "/"
PLAN_SELECTION = "/billing"
BOARD_ROUTE = "/dashboard"
PLANS_ROUTE = "/plans"


class RouteRequirement(str, Enum):
    IDENTITY = "identity"
    ENTITLEMENT = "entitlement"


class GateOutcome(str, Enum):
    RENDER_PLACEHOLDER = "render_placeholder"
    RENDER_CONTENT = "render_content"
    REDIRECT = "redirect"


class GateDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: GateOutcome
    target: str | None = None

    @classmethod
    def placeholder(cls) -> GateDecision:
        return cls(outcome=GateOutcome.RENDER_PLACEHOLDER)

    @classmethod
    def content(cls) -> GateDecision:
        return cls(outcome=GateOutcome.RENDER_CONTENT)

    @classmethod
    def redirect(cls, target: str) -> GateDecision:
        return cls(outcome=GateOutcome.REDIRECT, target=target)


# Paths not listed here are public and never gated.
ROUTES: dict[str, RouteRequirement] = {
    "/billing": RouteRequirement.IDENTITY,
    BOARD_ROUTE: RouteRequirement.ENTITLEMENT,
}

PUBLIC_ROUTES: frozenset[str] = frozenset({"/", "/login", "/signup", PLANS_ROUTE})


def requirement_for(path: str) -> RouteRequirement | None:
    """Return the gate requirement for a path, or None for public paths."""
    return ROUTES.get(path.rstrip("/") or "/")


def fold_entitlement(entitlement: Entitlement) -> bool:
    """Collapse the tri-state into the routing boolean. UNKNOWN counts as not subscribed."""
    return entitlement == Entitlement.ACTIVE


def evaluate_gate(snapshot: AuthSnapshot, requirement: RouteRequirement) -> GateDecision:
    if snapshot.is_initializing:
        return GateDecision.placeholder()
    if snapshot.identity is None:
        return GateDecision.redirect(PUBLIC_ENTRY)
    if requirement == RouteRequirement.IDENTITY:
        return GateDecision.content()
    if not fold_entitlement(snapshot.entitlement):
        return GateDecision.redirect(PLAN_SELECTION)
    return GateDecision.content()


def post_login_destination(snapshot: AuthSnapshot) -> str | None:
    """Where to land after sign-in, once the snapshot has settled.

    None while initializing or when nobody is signed in.
    """
    if snapshot.is_initializing or snapshot.identity is None:
        return None
    return BOARD_ROUTE if fold_entitlement(snapshot.entitlement) else PLANS_ROUTE
