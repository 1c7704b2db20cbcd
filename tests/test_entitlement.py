"""Unit tests for EntitlementResolver.

Tests the function-then-table source chain, the tri-state outcome, and
that a lookup which never answers still yields UNKNOWN within the timeout.
"""

from __future__ import annotations

import asyncio

import pytest

from src.dealboard.auth.entitlement import DEFAULT_FUNCTION, SUBSCRIPTIONS_TABLE, EntitlementResolver
from src.dealboard.auth.schemas import Entitlement, SubscriptionStatus
from src.dealboard.core.errors import AuthorityError, TransportError
from tests.doubles import make_identity

TIMEOUT = 0.05
EPSILON = 0.5


def _product_info(status: str, **overrides) -> dict:
    info = {
        "user_id": "user-1",
        "lemon_squeezy_subscription_id": 9001,
        "lemon_squeezy_variant_id": 560079,
        "status": status,
        "variant_name": "Starter",
    }
    info.update(overrides)
    return {"productInfo": info}


@pytest.fixture
def resolver(gateway) -> EntitlementResolver:
    return EntitlementResolver(gateway, timeout_seconds=TIMEOUT)


@pytest.fixture
def identity():
    return make_identity()


# ── Function source ────────────────────────────────────────────────────────


class TestFunctionSource:
    @pytest.mark.parametrize("status", ["active", "trialing", "past_due"])
    async def test_entitled_statuses_are_active(self, gateway, resolver, identity, status):
        gateway.functions[DEFAULT_FUNCTION] = _product_info(status)

        result = await resolver.resolve_entitlement(identity)

        assert result.entitlement == Entitlement.ACTIVE
        assert result.source == "function"
        assert result.subscription.lemon_squeezy_subscription_id == "9001"

    async def test_cancelled_is_inactive_but_keeps_record(self, gateway, resolver, identity):
        gateway.functions[DEFAULT_FUNCTION] = _product_info("cancelled")

        result = await resolver.resolve_entitlement(identity)

        assert result.entitlement == Entitlement.INACTIVE
        assert result.subscription.status == SubscriptionStatus.CANCELLED

    async def test_resolve_returns_subscription(self, gateway, resolver, identity):
        gateway.functions[DEFAULT_FUNCTION] = _product_info("active")

        subscription = await resolver.resolve(identity)

        assert subscription is not None
        assert subscription.variant_name == "Starter"

    async def test_transport_failure_is_unknown(self, gateway, resolver, identity):
        gateway.functions[DEFAULT_FUNCTION] = TransportError("connection refused")

        result = await resolver.resolve_entitlement(identity)

        assert result.entitlement == Entitlement.UNKNOWN
        assert result.detail == "connection refused"
        assert gateway.calls_of("select") == []

    async def test_malformed_product_info_is_unknown(self, gateway, resolver, identity):
        gateway.functions[DEFAULT_FUNCTION] = {"productInfo": ["not", "an", "object"]}

        result = await resolver.resolve_entitlement(identity)

        assert result.entitlement == Entitlement.UNKNOWN


# ── Table fallback ─────────────────────────────────────────────────────────


class TestTableFallback:
    async def test_function_error_falls_back_to_latest_entitled_row(
        self, gateway, resolver, identity
    ):
        gateway.functions[DEFAULT_FUNCTION] = AuthorityError("not found", status_code=404)
        gateway.seed(
            SUBSCRIPTIONS_TABLE,
            {"user_id": "user-1", "status": "active", "created_at": "2026-01-01T00:00:00+00:00",
             "lemon_squeezy_subscription_id": "old"},
            {"user_id": "user-1", "status": "cancelled", "created_at": "2026-03-01T00:00:00+00:00",
             "lemon_squeezy_subscription_id": "newer-cancelled"},
            {"user_id": "user-2", "status": "active", "created_at": "2026-04-01T00:00:00+00:00",
             "lemon_squeezy_subscription_id": "someone-else"},
        )

        result = await resolver.resolve_entitlement(identity)

        assert result.entitlement == Entitlement.ACTIVE
        assert result.source == "table"
        assert result.subscription.lemon_squeezy_subscription_id == "old"
        select = gateway.calls_of("select")[0]
        assert select[2]["filters"]["user_id"] == "user-1"
        assert set(select[2]["filters"]["status"]) == {"active", "trialing", "past_due"}

    async def test_empty_function_body_and_no_row_is_inactive(self, gateway, resolver, identity):
        gateway.functions[DEFAULT_FUNCTION] = {}

        result = await resolver.resolve_entitlement(identity)

        assert result.entitlement == Entitlement.INACTIVE
        assert result.subscription is None
        assert result.source == "table"

    async def test_table_failure_is_unknown(self, gateway, resolver, identity):
        gateway.functions[DEFAULT_FUNCTION] = {}
        gateway.fail("select", TransportError("offline"))

        result = await resolver.resolve_entitlement(identity)

        assert result.entitlement == Entitlement.UNKNOWN


# ── Timeout ────────────────────────────────────────────────────────────────


class TestTimeout:
    async def test_hanging_lookup_resolves_unknown_within_timeout(self, gateway, resolver, identity):
        release = gateway.hold("invoke_function")
        loop = asyncio.get_running_loop()

        started = loop.time()
        result = await resolver.resolve_entitlement(identity)
        elapsed = loop.time() - started

        assert result.entitlement == Entitlement.UNKNOWN
        assert elapsed < TIMEOUT + EPSILON
        release.set()
        await asyncio.sleep(0.01)

    async def test_resolve_returns_none_on_timeout(self, gateway, resolver, identity):
        release = gateway.hold("invoke_function")

        assert await resolver.resolve(identity) is None
        release.set()
        await asyncio.sleep(0.01)

    async def test_late_result_is_discarded(self, gateway, resolver, identity):
        gateway.functions[DEFAULT_FUNCTION] = _product_info("active")
        release = gateway.hold("invoke_function")

        result = await resolver.resolve_entitlement(identity)
        release.set()
        await asyncio.sleep(0.01)

        assert result.entitlement == Entitlement.UNKNOWN
        assert len(gateway.calls_of("invoke_function")) == 1
