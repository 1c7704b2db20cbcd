"""Unit tests for SessionBootstrapper.

Tests the initializing/settled transition sequence, that superseded
transitions are dropped, logout and subscription refresh, plus the
end-to-end trialing scenario through the gate.
"""

from __future__ import annotations

import asyncio

import pytest

from src.dealboard.auth.bootstrap import SessionBootstrapper
from src.dealboard.auth.entitlement import DEFAULT_FUNCTION, EntitlementResolver
from src.dealboard.auth.gate import (
    PLAN_SELECTION,
    GateOutcome,
    RouteRequirement,
    evaluate_gate,
)
from src.dealboard.auth.schemas import AuthChangeEvent, Entitlement
from src.dealboard.core.errors import TransportError
from src.dealboard.notifications import NotificationKind
from tests.doubles import make_session


async def _let_tasks_run() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def _product_info(status: str) -> dict:
    return {"productInfo": {"lemon_squeezy_subscription_id": "sub-1", "status": status}}


@pytest.fixture
def bootstrapper(gateway, notifier) -> SessionBootstrapper:
    resolver = EntitlementResolver(gateway, timeout_seconds=1.0)
    return SessionBootstrapper(gateway, resolver, notifier)


@pytest.fixture
def published(bootstrapper) -> list:
    snapshots: list = []
    bootstrapper.subscribe(snapshots.append)
    return snapshots


# ── Startup ────────────────────────────────────────────────────────────────


class TestStart:
    async def test_initial_snapshot_is_initializing(self, bootstrapper):
        assert bootstrapper.snapshot.is_initializing
        assert bootstrapper.snapshot.identity is None

    async def test_no_session_settles_signed_out(self, gateway, bootstrapper):
        snapshot = await bootstrapper.start()

        assert not snapshot.is_initializing
        assert snapshot.identity is None
        assert snapshot.entitlement == Entitlement.INACTIVE
        assert gateway.listener_count == 1
        assert gateway.calls_of("invoke_function") == []

    async def test_trialing_subscription_opens_the_board(self, gateway, bootstrapper):
        gateway.session = make_session()
        gateway.functions[DEFAULT_FUNCTION] = _product_info("trialing")

        snapshot = await bootstrapper.start()

        assert snapshot.identity.id == "user-1"
        assert snapshot.is_subscribed
        decision = evaluate_gate(snapshot, RouteRequirement.ENTITLEMENT)
        assert decision.outcome == GateOutcome.RENDER_CONTENT

    async def test_session_lookup_failure_settles_signed_out(self, gateway, bootstrapper):
        gateway.fail("get_session", TransportError("offline"))

        snapshot = await bootstrapper.start()

        assert not snapshot.is_initializing
        assert snapshot.identity is None

    async def test_entitlement_timeout_keeps_identity_and_denies_board(self, gateway, notifier):
        resolver = EntitlementResolver(gateway, timeout_seconds=0.05)
        bootstrapper = SessionBootstrapper(gateway, resolver, notifier)
        gateway.session = make_session()
        release = gateway.hold("invoke_function")

        snapshot = await bootstrapper.start()
        release.set()
        await asyncio.sleep(0.01)

        assert snapshot.identity.id == "user-1"
        assert snapshot.entitlement == Entitlement.UNKNOWN
        assert not snapshot.is_subscribed
        decision = evaluate_gate(snapshot, RouteRequirement.ENTITLEMENT)
        assert decision.target == PLAN_SELECTION

    async def test_close_unsubscribes(self, gateway, bootstrapper):
        await bootstrapper.start()
        await bootstrapper.close()
        assert gateway.listener_count == 0


# ── Session pushes ─────────────────────────────────────────────────────────


class TestTransitions:
    async def test_push_flags_initializing_synchronously(self, gateway, bootstrapper, published):
        gateway.functions[DEFAULT_FUNCTION] = _product_info("active")
        await bootstrapper.start()

        gateway.push(AuthChangeEvent.SIGNED_IN, make_session())

        assert bootstrapper.snapshot.is_initializing
        assert (
            evaluate_gate(bootstrapper.snapshot, RouteRequirement.ENTITLEMENT).outcome
            == GateOutcome.RENDER_PLACEHOLDER
        )

        snapshot = await bootstrapper.settle()
        assert not snapshot.is_initializing
        assert snapshot.identity.id == "user-1"
        assert snapshot.entitlement == Entitlement.ACTIVE
        assert [s.is_initializing for s in published] == [False, True, False]

    async def test_superseded_resolution_is_dropped(self, gateway, bootstrapper, published):
        await bootstrapper.start()
        release = gateway.hold("invoke_function")

        gateway.push(AuthChangeEvent.SIGNED_IN, make_session())
        await _let_tasks_run()
        gateway.push(AuthChangeEvent.SIGNED_OUT, None)
        await _let_tasks_run()
        release.set()
        snapshot = await bootstrapper.settle()

        assert snapshot.identity is None
        assert not snapshot.is_initializing
        settled = [s for s in published if not s.is_initializing]
        assert all(s.identity is None for s in settled)

    async def test_signed_out_push_clears_identity(self, gateway, bootstrapper):
        gateway.session = make_session()
        await bootstrapper.start()

        gateway.push(AuthChangeEvent.SIGNED_OUT, None)
        snapshot = await bootstrapper.settle()

        assert snapshot.identity is None
        assert snapshot.subscription is None
        assert snapshot.entitlement == Entitlement.INACTIVE


# ── Logout ─────────────────────────────────────────────────────────────────


class TestLogout:
    async def test_logout_signs_out(self, gateway, bootstrapper, notifier):
        gateway.session = make_session()
        await bootstrapper.start()

        assert await bootstrapper.logout() is True
        snapshot = await bootstrapper.settle()

        assert snapshot.identity is None
        assert [n.kind for n in notifier.history] == [
            NotificationKind.LOADING,
            NotificationKind.DISMISS,
            NotificationKind.SUCCESS,
        ]

    async def test_logout_failure_restores_session(self, gateway, bootstrapper, notifier):
        gateway.session = make_session()
        await bootstrapper.start()
        gateway.fail("sign_out", TransportError("offline"))

        assert await bootstrapper.logout() is False

        snapshot = bootstrapper.snapshot
        assert not snapshot.is_initializing
        assert snapshot.identity.id == "user-1"
        assert notifier.history[-1].kind == NotificationKind.ERROR
        assert notifier.history[-1].message == "Logout failed: offline"


# ── Refresh ────────────────────────────────────────────────────────────────


class TestRefreshSubscription:
    async def test_refresh_updates_entitlement_without_initializing(
        self, gateway, bootstrapper, published
    ):
        gateway.session = make_session()
        gateway.functions[DEFAULT_FUNCTION] = {}
        await bootstrapper.start()
        assert bootstrapper.snapshot.entitlement == Entitlement.INACTIVE
        published.clear()

        gateway.functions[DEFAULT_FUNCTION] = _product_info("active")
        snapshot = await bootstrapper.refresh_subscription()

        assert snapshot.entitlement == Entitlement.ACTIVE
        assert snapshot.identity.id == "user-1"
        assert all(not s.is_initializing for s in published)

    async def test_refresh_without_identity_does_nothing(self, gateway, bootstrapper):
        await bootstrapper.start()

        snapshot = await bootstrapper.refresh_subscription()

        assert snapshot.identity is None
        assert gateway.calls_of("invoke_function") == []

    async def test_refresh_discarded_after_sign_out(self, gateway, bootstrapper):
        gateway.session = make_session()
        gateway.functions[DEFAULT_FUNCTION] = {}
        await bootstrapper.start()
        gateway.functions[DEFAULT_FUNCTION] = _product_info("active")
        release = gateway.hold("invoke_function")

        refresh = asyncio.create_task(bootstrapper.refresh_subscription())
        await _let_tasks_run()
        gateway.push(AuthChangeEvent.SIGNED_OUT, None)
        release.set()
        await refresh
        snapshot = await bootstrapper.settle()

        assert snapshot.identity is None
        assert snapshot.entitlement == Entitlement.INACTIVE
