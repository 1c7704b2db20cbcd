"""Session bootstrap: turn authority session pushes into one coherent AuthSnapshot.

Every transition (startup, sign-in, sign-out, token refresh) follows the
same sequence:

1. synchronously publish the current snapshot with ``is_initializing=True``
2. derive identity from the session
3. resolve entitlement for that identity (bounded by the resolver's timeout)
4. publish a fully settled snapshot with ``is_initializing=False``

Transitions are numbered. A transition that finishes after a newer one has
started is dropped, so a settled snapshot is never published while a newer
resolution is still running.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog

from src.dealboard.auth.entitlement import EntitlementResolver
from src.dealboard.auth.schemas import (
    AuthChangeEvent,
    AuthSnapshot,
    Entitlement,
    EntitlementResult,
    Identity,
    Session,
)
from src.dealboard.notifications import Notifier
from src.dealboard.remote.gateway import RemoteGateway

logger = structlog.get_logger(__name__)

SnapshotListener = Callable[[AuthSnapshot], None]


class SessionBootstrapper:
    """Owns the live AuthSnapshot.

    Args:
        gateway: RemoteGateway providing the session and its change pushes.
        resolver: EntitlementResolver used after each identity change.
        notifier: Optional sink for logout notifications.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        resolver: EntitlementResolver,
        notifier: Notifier | None = None,
    ) -> None:
        self._gateway = gateway
        self._resolver = resolver
        self._notifier = notifier
        self._snapshot = AuthSnapshot(is_initializing=True)
        self._generation = 0
        self._listeners: list[SnapshotListener] = []
        self._pending: set[asyncio.Task] = set()
        self._unsubscribe: Callable[[], None] | None = None

    # ── Snapshot access ─────────────────────────────────────────────────────

    @property
    def snapshot(self) -> AuthSnapshot:
        return self._snapshot

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Call ``listener`` with every new snapshot; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, snapshot: AuthSnapshot) -> None:
        self._snapshot = snapshot
        for listener in list(self._listeners):
            listener(snapshot)

    def _begin_transition(self) -> int:
        self._generation += 1
        if not self._snapshot.is_initializing:
            self._publish(self._snapshot.model_copy(update={"is_initializing": True}))
        return self._generation

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def start(self) -> AuthSnapshot:
        """Resolve the initial session and start listening for session pushes."""
        generation = self._begin_transition()
        if self._unsubscribe is None:
            self._unsubscribe = self._gateway.on_auth_state_change(self._on_auth_change)

        try:
            session = await self._gateway.get_session()
        except Exception as exc:
            logger.error("auth.initial_session_failed", error=str(exc))
            session = None

        await self._complete_transition(generation, session, AuthChangeEvent.INITIAL_SESSION)
        return self._snapshot

    async def close(self) -> None:
        """Stop listening and cancel transitions still in flight."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self._pending.clear()

    async def settle(self) -> AuthSnapshot:
        """Wait for every scheduled transition to finish; return the resulting snapshot."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        return self._snapshot

    # ── Transitions ─────────────────────────────────────────────────────────

    def _on_auth_change(self, event: AuthChangeEvent, session: Session | None) -> None:
        # Runs synchronously inside the gateway call that changed the session.
        generation = self._begin_transition()
        logger.info(
            "auth.change_received",
            auth_event=event.value,
            user_id=session.user.id if session else None,
            generation=generation,
        )
        task = asyncio.get_running_loop().create_task(
            self._complete_transition(generation, session, event)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _complete_transition(
        self,
        generation: int,
        session: Session | None,
        event: AuthChangeEvent,
    ) -> None:
        identity = session.user if session else None
        if identity is not None:
            result = await self._resolve(identity)
        else:
            result = EntitlementResult(entitlement=Entitlement.INACTIVE)

        if generation != self._generation:
            logger.info(
                "auth.transition_superseded",
                generation=generation,
                current=self._generation,
            )
            return

        self._publish(
            AuthSnapshot(
                identity=identity,
                session=session,
                subscription=result.subscription,
                entitlement=result.entitlement,
                is_initializing=False,
            )
        )
        logger.info(
            "auth.transition_complete",
            auth_event=event.value,
            user_id=identity.id if identity else None,
            entitlement=result.entitlement.value,
        )

    async def _resolve(self, identity: Identity) -> EntitlementResult:
        # Identity resolution must succeed even when entitlement cannot.
        try:
            return await self._resolver.resolve_entitlement(identity)
        except Exception as exc:
            logger.error("auth.entitlement_failed", user_id=identity.id, error=str(exc))
            return EntitlementResult.unknown(str(exc) or exc.__class__.__name__)

    # ── Intents ─────────────────────────────────────────────────────────────

    async def logout(self) -> bool:
        """Ask the authority to end the session.

        Only flags the snapshot as initializing; the SIGNED_OUT push that
        follows completes the transition. If the authority refuses, the
        current session is re-resolved so the snapshot settles again.
        """
        self._begin_transition()
        toast_id = self._notifier.loading("Logging out...") if self._notifier else None
        try:
            await self._gateway.sign_out()
        except Exception as exc:
            detail = getattr(exc, "detail", None) or str(exc)
            logger.error("auth.logout_failed", error=detail)
            if self._notifier and toast_id:
                self._notifier.dismiss(toast_id)
                self._notifier.error(f"Logout failed: {detail}")
            generation = self._begin_transition()
            try:
                session = await self._gateway.get_session()
            except Exception:
                session = self._snapshot.session
            await self._complete_transition(generation, session, AuthChangeEvent.USER_UPDATED)
            return False

        if self._notifier and toast_id:
            self._notifier.dismiss(toast_id)
            self._notifier.success("Logged out successfully.")
        logger.info("auth.logout_requested")
        return True

    async def refresh_subscription(self) -> AuthSnapshot:
        """Re-run entitlement for the current identity without entering initializing."""
        identity = self._snapshot.identity
        if identity is None:
            return self._snapshot

        generation = self._generation
        result = await self._resolve(identity)

        if generation != self._generation or self._snapshot.identity != identity:
            logger.info("auth.refresh_discarded", user_id=identity.id)
            return self._snapshot

        self._publish(
            self._snapshot.model_copy(
                update={"subscription": result.subscription, "entitlement": result.entitlement}
            )
        )
        logger.info(
            "auth.subscription_refreshed",
            user_id=identity.id,
            entitlement=result.entitlement.value,
        )
        return self._snapshot
