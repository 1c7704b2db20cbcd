"""CRMClient: the application-level facade a UI binds to.

Wires one RemoteGateway into the session bootstrapper, the entitlement
resolver, the billing client and (while the board route is open) one
BoardSyncEngine. Every collaborator is passed in or built here; nothing
is global.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog

from src.dealboard.auth.bootstrap import SessionBootstrapper, SnapshotListener
from src.dealboard.auth.entitlement import DEFAULT_FUNCTION, DEFAULT_TIMEOUT_SECONDS, EntitlementResolver
from src.dealboard.auth.gate import (
    GateDecision,
    GateOutcome,
    RouteRequirement,
    evaluate_gate,
    post_login_destination,
    requirement_for,
)
from src.dealboard.auth.schemas import AuthSnapshot
from src.dealboard.billing.client import BillingClient
from src.dealboard.board.engine import BoardSyncEngine
from src.dealboard.board.schemas import BoardState, DealPayload, MutationResult
from src.dealboard.config import Settings
from src.dealboard.notifications import Notifier
from src.dealboard.remote.gateway import RemoteGateway

logger = structlog.get_logger(__name__)

BOARD_UNAVAILABLE = "The deal board is not available for this session."


class CRMClient:
    """Single entry point for session, gating, billing and board operations.

    Args:
        gateway: RemoteGateway shared by every component.
        notifier: Notification sink; a fresh one is created when omitted.
        entitlement_timeout: Upper bound on entitlement resolution, in seconds.
        entitlement_function: Server function used for entitlement and the portal link.
        plans_function: Server function returning the plan list.
        serialize_same_deal_moves: Forwarded to each BoardSyncEngine.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        notifier: Notifier | None = None,
        *,
        entitlement_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        entitlement_function: str = DEFAULT_FUNCTION,
        plans_function: str = "list-lemon-squeezy-plans",
        serialize_same_deal_moves: bool = False,
    ) -> None:
        self.gateway = gateway
        self.notifier = notifier or Notifier()
        self.resolver = EntitlementResolver(
            gateway,
            timeout_seconds=entitlement_timeout,
            function_name=entitlement_function,
        )
        self.session = SessionBootstrapper(gateway, self.resolver, self.notifier)
        self.billing = BillingClient(
            gateway,
            self.notifier,
            plans_function=plans_function,
            portal_function=entitlement_function,
        )
        self._serialize_moves = serialize_same_deal_moves
        self._board: BoardSyncEngine | None = None
        self._unsubscribe: Callable[[], None] | None = self.session.subscribe(self._on_snapshot)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        gateway: RemoteGateway,
        notifier: Notifier | None = None,
    ) -> CRMClient:
        return cls(
            gateway,
            notifier,
            entitlement_timeout=settings.ENTITLEMENT_TIMEOUT_SECONDS,
            entitlement_function=settings.ENTITLEMENT_FUNCTION,
            plans_function=settings.PLANS_FUNCTION,
        )

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def start(self) -> AuthSnapshot:
        return await self.session.start()

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.session.close()
        self._board = None

    def _on_snapshot(self, snapshot: AuthSnapshot) -> None:
        if snapshot.is_initializing:
            return

        decision = evaluate_gate(snapshot, RouteRequirement.ENTITLEMENT)
        if decision.outcome != GateOutcome.RENDER_CONTENT:
            if self._board is not None:
                logger.info("client.board_closed", owner_id=self._board.owner_id)
                self._board = None
            return

        owner_id = snapshot.identity.id
        if self._board is None or self._board.owner_id != owner_id:
            self._board = BoardSyncEngine(
                self.gateway,
                owner_id,
                self.notifier,
                serialize_same_deal_moves=self._serialize_moves,
            )
            logger.info("client.board_opened", owner_id=owner_id)

    # ── Session ─────────────────────────────────────────────────────────────

    def get_auth_snapshot(self) -> AuthSnapshot:
        return self.session.snapshot

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        return self.session.subscribe(listener)

    async def login(self, email: str, password: str) -> bool:
        """Sign in with a password. The session push drives the snapshot."""
        try:
            await self.gateway.sign_in_with_password(email, password)
        except Exception as exc:
            detail = getattr(exc, "detail", None) or str(exc) or "An unexpected error occurred."
            logger.warning("client.login_failed", email=email, error=detail)
            self.notifier.error(detail)
            return False
        self.notifier.success("Logged in successfully!")
        return True

    async def signup(
        self,
        email: str,
        password: str,
        *,
        confirm_password: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        if confirm_password is not None and confirm_password != password:
            self.notifier.error("Passwords do not match.")
            return False
        try:
            identity = await self.gateway.sign_up(email, password, metadata)
        except Exception as exc:
            detail = getattr(exc, "detail", None) or str(exc) or "Signup failed."
            logger.warning("client.signup_failed", email=email, error=detail)
            self.notifier.error(detail)
            return False
        if identity is None:
            self.notifier.error("Signup failed.")
            return False
        self.notifier.success(
            "Signup successful! Please check your email to confirm your account."
        )
        return True

    async def logout(self) -> bool:
        return await self.session.logout()

    async def refresh_subscription(self) -> AuthSnapshot:
        return await self.session.refresh_subscription()

    async def settle(self) -> AuthSnapshot:
        return await self.session.settle()

    # ── Routing ─────────────────────────────────────────────────────────────

    def gate(self, path: str) -> GateDecision:
        """Decide what to do with a navigation to ``path``."""
        requirement = requirement_for(path)
        if requirement is None:
            return GateDecision.content()
        return evaluate_gate(self.session.snapshot, requirement)

    def post_login_destination(self) -> str | None:
        return post_login_destination(self.session.snapshot)

    # ── Board ───────────────────────────────────────────────────────────────

    @property
    def board(self) -> BoardSyncEngine | None:
        return self._board

    def board_state(self) -> BoardState | None:
        return self._board.state if self._board is not None else None

    def _unavailable(self, action: str, deal_id: str | None = None) -> MutationResult:
        logger.info("client.board_unavailable", action=action)
        return MutationResult(ok=False, action=action, deal_id=deal_id, error=BOARD_UNAVAILABLE)

    async def load_board(self) -> MutationResult:
        if self._board is None:
            return self._unavailable("load")
        return await self._board.load()

    async def move_deal(self, deal_id: str, from_column: str, to_column: str) -> MutationResult:
        if self._board is None:
            return self._unavailable("move", deal_id)
        return await self._board.move(deal_id, from_column, to_column)

    async def add_deal(self, payload: DealPayload) -> MutationResult:
        if self._board is None:
            return self._unavailable("add")
        return await self._board.add(payload)

    async def edit_deal(self, deal_id: str, payload: DealPayload) -> MutationResult:
        if self._board is None:
            return self._unavailable("update", deal_id)
        return await self._board.update(deal_id, payload)

    async def delete_deal(self, deal_id: str) -> MutationResult:
        if self._board is None:
            return self._unavailable("delete", deal_id)
        return await self._board.delete(deal_id)
