"""Optimistic board synchronization against the remote authority.

BoardSyncEngine owns the in-memory BoardState for one signed-in user and is
the only thing that mutates it. Moves are optimistic:

1. snapshot the whole board (deep copy)
2. apply the move locally (remove from source, set status, insert at head
   of target) -- synchronously, so nothing can interleave with it
3. send a status-only update filtered by deal id AND owner id
4. keep the speculative board on success, restore the snapshot on failure

Add, edit and delete are not optimistic: they write, then reload the
whole board from the authority.

A rollback restores the snapshot and then replays every move confirmed
after that snapshot was taken, so a failed move never undoes another
deal's committed move. With no other move confirmed in between, the
restored board equals the board before the failed move.

Two moves of the same deal are not serialized by default. If the earlier
move fails while the later one is still in flight, the rollback puts the
deal back in its original column and the later commit does not move it
again. Pass ``serialize_same_deal_moves=True`` to reject a second move of
a deal while its first one is still in flight.
"""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import ValidationError

from src.dealboard.board.schemas import (
    COLUMN_DEFINITIONS,
    ActionState,
    BoardState,
    ColumnDefinition,
    Deal,
    DealPayload,
    MutationResult,
)
from src.dealboard.core.errors import AuthorityError, InvariantViolation, MalformedResponseError
from src.dealboard.core.monitoring import board_moves_total
from src.dealboard.notifications import Notifier
from src.dealboard.remote.gateway import RemoteGateway

logger = structlog.get_logger(__name__)

DEALS_TABLE = "deals"


def _describe(exc: Exception) -> str:
    return getattr(exc, "detail", None) or str(exc) or exc.__class__.__name__


class BoardSyncEngine:
    """Owns the deal board for one user and keeps it in step with the authority.

    Args:
        gateway: RemoteGateway used for every read and write.
        owner_id: Id of the signed-in user. Every query and write is scoped to it.
        notifier: Sink for loading/success/error notifications.
        columns: Static column configuration, in any order (sorted by position).
        serialize_same_deal_moves: Reject a move of a deal that already has a
            move in flight instead of letting the two race.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        owner_id: str,
        notifier: Notifier,
        *,
        columns: tuple[ColumnDefinition, ...] = COLUMN_DEFINITIONS,
        serialize_same_deal_moves: bool = False,
    ) -> None:
        if not columns:
            raise ValueError("at least one column definition is required")
        self._gateway = gateway
        self._owner_id = owner_id
        self._notifier = notifier
        self._columns = tuple(sorted(columns, key=lambda c: c.position))
        self._serialize_moves = serialize_same_deal_moves
        self._state = BoardState.empty(self._columns)
        self._actions: dict[str, ActionState] = {}
        self._moves_in_flight: set[str] = set()
        # (seq, deal_id, to_column) of committed moves a pending rollback may replay
        self._confirmed: list[tuple[int, str, str]] = []
        self._commit_seq = 0
        self._open_marks: list[int] = []
        self.load_warnings: list[str] = []

    # ── Read-only views ─────────────────────────────────────────────────────

    @property
    def owner_id(self) -> str:
        return self._owner_id

    @property
    def state(self) -> BoardState:
        """A deep copy of the current board; callers cannot mutate engine state."""
        return self._state.model_copy(deep=True)

    def action_state(self, action: str, deal_id: str | None = None) -> ActionState:
        """UI signal for an action: "load", "submit", "delete" or "move" (per deal)."""
        key = f"{action}:{deal_id}" if deal_id else action
        return self._actions.get(key, ActionState.IDLE)

    def _set_action(self, key: str, state: ActionState) -> None:
        self._actions[key] = state

    def _column_title(self, column_id: str) -> str:
        for col in self._columns:
            if col.id == column_id:
                return col.title
        return column_id

    def _known_status(self, status: str) -> bool:
        return any(col.id == status for col in self._columns)

    # ── Load ────────────────────────────────────────────────────────────────

    async def load(self) -> MutationResult:
        """Fetch the owner's deals (newest first) and replace the board wholesale.

        On failure the board is reset to all-empty columns, never left
        half-populated.
        """
        self._set_action("load", ActionState.IN_FLIGHT)
        try:
            rows = await self._gateway.select(
                DEALS_TABLE,
                filters={"user_id": self._owner_id},
                order_by="created_at",
                descending=True,
            )
            board, warnings = self._bucket(rows)
        except Exception as exc:
            detail = _describe(exc)
            logger.error("board.load_failed", owner_id=self._owner_id, error=detail)
            self._notifier.error(f"Failed to fetch deals: {detail}")
            self._state = BoardState.empty(self._columns)
            self._set_action("load", ActionState.ERROR)
            return MutationResult(ok=False, action="load", error=detail)

        self._state = board
        self.load_warnings = warnings
        self._set_action("load", ActionState.IDLE)
        logger.info(
            "board.load_complete",
            owner_id=self._owner_id,
            deals=board.deal_count,
            normalized=len(warnings),
        )
        return MutationResult(ok=True, action="load")

    def _bucket(self, rows: list[dict[str, Any]]) -> tuple[BoardState, list[str]]:
        """Group rows into columns, keeping the authority's order within each column.

        A deal whose status is not a known column is shown in the first
        column. Only the displayed copy is changed; the stored row is not
        rewritten.
        """
        board = BoardState.empty(self._columns)
        first = board.columns[0]
        warnings: list[str] = []

        for row in rows:
            try:
                deal = Deal.model_validate(row)
            except ValidationError as exc:
                raise MalformedResponseError(f"invalid deal row: {exc}") from exc

            column = board.column(deal.status)
            if column is None:
                message = (
                    f'Deal "{deal.title}" has unknown status "{deal.status}". '
                    "Placing in first column."
                )
                logger.warning(
                    "board.unknown_status",
                    deal_id=deal.id,
                    status=deal.status,
                    placed_in=first.id,
                )
                warnings.append(message)
                deal = deal.model_copy(update={"status": first.id})
                column = first
            column.deals.append(deal)

        return board, warnings

    # ── Move (optimistic) ───────────────────────────────────────────────────

    async def move(self, deal_id: str, from_column: str, to_column: str) -> MutationResult:
        """Move a deal between columns optimistically.

        Returns a skipped no-op result (and issues no remote call) when the
        columns are equal or either column id is unknown.
        """
        if from_column == to_column or not deal_id:
            return MutationResult(ok=True, action="move", deal_id=deal_id, skipped=True)
        if self._state.column(from_column) is None or self._state.column(to_column) is None:
            logger.info(
                "board.move_ignored_unknown_column",
                deal_id=deal_id,
                from_column=from_column,
                to_column=to_column,
            )
            return MutationResult(ok=True, action="move", deal_id=deal_id, skipped=True)

        if self._serialize_moves and deal_id in self._moves_in_flight:
            message = "This deal is already being moved. Wait for it to finish."
            self._notifier.error(message)
            logger.info("board.move_rejected_in_flight", deal_id=deal_id)
            return MutationResult(ok=False, action="move", deal_id=deal_id, error=message)

        # Snapshot and speculative mutation run with no await in between.
        snapshot = self._state.model_copy(deep=True)
        try:
            moved = self._apply_move(deal_id, from_column, to_column)
        except InvariantViolation as exc:
            self._state = snapshot
            board_moves_total.labels(outcome="aborted").inc()
            logger.error(
                "board.move_aborted",
                deal_id=deal_id,
                from_column=from_column,
                to_column=to_column,
                error=str(exc),
            )
            self._notifier.error(f"Error moving deal: {exc}")
            return MutationResult(ok=False, action="move", deal_id=deal_id, error=str(exc))

        mark = self._commit_seq
        self._open_marks.append(mark)
        action_key = f"move:{deal_id}"
        self._moves_in_flight.add(deal_id)
        self._set_action(action_key, ActionState.IN_FLIGHT)
        toast_id = self._notifier.loading("Updating deal status...")

        try:
            updated = await self._gateway.update(
                DEALS_TABLE,
                {"status": to_column},
                filters={"id": deal_id, "user_id": self._owner_id},
            )
            if not updated:
                raise AuthorityError("Deal not found or not owned by the current user.")
        except Exception as exc:
            detail = _describe(exc)
            self._notifier.dismiss(toast_id)
            self._rollback(snapshot, mark)
            self._settle_move(deal_id, mark)
            self._set_action(action_key, ActionState.ERROR)
            board_moves_total.labels(outcome="rolled_back").inc()
            logger.error(
                "board.move_rolled_back",
                deal_id=deal_id,
                from_column=from_column,
                to_column=to_column,
                error=detail,
            )
            self._notifier.error(f"Failed to move deal: {detail}")
            return MutationResult(ok=False, action="move", deal_id=deal_id, error=detail)

        self._commit_seq += 1
        self._confirmed.append((self._commit_seq, deal_id, to_column))
        self._settle_move(deal_id, mark)
        self._notifier.dismiss(toast_id)
        self._actions.pop(action_key, None)
        board_moves_total.labels(outcome="committed").inc()
        logger.info(
            "board.move_committed",
            deal_id=deal_id,
            from_column=from_column,
            to_column=to_column,
        )
        self._notifier.success(
            f'Deal "{moved.title}" moved to "{self._column_title(to_column)}".'
        )
        return MutationResult(ok=True, action="move", deal_id=deal_id)

    def _rollback(self, snapshot: BoardState, mark: int) -> None:
        """Restore ``snapshot``, then replay moves confirmed after it was taken."""
        self._state = snapshot
        for seq, deal_id, to_column in self._confirmed:
            if seq > mark:
                self._replay(deal_id, to_column)

    def _replay(self, deal_id: str, to_column: str) -> None:
        found = self._state.find_deal(deal_id)
        target = self._state.column(to_column)
        if found is None or target is None:
            return
        source, deal = found
        if source.id == to_column:
            return
        source.deals.remove(deal)
        target.deals.insert(0, deal.model_copy(update={"status": to_column}))
        logger.info("board.move_replayed", deal_id=deal_id, to_column=to_column)

    def _settle_move(self, deal_id: str, mark: int) -> None:
        self._moves_in_flight.discard(deal_id)
        self._open_marks.remove(mark)
        # Only moves still in flight can need a replay.
        oldest = min(self._open_marks, default=self._commit_seq)
        self._confirmed = [entry for entry in self._confirmed if entry[0] > oldest]

    def _apply_move(self, deal_id: str, from_column: str, to_column: str) -> Deal:
        """Locate and move the deal in one step; raise before touching state if it is gone."""
        source = self._state.column(from_column)
        target = self._state.column(to_column)
        if source is None or target is None:
            raise InvariantViolation("source or target column not found.")

        index = source.index_of(deal_id)
        if index == -1:
            raise InvariantViolation("the deal is no longer in its source column.")

        deal = source.deals.pop(index)
        moved = deal.model_copy(update={"status": to_column})
        target.deals.insert(0, moved)
        return moved

    # ── Add / Edit / Delete (write, then reload) ────────────────────────────

    async def add(self, payload: DealPayload) -> MutationResult:
        """Insert a new deal for the owner, then reload the board."""
        return await self._submit("add", payload, deal_id=None)

    async def update(self, deal_id: str, payload: DealPayload) -> MutationResult:
        """Replace an owned deal's fields, then reload the board."""
        return await self._submit("update", payload, deal_id=deal_id)

    async def _submit(
        self,
        action: str,
        payload: DealPayload,
        deal_id: str | None,
    ) -> MutationResult:
        if self.action_state("submit") == ActionState.IN_FLIGHT:
            logger.info("board.submit_ignored_in_flight", action=action, deal_id=deal_id)
            return MutationResult(
                ok=False,
                action=action,
                deal_id=deal_id,
                error="A save is already in progress.",
                skipped=True,
            )

        verb = "update" if action == "update" else "add"
        if not self._known_status(payload.status):
            message = f'Failed to {verb} deal: unknown status "{payload.status}".'
            self._notifier.error(message)
            return MutationResult(ok=False, action=action, deal_id=deal_id, error=message)

        self._set_action("submit", ActionState.IN_FLIGHT)
        toast_id = self._notifier.loading("Updating deal..." if deal_id else "Adding deal...")
        values = {**payload.model_dump(mode="json"), "user_id": self._owner_id}

        try:
            if deal_id:
                rows = await self._gateway.update(
                    DEALS_TABLE,
                    values,
                    filters={"id": deal_id, "user_id": self._owner_id},
                )
                if not rows:
                    raise AuthorityError("Deal not found or not owned by the current user.")
            else:
                rows = await self._gateway.insert(DEALS_TABLE, values)
                if rows:
                    deal_id = str(rows[0].get("id")) if rows[0].get("id") is not None else None
        except Exception as exc:
            detail = _describe(exc)
            self._notifier.dismiss(toast_id)
            self._set_action("submit", ActionState.ERROR)
            logger.error("board.submit_failed", action=action, deal_id=deal_id, error=detail)
            self._notifier.error(f"Failed to {verb} deal: {detail}")
            return MutationResult(ok=False, action=action, deal_id=deal_id, error=detail)

        self._notifier.dismiss(toast_id)
        self._set_action("submit", ActionState.IDLE)
        logger.info("board.submit_complete", action=action, deal_id=deal_id)
        self._notifier.success(
            "Deal updated successfully." if action == "update" else "Deal added successfully."
        )
        await self.load()
        return MutationResult(ok=True, action=action, deal_id=deal_id)

    async def delete(self, deal_id: str) -> MutationResult:
        """Delete an owned deal, then reload the board."""
        if self.action_state("delete") == ActionState.IN_FLIGHT:
            logger.info("board.delete_ignored_in_flight", deal_id=deal_id)
            return MutationResult(
                ok=False,
                action="delete",
                deal_id=deal_id,
                error="A delete is already in progress.",
                skipped=True,
            )

        self._set_action("delete", ActionState.IN_FLIGHT)
        toast_id = self._notifier.loading("Deleting deal...")
        try:
            await self._gateway.delete(
                DEALS_TABLE,
                filters={"id": deal_id, "user_id": self._owner_id},
            )
        except Exception as exc:
            detail = _describe(exc)
            self._notifier.dismiss(toast_id)
            self._set_action("delete", ActionState.ERROR)
            logger.error("board.delete_failed", deal_id=deal_id, error=detail)
            self._notifier.error(f"Failed to delete deal: {detail}")
            return MutationResult(ok=False, action="delete", deal_id=deal_id, error=detail)

        self._notifier.dismiss(toast_id)
        self._set_action("delete", ActionState.IDLE)
        logger.info("board.delete_complete", deal_id=deal_id)
        self._notifier.success("Deal deleted successfully.")
        await self.load()
        return MutationResult(ok=True, action="delete", deal_id=deal_id)
