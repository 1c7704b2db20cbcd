"""Test doubles: an in-memory RemoteGateway and session/deal factories.

The InMemoryGateway behaves like the real authority for the operations the
engines use: equality and "one of" filters, ordering, limits, server
functions, and synchronous session-change pushes. Tests can inject
failures per operation, hold an operation open on an asyncio.Event, and
inspect every call that was made.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from src.dealboard.auth.schemas import AuthChangeEvent, Identity, Session
from src.dealboard.core.errors import AuthorityError
from src.dealboard.remote.gateway import AuthListener, Filters, RemoteGateway, require_filters


# ── Factories ──────────────────────────────────────────────────────────────


def make_identity(user_id: str = "user-1", email: str | None = "owner@example.com") -> Identity:
    return Identity(id=user_id, email=email)


def make_session(user_id: str = "user-1", email: str | None = "owner@example.com") -> Session:
    return Session(
        access_token=f"token-{user_id}",
        refresh_token=f"refresh-{user_id}",
        user=make_identity(user_id, email),
    )


_BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_deal_row(
    deal_id: str,
    status: str = "lead",
    *,
    user_id: str = "user-1",
    title: str | None = None,
    age_minutes: int = 0,
    **overrides: Any,
) -> dict[str, Any]:
    """A deals-table row. Larger ``age_minutes`` means an older row."""
    row = {
        "id": deal_id,
        "user_id": user_id,
        "title": title or f"Deal {deal_id}",
        "company_name": "Acme Corp",
        "contact_name": "Jane Doe",
        "deal_value": 1000,
        "status": status,
        "description": None,
        "tags": None,
        "created_at": (_BASE_TIME - timedelta(minutes=age_minutes)).isoformat(),
    }
    row.update(overrides)
    return row


# ── In-memory gateway ──────────────────────────────────────────────────────


def _matches(row: dict[str, Any], filters: Filters | None) -> bool:
    for column, expected in (filters or {}).items():
        actual = row.get(column)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif expected is None:
            if actual is not None:
                return False
        elif actual != expected:
            return False
    return True


class InMemoryGateway(RemoteGateway):
    """RemoteGateway test double backed by dicts."""

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.functions: dict[str, Any] = {}
        self.users: dict[str, tuple[str, Identity]] = {}
        self.session: Session | None = None
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.failures: dict[str, Exception] = {}
        self.holds: dict[str, asyncio.Event] = {}
        self._listeners: list[AuthListener] = []

    # ── Test controls ──

    def seed(self, table: str, *rows: dict[str, Any]) -> None:
        self.tables.setdefault(table, []).extend(copy.deepcopy(list(rows)))

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.get(table, [])

    def fail(self, operation: str, exc: Exception) -> None:
        """Make every call of ``operation`` raise ``exc`` until cleared."""
        self.failures[operation] = exc

    def clear_failure(self, operation: str) -> None:
        self.failures.pop(operation, None)

    def hold(self, operation: str) -> asyncio.Event:
        """Block ``operation`` until the returned event is set."""
        event = asyncio.Event()
        self.holds[operation] = event
        return event

    def calls_of(self, operation: str) -> list[tuple[str, str, dict[str, Any]]]:
        return [call for call in self.calls if call[0] == operation]

    def push(self, event: AuthChangeEvent, session: Session | None) -> None:
        """Simulate an authority-pushed session change."""
        self.session = session
        for listener in list(self._listeners):
            listener(event, session)

    async def _enter(self, operation: str, target: str, **details: Any) -> None:
        self.calls.append((operation, target, details))
        event = self.holds.get(operation)
        if event is not None:
            await event.wait()
        exc = self.failures.get(operation)
        if exc is not None:
            raise exc

    # ── Rows ──

    async def select(
        self,
        table: str,
        *,
        filters: Filters | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        await self._enter("select", table, filters=dict(filters or {}), order_by=order_by)
        rows = [row for row in self.rows(table) if _matches(row, filters)]
        if order_by:
            rows.sort(key=lambda row: row.get(order_by) or "", reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def insert(self, table: str, values: dict[str, Any]) -> list[dict[str, Any]]:
        await self._enter("insert", table, values=dict(values))
        row = {"id": str(uuid.uuid4()), "created_at": datetime.now(timezone.utc).isoformat()}
        row.update(values)
        self.tables.setdefault(table, []).append(row)
        return [copy.deepcopy(row)]

    async def update(
        self,
        table: str,
        values: dict[str, Any],
        *,
        filters: Filters,
    ) -> list[dict[str, Any]]:
        require_filters(filters, "update")
        await self._enter("update", table, values=dict(values), filters=dict(filters))
        updated = []
        for row in self.rows(table):
            if _matches(row, filters):
                row.update(values)
                updated.append(copy.deepcopy(row))
        return updated

    async def delete(self, table: str, *, filters: Filters) -> None:
        require_filters(filters, "delete")
        await self._enter("delete", table, filters=dict(filters))
        self.tables[table] = [row for row in self.rows(table) if not _matches(row, filters)]

    async def upsert(
        self,
        table: str,
        values: dict[str, Any],
        *,
        on_conflict: str,
    ) -> list[dict[str, Any]]:
        await self._enter("upsert", table, values=dict(values), on_conflict=on_conflict)
        for row in self.rows(table):
            if row.get(on_conflict) == values.get(on_conflict):
                row.update(values)
                return [copy.deepcopy(row)]
        self.tables.setdefault(table, []).append(dict(values))
        return [dict(values)]

    # ── Functions ──

    async def invoke_function(
        self,
        name: str,
        *,
        body: dict[str, Any] | None = None,
        method: str = "POST",
    ) -> Any:
        await self._enter("invoke_function", name, body=body, method=method)
        response = self.functions.get(name)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(body)
            if asyncio.iscoroutine(response):
                response = await response
        return copy.deepcopy(response)

    # ── Session ──

    def register_user(self, email: str, password: str, user_id: str = "user-1") -> Identity:
        identity = make_identity(user_id, email)
        self.users[email] = (password, identity)
        return identity

    async def get_session(self) -> Session | None:
        await self._enter("get_session", "auth")
        return self.session

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        await self._enter("sign_in_with_password", "auth", email=email)
        known = self.users.get(email)
        if known is None or known[0] != password:
            raise AuthorityError("Invalid login credentials", status_code=400)
        session = make_session(known[1].id, email)
        self.push(AuthChangeEvent.SIGNED_IN, session)
        return session

    async def sign_up(
        self,
        email: str,
        password: str,
        metadata: dict[str, Any] | None = None,
    ) -> Identity | None:
        await self._enter("sign_up", "auth", email=email, metadata=metadata)
        if email in self.users:
            raise AuthorityError("User already registered", status_code=422)
        return self.register_user(email, password, user_id=f"user-{len(self.users) + 1}")

    async def sign_out(self) -> None:
        await self._enter("sign_out", "auth")
        self.push(AuthChangeEvent.SIGNED_OUT, None)

    def on_auth_state_change(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


