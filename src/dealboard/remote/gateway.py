"""Remote authority abstract base class -- the interface every backend implements.

The engines never talk HTTP directly; they call a RemoteGateway. Methods
return data on success and raise a ``src.dealboard.core.errors.RemoteError``
subclass on failure, so callers can tell transport, authority and
malformed-response failures apart.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from typing import Any

from src.dealboard.auth.schemas import AuthChangeEvent, Identity, Session

AuthListener = Callable[[AuthChangeEvent, Session | None], None]
Filters = Mapping[str, Any]


class RemoteGateway(ABC):
    """Abstract interface for the remote data authority.

    Row operations take equality filters; a filter value that is a list,
    tuple or set means "column is one of". Session changes are pushed to
    listeners registered with ``on_auth_state_change``; listeners are plain
    callables invoked synchronously when the change happens.

    Methods:
        select: Fetch rows matching filters, optionally ordered and limited.
        insert: Insert one row, return the stored representation.
        update: Update rows matching filters, return updated rows.
        delete: Delete rows matching filters.
        upsert: Insert or merge on a conflict column, return stored rows.
        invoke_function: Call a named server function, return its JSON body.
        get_session: Current session or None.
        sign_in_with_password: Start a session from credentials.
        sign_up: Register a new user.
        sign_out: End the current session.
        on_auth_state_change: Subscribe to session change pushes.
    """

    @abstractmethod
    async def select(
        self,
        table: str,
        *,
        filters: Filters | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch rows matching filters."""
        ...

    @abstractmethod
    async def insert(self, table: str, values: dict[str, Any]) -> list[dict[str, Any]]:
        """Insert one row, return stored rows."""
        ...

    @abstractmethod
    async def update(
        self,
        table: str,
        values: dict[str, Any],
        *,
        filters: Filters,
    ) -> list[dict[str, Any]]:
        """Update rows matching filters."""
        ...

    @abstractmethod
    async def delete(self, table: str, *, filters: Filters) -> None:
        """Delete rows matching filters."""
        ...

    @abstractmethod
    async def upsert(
        self,
        table: str,
        values: dict[str, Any],
        *,
        on_conflict: str,
    ) -> list[dict[str, Any]]:
        """Insert or merge a row keyed by ``on_conflict``."""
        ...

    @abstractmethod
    async def invoke_function(
        self,
        name: str,
        *,
        body: dict[str, Any] | None = None,
        method: str = "POST",
    ) -> Any:
        """Invoke a server function with the session bearer token attached."""
        ...

    @abstractmethod
    async def get_session(self) -> Session | None:
        """Return the current session, if any."""
        ...

    @abstractmethod
    async def sign_in_with_password(self, email: str, password: str) -> Session:
        """Sign in and push SIGNED_IN."""
        ...

    @abstractmethod
    async def sign_up(
        self,
        email: str,
        password: str,
        metadata: dict[str, Any] | None = None,
    ) -> Identity | None:
        """Register a user. Pushes SIGNED_IN only if the authority returns a session."""
        ...

    @abstractmethod
    async def sign_out(self) -> None:
        """End the session and push SIGNED_OUT."""
        ...

    @abstractmethod
    def on_auth_state_change(self, listener: AuthListener) -> Callable[[], None]:
        """Register a session change listener; returns an unsubscribe callable."""
        ...


def require_filters(filters: Filters | None, operation: str) -> Filters:
    """Refuse unfiltered writes. Every update/delete must be scoped."""
    if not filters:
        raise ValueError(f"{operation} requires at least one filter")
    return filters
