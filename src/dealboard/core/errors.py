"""Failure taxonomy for calls against the remote authority.

Every gateway method raises one of these on failure. Engine operations
catch them at their own boundary and turn them into a notification plus a
log event -- none of them are allowed to reach rendering code.
"""

from __future__ import annotations


class RemoteError(Exception):
    """Base class for any failed call to the remote authority."""

    def __init__(self, detail: str, *, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class TransportError(RemoteError):
    """The request never produced a response (DNS, connection reset, client timeout)."""


class AuthorityError(RemoteError):
    """The authority answered but refused the operation (validation, permission, conflict)."""

    def __init__(
        self,
        detail: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(detail, status_code=status_code)
        self.code = code


class MalformedResponseError(RemoteError):
    """The response body was not JSON or did not have the expected shape."""


class EntitlementTimeoutError(RemoteError):
    """Entitlement resolution did not finish inside its time budget."""


class InvariantViolation(Exception):
    """A local state invariant did not hold (e.g. the moved deal is gone)."""
