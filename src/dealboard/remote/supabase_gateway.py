"""Supabase-backed RemoteGateway over plain HTTP (httpx).

Talks to the three Supabase HTTP surfaces the client core needs:
- PostgREST rows at ``/rest/v1/<table>`` (``eq.`` / ``in.()`` filters, ``order``)
- Edge functions at ``/functions/v1/<name>``
- GoTrue auth at ``/auth/v1/...`` (password grant, refresh grant, signup, logout)

The session is held in memory. Every sign-in, sign-out and token refresh is
pushed to registered listeners, which is how the SessionBootstrapper learns
about session changes.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from src.dealboard.auth.schemas import AuthChangeEvent, Identity, Session
from src.dealboard.config import Settings
from src.dealboard.core.errors import AuthorityError, MalformedResponseError, TransportError
from src.dealboard.remote.gateway import AuthListener, Filters, RemoteGateway, require_filters

logger = structlog.get_logger(__name__)


def _format_filter_value(value: Any) -> str:
    if isinstance(value, (list, tuple, set, frozenset)):
        joined = ",".join(str(v) for v in value)
        return f"in.({joined})"
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    return f"eq.{value}"


def _filter_params(filters: Filters | None) -> dict[str, str]:
    return {column: _format_filter_value(value) for column, value in (filters or {}).items()}


def _authority_error(response: httpx.Response) -> AuthorityError:
    """Build an AuthorityError from a PostgREST/GoTrue/function error body."""
    code: str | None = None
    message = response.text or response.reason_phrase
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = (
            body.get("message")
            or body.get("msg")
            or body.get("error_description")
            or body.get("error")
            or message
        )
        raw_code = body.get("code") or body.get("error_code")
        code = str(raw_code) if raw_code is not None else None
    return AuthorityError(str(message), status_code=response.status_code, code=code)


def _parse_session(body: Any) -> Session:
    if not isinstance(body, dict) or "access_token" not in body:
        raise MalformedResponseError("auth response did not contain a session")
    data = dict(body)
    if data.get("expires_at") is None and data.get("expires_in") is not None:
        data["expires_at"] = int(time.time()) + int(data["expires_in"])
    try:
        return Session.model_validate(data)
    except ValidationError as exc:
        raise MalformedResponseError(f"invalid session payload: {exc}") from exc


class SupabaseGateway(RemoteGateway):
    """RemoteGateway implementation against a Supabase project.

    Args:
        url: Project base URL (``https://<ref>.supabase.co``).
        api_key: Anon key for browser-equivalent access, or the service role
            key for server-side writes.
        client: Optional shared httpx.AsyncClient (tests inject one with a
            MockTransport).
        timeout: Request timeout in seconds when the client is created here.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._url = url.rstrip("/")
        self._api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._session: Session | None = None
        self._listeners: list[AuthListener] = []

    @classmethod
    def from_settings(cls, settings: Settings, *, service_role: bool = False) -> SupabaseGateway:
        key = settings.SUPABASE_SERVICE_ROLE_KEY if service_role else settings.SUPABASE_ANON_KEY
        return cls(settings.SUPABASE_URL, key, timeout=settings.HTTP_TIMEOUT_SECONDS)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ── Transport ───────────────────────────────────────────────────────────

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        bearer = self._session.access_token if self._session else self._api_key
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {bearer}",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        try:
            response = await self._client.request(
                method,
                f"{self._url}{path}",
                params=params,
                json=json,
                headers=self._headers(headers),
            )
        except httpx.HTTPError as exc:
            logger.warning("supabase.transport_error", method=method, path=path, error=str(exc))
            raise TransportError(str(exc) or exc.__class__.__name__) from exc

        if response.status_code >= 400:
            error = _authority_error(response)
            logger.warning(
                "supabase.authority_error",
                method=method,
                path=path,
                status_code=response.status_code,
                error=error.detail,
            )
            raise error

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponseError(f"non-JSON response from {path}") from exc

    @staticmethod
    def _rows(body: Any, path: str) -> list[dict[str, Any]]:
        if body is None:
            return []
        if not isinstance(body, list):
            raise MalformedResponseError(f"expected a row list from {path}")
        return body

    # ── Rows ────────────────────────────────────────────────────────────────

    async def select(
        self,
        table: str,
        *,
        filters: Filters | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        params = {"select": "*", **_filter_params(filters)}
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(limit)
        path = f"/rest/v1/{table}"
        return self._rows(await self._request("GET", path, params=params), path)

    async def insert(self, table: str, values: dict[str, Any]) -> list[dict[str, Any]]:
        path = f"/rest/v1/{table}"
        body = await self._request(
            "POST",
            path,
            json=values,
            headers={"Prefer": "return=representation"},
        )
        return self._rows(body, path)

    async def update(
        self,
        table: str,
        values: dict[str, Any],
        *,
        filters: Filters,
    ) -> list[dict[str, Any]]:
        path = f"/rest/v1/{table}"
        body = await self._request(
            "PATCH",
            path,
            params=_filter_params(require_filters(filters, "update")),
            json=values,
            headers={"Prefer": "return=representation"},
        )
        return self._rows(body, path)

    async def delete(self, table: str, *, filters: Filters) -> None:
        await self._request(
            "DELETE",
            f"/rest/v1/{table}",
            params=_filter_params(require_filters(filters, "delete")),
        )

    async def upsert(
        self,
        table: str,
        values: dict[str, Any],
        *,
        on_conflict: str,
    ) -> list[dict[str, Any]]:
        path = f"/rest/v1/{table}"
        body = await self._request(
            "POST",
            path,
            params={"on_conflict": on_conflict},
            json=values,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        return self._rows(body, path)

    # ── Functions ───────────────────────────────────────────────────────────

    async def invoke_function(
        self,
        name: str,
        *,
        body: dict[str, Any] | None = None,
        method: str = "POST",
    ) -> Any:
        return await self._request(method, f"/functions/v1/{name}", json=body)

    # ── Session ─────────────────────────────────────────────────────────────

    async def get_session(self) -> Session | None:
        return self._session

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        body = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        session = _parse_session(body)
        self._set_session(AuthChangeEvent.SIGNED_IN, session)
        return session

    async def sign_up(
        self,
        email: str,
        password: str,
        metadata: dict[str, Any] | None = None,
    ) -> Identity | None:
        body = await self._request(
            "POST",
            "/auth/v1/signup",
            json={"email": email, "password": password, "data": metadata or {}},
        )
        if isinstance(body, dict) and "access_token" in body:
            session = _parse_session(body)
            self._set_session(AuthChangeEvent.SIGNED_IN, session)
            return session.user
        if isinstance(body, dict) and body.get("id"):
            # Email confirmation pending: a user exists, no session yet.
            return Identity.model_validate(body)
        if isinstance(body, dict) and isinstance(body.get("user"), dict):
            return Identity.model_validate(body["user"])
        return None

    async def refresh_session(self) -> Session:
        if self._session is None or not self._session.refresh_token:
            raise AuthorityError("no refresh token available", status_code=401)
        body = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": self._session.refresh_token},
        )
        session = _parse_session(body)
        self._set_session(AuthChangeEvent.TOKEN_REFRESHED, session)
        return session

    async def sign_out(self) -> None:
        if self._session is not None:
            try:
                await self._request("POST", "/auth/v1/logout")
            except AuthorityError as exc:
                # An already-revoked or expired token still ends the local session.
                if exc.status_code not in (401, 403, 404):
                    raise
                logger.info("supabase.sign_out_token_already_invalid", status_code=exc.status_code)
        self._set_session(AuthChangeEvent.SIGNED_OUT, None)

    def on_auth_state_change(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_session(self, event: AuthChangeEvent, session: Session | None) -> None:
        self._session = session
        logger.info(
            "supabase.auth_state_change",
            auth_event=event.value,
            user_id=session.user.id if session else None,
        )
        for listener in list(self._listeners):
            listener(event, session)
