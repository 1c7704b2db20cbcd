"""Transient user-visible notifications (toasts).

The Notifier is the single sink the engines report outcomes to. A UI layer
subscribes to it and renders each Notification; tests read ``history``.
Every notification is also emitted as a structlog event so failures leave a
console-level diagnostic even when no UI is attached.
"""

from __future__ import annotations

import uuid
from collections import deque
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

HISTORY_LIMIT = 200


class NotificationKind(str, Enum):
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"
    DISMISS = "dismiss"


class Notification(BaseModel):
    """One toast event."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: NotificationKind
    message: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


NotificationListener = Callable[[Notification], None]


class Notifier:
    """Collects notifications and fans them out to listeners.

    Only the most recent ``history_limit`` notifications are kept.
    ``loading`` returns an id that must be passed to ``dismiss`` once the
    operation settles, before the matching ``success`` or ``error``.
    """

    def __init__(self, history_limit: int = HISTORY_LIMIT) -> None:
        self._listeners: list[NotificationListener] = []
        self.history: deque[Notification] = deque(maxlen=history_limit)

    def subscribe(self, listener: NotificationListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def loading(self, message: str) -> str:
        note = self._emit(NotificationKind.LOADING, message)
        return note.id

    def dismiss(self, toast_id: str) -> None:
        self._emit(NotificationKind.DISMISS, "", toast_id=toast_id)

    def success(self, message: str) -> None:
        self._emit(NotificationKind.SUCCESS, message)

    def error(self, message: str) -> None:
        self._emit(NotificationKind.ERROR, message)

    def of_kind(self, kind: NotificationKind) -> list[Notification]:
        """Return the recorded notifications of one kind, oldest first."""
        return [n for n in self.history if n.kind == kind]

    def _emit(
        self,
        kind: NotificationKind,
        message: str,
        toast_id: str | None = None,
    ) -> Notification:
        note = Notification(kind=kind, message=message)
        if toast_id is not None:
            note.id = toast_id
        self.history.append(note)

        if kind == NotificationKind.ERROR:
            logger.warning("notification.error", message=message)
        elif kind != NotificationKind.DISMISS:
            logger.debug("notification", kind=kind.value, message=message)

        for listener in list(self._listeners):
            listener(note)
        return note
