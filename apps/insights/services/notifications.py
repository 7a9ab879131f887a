"""Operator notifications for suggestion applies.

Every apply resolution produces exactly one success or failure notification
for its suggestion key, and closing a batch with applied items produces one
"N item(s) applied" notification.

NotificationService keeps an in-memory history (newest last) and fans each
notification out to registered subscribers, e.g. a UI toast bridge. A
subscriber that raises is dropped so one broken consumer cannot silence the
others.

Notification levels:
  - success : a suggestion was applied
  - error   : a suggestion failed to apply
  - info    : batch-level summaries
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from utils.logging import get_logger

logger = get_logger(__name__)


class NotificationLevel(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


@dataclass
class Notification:
    """A single message surfaced to the operator."""

    level: NotificationLevel
    message: str
    key: Optional[str] = None  # Suggestion key, None for batch-level messages
    payload: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        return {
            "level": self.level.value,
            "message": self.message,
            "key": self.key,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }


class NotificationSink(Protocol):
    """Anything that can surface a notification to a human."""

    def notify(self, notification: Notification) -> None: ...


Subscriber = Callable[[Notification], Any]


class NotificationService:
    """In-process notification sink with subscriber fan-out.

    Usage:
        svc = NotificationService()
        svc.subscribe(lambda n: print(n.message))
        svc.success("Goal added", key="goal-0")
        svc.history()
    """

    def __init__(self, max_history: int = 200):
        self._history: list[Notification] = []
        self._subscribers: list[Subscriber] = []
        self._max_history = max_history

    def subscribe(self, callback: Subscriber) -> None:
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def notify(self, notification: Notification) -> None:
        self._history.append(notification)
        if len(self._history) > self._max_history:
            del self._history[: len(self._history) - self._max_history]

        log = logger.warning if notification.level is NotificationLevel.ERROR else logger.info
        log(
            f"Notification: {notification.message}",
            extra={"level": notification.level.value, "key": notification.key},
        )

        dead: list[Subscriber] = []
        for callback in list(self._subscribers):
            try:
                callback(notification)
            except Exception as e:
                logger.warning(f"Dropping notification subscriber after error: {e}")
                dead.append(callback)
        for callback in dead:
            self.unsubscribe(callback)

    def success(self, message: str, key: str | None = None, **payload: Any) -> Notification:
        return self._emit(NotificationLevel.SUCCESS, message, key, payload)

    def error(self, message: str, key: str | None = None, **payload: Any) -> Notification:
        return self._emit(NotificationLevel.ERROR, message, key, payload)

    def info(self, message: str, key: str | None = None, **payload: Any) -> Notification:
        return self._emit(NotificationLevel.INFO, message, key, payload)

    def history(self, level: NotificationLevel | None = None) -> list[Notification]:
        if level is None:
            return list(self._history)
        return [n for n in self._history if n.level is level]

    def clear(self) -> None:
        self._history.clear()

    def _emit(
        self, level: NotificationLevel, message: str, key: str | None, payload: dict
    ) -> Notification:
        notification = Notification(level=level, message=message, key=key, payload=payload)
        self.notify(notification)
        return notification
