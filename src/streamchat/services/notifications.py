"""User-facing notices (toasts) routed to the log and the event bus."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

from ..events import EventBus, NoticePosted

LOGGER = logging.getLogger(__name__)


class NotificationLevel(str, Enum):
    """Severity attached to a notice."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"

    @property
    def log_level(self) -> int:
        return _LOG_LEVELS[self]


_LOG_LEVELS = {
    NotificationLevel.INFO: logging.INFO,
    NotificationLevel.SUCCESS: logging.INFO,
    NotificationLevel.WARNING: logging.WARNING,
    NotificationLevel.ERROR: logging.ERROR,
}


class NotificationSink(Protocol):
    """Fire-and-forget notice delivery."""

    def notify(self, message: str, level: NotificationLevel = NotificationLevel.INFO) -> None:
        ...


@dataclass(slots=True, frozen=True)
class Notice:
    """A delivered notice kept for later inspection."""

    message: str
    level: NotificationLevel
    posted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationCenter:
    """Default :class:`NotificationSink` with a bounded history."""

    def __init__(self, event_bus: EventBus | None = None, *, capacity: int = 50) -> None:
        self._bus = event_bus
        self._history: deque[Notice] = deque(maxlen=max(1, capacity))

    def notify(self, message: str, level: NotificationLevel | str = NotificationLevel.INFO) -> None:
        resolved = _coerce_level(level)
        notice = Notice(message=message, level=resolved)
        self._history.append(notice)
        LOGGER.log(resolved.log_level, "Notice (%s): %s", resolved.value, message)
        if self._bus is not None:
            self._bus.publish(NoticePosted(message=message, level=resolved.value))

    def recent(self, limit: int | None = None) -> list[Notice]:
        notices = list(self._history)
        if limit is None or limit >= len(notices):
            return notices
        return notices[-limit:]

    def clear(self) -> None:
        self._history.clear()

    def __len__(self) -> int:
        return len(self._history)


def _coerce_level(level: NotificationLevel | str) -> NotificationLevel:
    try:
        return NotificationLevel(level)
    except ValueError:
        LOGGER.warning("Unknown notification level %r; using info", level)
        return NotificationLevel.INFO


__all__ = ["Notice", "NotificationCenter", "NotificationLevel", "NotificationSink"]
