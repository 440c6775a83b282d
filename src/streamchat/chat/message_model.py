"""Chat message and captured error data models."""

from __future__ import annotations

import time
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Literal, Optional

ChatRole = Literal["user", "assistant"]

STREAM_STOPPED_BY_USER = "Stream stopped by user"


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def new_message_id(prefix: str) -> str:
    """Return a role-prefixed, timestamp-derived message identifier."""

    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


@dataclass(slots=True, frozen=True)
class MessageError:
    """Failure captured on a message after a streaming attempt."""

    message: str
    stack: Optional[str] = None

    @classmethod
    def from_exception(cls, error: BaseException) -> MessageError:
        """Extract the text and, when the error was raised, its traceback."""

        stack = None
        if error.__traceback__ is not None:
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return cls(message=str(error), stack=stack)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"message": self.message}
        if self.stack:
            payload["stack"] = self.stack
        return payload


@dataclass(slots=True, eq=False)
class Message:
    """One turn of a conversation.

    ``id``, ``is_from_bot``, ``bot_name`` and ``image`` are fixed once the
    message exists. ``content`` and ``error`` are written by the owning
    conversation while it streams a reply.
    """

    _FROZEN_FIELDS: ClassVar[frozenset[str]] = frozenset({"id", "is_from_bot", "bot_name", "image"})

    id: str
    is_from_bot: bool
    content: str = ""
    bot_name: Optional[str] = None
    image: Optional[str] = None
    error: Optional[MessageError] = None
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Message id must not be empty")

    def __setattr__(self, name: str, value: Any) -> None:
        if name in Message._FROZEN_FIELDS and _is_assigned(self, name):
            raise AttributeError(f"Message.{name} cannot change after creation")
        object.__setattr__(self, name, value)

    @classmethod
    def create(
        cls,
        is_from_bot: bool,
        *,
        id: str,
        content: str = "",
        bot_name: Optional[str] = None,
        image: Optional[str] = None,
    ) -> Message:
        return cls(id=id, is_from_bot=is_from_bot, content=content, bot_name=bot_name, image=image)

    @classmethod
    def user(cls, content: str = "", image: Optional[str] = None) -> Message:
        """Build a fully formed user message with a fresh id."""

        return cls.create(False, id=new_message_id("user"), content=content, image=image)

    @classmethod
    def bot(cls, bot_name: Optional[str] = None) -> Message:
        """Build an empty bot placeholder with a fresh id."""

        return cls.create(True, id=new_message_id("bot"), bot_name=bot_name)

    @property
    def role(self) -> ChatRole:
        return "assistant" if self.is_from_bot else "user"

    @property
    def has_error(self) -> bool:
        return self.error is not None

    def record_error(self, error: BaseException) -> MessageError:
        """Capture ``error`` on the message, replacing any previous one."""

        captured = MessageError.from_exception(error)
        self.error = captured
        return captured

    def clear_error(self) -> None:
        self.error = None

    def to_dict(self) -> Dict[str, Any]:
        """Plain mapping used by logs and front ends."""

        payload: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }
        if self.bot_name:
            payload["bot_name"] = self.bot_name
        if self.image:
            payload["image"] = self.image
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        return payload


def _is_assigned(instance: Message, name: str) -> bool:
    try:
        object.__getattribute__(instance, name)
    except AttributeError:
        return False
    return True


__all__ = [
    "ChatRole",
    "Message",
    "MessageError",
    "STREAM_STOPPED_BY_USER",
    "new_message_id",
]
