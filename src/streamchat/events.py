"""Typed publish/subscribe bus used to observe conversation state changes.

Front ends subscribe to the events below instead of polling a conversation.
Every mutation of a :class:`~streamchat.chat.conversation.Conversation` that a
view could care about is published here.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar
from weakref import WeakMethod

LOGGER = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all events published on an :class:`EventBus`."""


# Events emitted at fragment rate; publishing them is not logged.
_QUIET_EVENT_TYPES: set[type] = set()


# ---------------------------------------------------------------------------
# Conversation events
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class MessageAdded(Event):
    """A message was appended to a conversation.

    Attributes:
        conversation_id: Identifier of the owning conversation.
        message_id: Identifier of the new message.
        from_bot: Whether the message is a bot placeholder.
    """

    conversation_id: int
    message_id: str
    from_bot: bool


@dataclass(slots=True)
class MessageDeleted(Event):
    """A message was removed from a conversation."""

    conversation_id: int
    message_id: str


@dataclass(slots=True)
class ConversationRenamed(Event):
    """The conversation name changed."""

    conversation_id: int
    name: str


@dataclass(slots=True)
class PreviewImageChanged(Event):
    """The staged preview image was set or cleared."""

    conversation_id: int
    has_image: bool


# ---------------------------------------------------------------------------
# Generation events
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class GenerationStarted(Event):
    """A message entered the streaming state.

    Attributes:
        conversation_id: Identifier of the owning conversation.
        message_id: Identifier of the incoming message.
    """

    conversation_id: int
    message_id: str


@dataclass(slots=True)
class FragmentReceived(Event):
    """A fragment was appended to the incoming message.

    Attributes:
        conversation_id: Identifier of the owning conversation.
        message_id: Identifier of the incoming message.
        fragment: The text that was appended.
    """

    conversation_id: int
    message_id: str
    fragment: str


_QUIET_EVENT_TYPES.add(FragmentReceived)


@dataclass(slots=True)
class GenerationFinished(Event):
    """Cleanup ran and the conversation is idle again.

    Attributes:
        conversation_id: Identifier of the owning conversation.
        message_id: Identifier of the message that was streamed into.
        outcome: ``"completed"``, ``"failed"`` or ``"cancelled"``.
        error: Error text recorded on the message, if any.
    """

    conversation_id: int
    message_id: str
    outcome: str
    error: str | None = None


# ---------------------------------------------------------------------------
# Service events
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class NoticePosted(Event):
    """A user-facing notice (toast) was posted.

    Attributes:
        message: The notice text.
        level: Severity name such as ``"info"`` or ``"error"``.
    """

    message: str
    level: str


@dataclass(slots=True)
class ModelsUpdated(Event):
    """The model catalog finished a connectivity probe."""

    models: tuple[str, ...]
    selected: str | None
    connected: bool


class EventBus(Generic[E]):
    """Synchronous publish/subscribe bus keyed by event type.

    Handlers registered for a base class also receive its subclasses, so
    subscribing to :class:`Event` observes everything. Bound methods are held
    weakly and dropped once their owner is collected; plain functions and
    lambdas are held strongly.

    Not thread-safe: use it from the event loop thread only.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: defaultdict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register ``handler`` for ``event_type``; duplicates are invoked twice."""
        self._handlers[event_type].append(_HandlerRef.create(handler))
        LOGGER.debug("Subscribed %s to %s", _handler_name(handler), event_type.__name__)

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""
        handlers = self._handlers.get(event_type)
        if not handlers:
            return
        for index, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(index)
                LOGGER.debug(
                    "Unsubscribed %s from %s", _handler_name(handler), event_type.__name__
                )
                return

    def publish(self, event: E) -> None:
        """Invoke every matching handler in registration order.

        A handler that raises is logged and skipped; the remaining handlers
        still run and the publisher never sees the exception.
        """
        event_type = type(event)
        quiet = event_type in _QUIET_EVENT_TYPES
        delivered = 0
        for registered_type in event_type.__mro__:
            handlers = self._handlers.get(registered_type)
            if not handlers:
                continue
            dead: list[int] = []
            for index, handler_ref in enumerate(list(handlers)):
                handler = handler_ref.resolve()
                if handler is None:
                    dead.append(index)
                    continue
                delivered += 1
                try:
                    handler(event)
                except Exception:
                    LOGGER.exception(
                        "Handler %s raised while handling %s",
                        _handler_name(handler),
                        event_type.__name__,
                    )
            for index in reversed(dead):
                if index < len(handlers) and handlers[index].resolve() is None:
                    handlers.pop(index)
        if not quiet:
            LOGGER.debug("Published %s to %d handler(s)", event_type.__name__, delivered)

    def clear(self) -> None:
        """Drop every registered handler."""
        self._handlers.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        """Return the handler count for ``event_type`` or across all types."""
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Weak reference for bound methods, strong reference for everything else."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, target: WeakMethod | Handler, is_weak: bool) -> None:
        self._ref = target
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        return resolved is not None and resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        return f"{type(handler.__self__).__name__}.{handler.__func__.__name__}"
    return getattr(handler, "__name__", repr(handler))


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "MessageAdded",
    "MessageDeleted",
    "ConversationRenamed",
    "PreviewImageChanged",
    "GenerationStarted",
    "FragmentReceived",
    "GenerationFinished",
    "NoticePosted",
    "ModelsUpdated",
]
