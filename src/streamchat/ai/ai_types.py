"""Shared typing contracts for the streaming backend."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, AsyncIterator, Protocol, Sequence

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ..chat.message_model import Message


class StreamCancelledError(Exception):
    """Raised by a streaming client once :meth:`StreamingClient.cancel` took effect."""


class StreamingClient(Protocol):
    """Backend that turns a conversation history into a reply stream."""

    def stream(self, history: Sequence[Message], target: Message) -> AsyncIterator[str]:
        """Return a lazy sequence of text fragments for ``target``.

        The iterator may raise at any point; after :meth:`cancel` it should
        raise :class:`StreamCancelledError` as soon as feasible.
        """
        ...

    def cancel(self) -> None:
        """Request termination of the active stream; a no-op when idle."""
        ...


class ConnectivityMonitor(Protocol):
    """Settings collaborator that knows the selected model and backend health."""

    @property
    def selected_model_name(self) -> str | None:
        """Display name of the currently selected model."""
        ...

    def revalidate_connectivity(self) -> None:
        """Fire-and-forget check that the backend is still reachable."""
        ...


class StreamOutcomeKind(str, Enum):
    """Terminal result of one generation attempt."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True, frozen=True)
class StreamOutcome:
    """Tagged outcome returned by :meth:`Conversation.generate_message`.

    ``error`` is only set for :attr:`StreamOutcomeKind.FAILED`.
    """

    kind: StreamOutcomeKind
    message_id: str
    fragment_count: int = 0
    error: BaseException | None = None

    @classmethod
    def completed(cls, message_id: str, fragment_count: int) -> StreamOutcome:
        return cls(StreamOutcomeKind.COMPLETED, message_id, fragment_count)

    @classmethod
    def failed(cls, message_id: str, fragment_count: int, error: BaseException) -> StreamOutcome:
        return cls(StreamOutcomeKind.FAILED, message_id, fragment_count, error)

    @classmethod
    def cancelled(cls, message_id: str, fragment_count: int) -> StreamOutcome:
        return cls(StreamOutcomeKind.CANCELLED, message_id, fragment_count)

    @property
    def is_completed(self) -> bool:
        return self.kind is StreamOutcomeKind.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.kind is StreamOutcomeKind.FAILED

    @property
    def is_cancelled(self) -> bool:
        return self.kind is StreamOutcomeKind.CANCELLED


__all__ = [
    "ConnectivityMonitor",
    "StreamCancelledError",
    "StreamOutcome",
    "StreamOutcomeKind",
    "StreamingClient",
]
