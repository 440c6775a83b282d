"""Exceptions raised when a conversation is used out of order.

These signal programming errors in the caller. Streaming failures are never
raised from the conversation; they are recorded on the message instead.
"""

from __future__ import annotations


class ConversationError(RuntimeError):
    """Base class for conversation precondition violations."""


class GenerationInProgressError(ConversationError):
    """A second stream was requested while one is already in flight."""


class NoIncomingMessageError(ConversationError):
    """A fragment arrived while no message is being streamed into."""


class MessageNotFoundError(ConversationError):
    """The message does not belong to the conversation."""


class DuplicateMessageError(ConversationError):
    """A message id is already used inside the conversation."""


__all__ = [
    "ConversationError",
    "DuplicateMessageError",
    "GenerationInProgressError",
    "MessageNotFoundError",
    "NoIncomingMessageError",
]
