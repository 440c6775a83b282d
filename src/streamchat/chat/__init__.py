"""Conversation aggregate, messages and their errors."""

from .conversation import Conversation, ConversationState
from .errors import (
    ConversationError,
    DuplicateMessageError,
    GenerationInProgressError,
    MessageNotFoundError,
    NoIncomingMessageError,
)
from .message_model import Message, MessageError

__all__ = [
    "Conversation",
    "ConversationError",
    "ConversationState",
    "DuplicateMessageError",
    "GenerationInProgressError",
    "Message",
    "MessageError",
    "MessageNotFoundError",
    "NoIncomingMessageError",
]
