"""Streaming chat sessions against OpenAI-compatible backends."""

from .ai.ai_types import StreamCancelledError, StreamOutcome, StreamOutcomeKind
from .chat.conversation import Conversation, ConversationState
from .chat.message_model import Message, MessageError
from .events import EventBus

__all__ = [
    "Conversation",
    "ConversationState",
    "EventBus",
    "Message",
    "MessageError",
    "StreamCancelledError",
    "StreamOutcome",
    "StreamOutcomeKind",
]

__version__ = "0.1.0"
