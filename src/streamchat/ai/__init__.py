"""Streaming backend client and its typing contracts."""

from .ai_types import StreamCancelledError, StreamOutcome, StreamOutcomeKind, StreamingClient
from .client import AIClient, ClientSettings

__all__ = [
    "AIClient",
    "ClientSettings",
    "StreamCancelledError",
    "StreamOutcome",
    "StreamOutcomeKind",
    "StreamingClient",
]
