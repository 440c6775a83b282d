"""Conversation aggregate and its reply streaming state machine.

A conversation owns its messages and streams at most one bot reply at a
time. The message being streamed into is tracked by id, never by a second
reference, and every generation attempt ends with the same cleanup whether
it completed, failed or was stopped by the user.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Iterator, Sequence

from ..ai.ai_types import (
    ConnectivityMonitor,
    StreamCancelledError,
    StreamingClient,
    StreamOutcome,
)
from ..events import (
    ConversationRenamed,
    EventBus,
    FragmentReceived,
    GenerationFinished,
    GenerationStarted,
    MessageAdded,
    MessageDeleted,
    PreviewImageChanged,
)
from ..services.notifications import NotificationLevel, NotificationSink
from ..utils.images import ImageEncoder
from .errors import (
    DuplicateMessageError,
    GenerationInProgressError,
    MessageNotFoundError,
    NoIncomingMessageError,
)
from .message_model import STREAM_STOPPED_BY_USER, Message

LOGGER = logging.getLogger(__name__)

NAME_MAX_CHARS = 20
IMAGE_READ_FAILED = "Unable to read image, check the log for error information"


class ConversationState(Enum):
    """Whether a reply is currently being streamed."""

    IDLE = "idle"
    STREAMING = "streaming"


class Conversation:
    """Ordered chat history plus the single in-flight bot reply.

    Collaborators are passed in explicitly. Only ``client`` is required; the
    connectivity monitor, notifier and image encoder are optional and their
    side effects are skipped when absent.
    """

    def __init__(
        self,
        client: StreamingClient,
        *,
        connectivity: ConnectivityMonitor | None = None,
        notifier: NotificationSink | None = None,
        image_encoder: ImageEncoder | None = None,
        event_bus: EventBus | None = None,
        conversation_id: int | None = None,
        name: str = "",
        messages: Sequence[Message] = (),
    ) -> None:
        self._id = conversation_id if conversation_id is not None else int(time.time() * 1000)
        self._client = client
        self._connectivity = connectivity
        self._notifier = notifier
        self._image_encoder = image_encoder
        self._bus = event_bus or EventBus()
        self._name = name
        self._messages: list[Message] = []
        self._incoming_id: str | None = None
        self._aborted_by_user: bool | None = None
        self._streaming = False
        self._preview_image: str | None = None
        for message in messages:
            self._append(message, publish=False)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def id(self) -> int:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def events(self) -> EventBus:
        """Subscription point for changes to this conversation."""
        return self._bus

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def history(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    @property
    def incoming_message(self) -> Message | None:
        if self._incoming_id is None:
            return None
        return self._find(self._incoming_id)

    @property
    def aborted_by_user(self) -> bool | None:
        return self._aborted_by_user

    @property
    def preview_image(self) -> str | None:
        return self._preview_image

    @property
    def is_generating(self) -> bool:
        return self._incoming_id is not None

    @property
    def state(self) -> ConversationState:
        return ConversationState.STREAMING if self._streaming else ConversationState.IDLE

    # ------------------------------------------------------------------
    # Message management
    # ------------------------------------------------------------------

    def set_name(self, name: str | None) -> None:
        if not name or name == self._name:
            return
        self._name = name
        self._bus.publish(ConversationRenamed(conversation_id=self._id, name=name))

    def add_user_message(self, content: str = "", image: str | None = None) -> Message | None:
        """Append a user turn; empty input without an image is ignored."""

        if not content and not image:
            return None
        if not self._messages:
            self.set_name(content[:NAME_MAX_CHARS])
        message = Message.user(content, image=image)
        self._append(message)
        return message

    def delete_message(self, message: Message) -> None:
        """Remove ``message`` by identity.

        The message currently being streamed into cannot be deleted; abort
        the generation and wait for it to finish first.
        """

        index = self._index_of(message)
        if self._streaming and message.id == self._incoming_id:
            raise GenerationInProgressError("Cannot delete the message that is being streamed")
        del self._messages[index]
        if message.id == self._incoming_id:
            self._incoming_id = None
        LOGGER.debug("Deleted message %s from conversation %s", message.id, self._id)
        self._bus.publish(MessageDeleted(conversation_id=self._id, message_id=message.id))

    async def set_preview_image(self, file: Path | str | None = None) -> None:
        """Stage an image for the next user message, or clear it."""

        if not file:
            self._set_preview(None)
            return
        if self._image_encoder is None:
            raise RuntimeError("No image encoder configured")
        try:
            encoded = await self._image_encoder.encode(file)
        except Exception:
            LOGGER.exception("Failed to encode preview image %s", file)
            if self._notifier is not None:
                self._notifier.notify(IMAGE_READ_FAILED, NotificationLevel.ERROR)
            return
        self._set_preview(encoded)

    # ------------------------------------------------------------------
    # Streaming state machine
    # ------------------------------------------------------------------

    def create_incoming_message(self) -> Message:
        """Append an empty bot placeholder and mark it as in flight."""

        if self._incoming_id is not None or self._streaming:
            raise GenerationInProgressError("A reply is already being generated")
        bot_name = self._connectivity.selected_model_name if self._connectivity else None
        message = Message.bot(bot_name)
        self._append(message)
        self._incoming_id = message.id
        # An abort requested while idle belongs to no stream.
        self._aborted_by_user = False
        return message

    def update_incoming_message(self, fragment: str) -> None:
        incoming = self.incoming_message
        if incoming is None:
            raise NoIncomingMessageError("No message is being streamed into")
        incoming.content += fragment
        self._bus.publish(
            FragmentReceived(conversation_id=self._id, message_id=incoming.id, fragment=fragment)
        )

    def commit_incoming_message(self) -> None:
        """Return to idle: release the in-flight message and the abort flag."""

        self._incoming_id = None
        self._aborted_by_user = False
        self._streaming = False

    def abort_generation(self) -> None:
        """Flag the stream as stopped by the user and ask the client to cancel.

        Cancellation is cooperative: the reply loop ends once the client's
        stream raises. Calling this while idle only re-asserts the flag.
        """

        self._aborted_by_user = True
        LOGGER.debug("Abort requested for conversation %s", self._id)
        self._client.cancel()

    async def generate_message(self, target: Message) -> StreamOutcome:
        """Stream a bot reply into ``target``.

        Failures from the stream are recorded on ``target`` and reported
        through the returned outcome; they are never raised.
        """

        self._index_of(target)
        if self._streaming or (self._incoming_id is not None and self._incoming_id != target.id):
            raise GenerationInProgressError("A reply is already being generated")

        if self._incoming_id is None:
            # Regenerating an existing reply; an earlier idle abort is stale.
            self._aborted_by_user = False
        self._incoming_id = target.id
        self._streaming = True
        target.content = ""
        target.clear_error()
        self._bus.publish(GenerationStarted(conversation_id=self._id, message_id=target.id))
        LOGGER.debug("Generating message %s in conversation %s", target.id, self._id)

        outcome: StreamOutcome | None = None
        fragments = 0
        try:
            stream = self._client.stream(self.history(), target)
            try:
                async for fragment in stream:
                    self.update_incoming_message(fragment)
                    fragments += 1
            finally:
                await _close_stream(stream)
            outcome = StreamOutcome.completed(target.id, fragments)
        except asyncio.CancelledError:
            target.record_error(StreamCancelledError(STREAM_STOPPED_BY_USER))
            outcome = StreamOutcome.cancelled(target.id, fragments)
            raise
        except Exception as exc:
            if self._aborted_by_user or isinstance(exc, StreamCancelledError):
                target.record_error(StreamCancelledError(STREAM_STOPPED_BY_USER))
                outcome = StreamOutcome.cancelled(target.id, fragments)
            else:
                LOGGER.warning("Streaming message %s failed: %s", target.id, exc)
                target.record_error(exc)
                outcome = StreamOutcome.failed(target.id, fragments, exc)
                if self._connectivity is not None:
                    self._connectivity.revalidate_connectivity()
        finally:
            self.commit_incoming_message()
            if outcome is None:
                outcome = StreamOutcome.cancelled(target.id, fragments)
            self._bus.publish(
                GenerationFinished(
                    conversation_id=self._id,
                    message_id=target.id,
                    outcome=outcome.kind.value,
                    error=target.error.message if target.error else None,
                )
            )
        LOGGER.debug("Message %s finished: %s", target.id, outcome.kind.value)
        return outcome

    def close(self) -> None:
        """Release conversation-local resources, cancelling any active stream."""

        if self._streaming:
            self.abort_generation()
        self._preview_image = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _append(self, message: Message, *, publish: bool = True) -> None:
        if self._find(message.id) is not None:
            raise DuplicateMessageError(f"Message id {message.id!r} already exists")
        self._messages.append(message)
        if publish:
            self._bus.publish(
                MessageAdded(conversation_id=self._id, message_id=message.id, from_bot=message.is_from_bot)
            )

    def _find(self, message_id: str) -> Message | None:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def _index_of(self, message: Message) -> int:
        for index, candidate in enumerate(self._messages):
            if candidate is message:
                return index
        raise MessageNotFoundError(f"Message {message.id!r} is not part of conversation {self._id}")

    def _set_preview(self, image: str | None) -> None:
        self._preview_image = image
        self._bus.publish(PreviewImageChanged(conversation_id=self._id, has_image=image is not None))


async def _close_stream(stream: AsyncIterator[str]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


__all__ = ["Conversation", "ConversationState", "IMAGE_READ_FAILED", "NAME_MAX_CHARS"]
