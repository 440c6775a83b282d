"""Async streaming client built around OpenAI-compatible endpoints.

Ollama, llama.cpp and most hosted providers expose the chat completions API,
so a single client covers them. Only text deltas are surfaced: the
conversation layer needs an ordered sequence of fragments and a way to stop
it.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Sequence

from openai import AsyncOpenAI
from openai.types.chat import ChatCompletionMessageParam

from ..chat.message_model import Message
from ..utils.images import guess_image_mime
from .ai_types import StreamCancelledError

LOGGER = logging.getLogger(__name__)
_TEXT_EVENT_TYPES = frozenset({"content.delta", "refusal.delta"})


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 120.0
    temperature: float | None = None
    system_prompt: str = ""
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class _ActiveStream:
    """Book-keeping for the request currently being streamed."""

    __slots__ = ("cancelled", "response")

    def __init__(self) -> None:
        self.cancelled = False
        self.response: Any | None = None


class AIClient:
    """Streams chat completions and supports cancelling the active request.

    The client runs one stream at a time; it is meant to be shared by the
    conversations of a single front end.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._model = settings.model
        self._client = client or self._build_client(settings)
        self._active: _ActiveStream | None = None
        self._close_tasks: set[asyncio.Task[Any]] = set()
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def model(self) -> str:
        return self._model

    def use_model(self, model: str) -> None:
        """Route later requests to ``model``."""

        if model and model != self._model:
            LOGGER.debug("Switching model from %s to %s", self._model or "<unset>", model)
            self._model = model

    @property
    def is_streaming(self) -> bool:
        return self._active is not None

    def stream(self, history: Sequence[Message], target: Message) -> AsyncIterator[str]:
        """Stream the reply for ``target`` given the conversation ``history``."""

        return self.stream_chat(self.build_chat_messages(history, target))

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        **extra_params: Any,
    ) -> AsyncIterator[str]:
        """Yield text deltas for the provided chat messages.

        Raises :class:`StreamCancelledError` once :meth:`cancel` took effect.
        """

        if self._active is not None:
            raise RuntimeError("A stream is already active on this client")
        if not self._model:
            raise ValueError("No model selected")

        payload = self._build_chat_payload(list(messages), extra_params)
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        handle = _ActiveStream()
        self._active = handle
        fragments = 0
        try:
            async with self._client.chat.completions.stream(**payload) as response:
                handle.response = response
                async for event in response:
                    if handle.cancelled:
                        break
                    text = _extract_text(event)
                    if text:
                        fragments += 1
                        yield text
            if handle.cancelled:
                raise StreamCancelledError("Stream cancelled")
        except StreamCancelledError:
            LOGGER.debug("Stream cancelled after %d fragment(s)", fragments)
            raise
        except Exception as exc:
            if handle.cancelled:
                LOGGER.debug("Stream closed by cancellation: %s", exc)
                raise StreamCancelledError("Stream cancelled") from exc
            raise
        finally:
            if self._active is handle:
                self._active = None
        LOGGER.debug("Stream finished with %d fragment(s)", fragments)

    def cancel(self) -> None:
        """Ask the active stream to stop; a no-op when nothing is streaming."""

        handle = self._active
        if handle is None:
            LOGGER.debug("cancel() called with no active stream")
            return
        handle.cancelled = True
        response = handle.response
        if response is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        close = getattr(response, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            task = loop.create_task(_await_quietly(result))
            self._close_tasks.add(task)
            task.add_done_callback(self._close_tasks.discard)

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return the model identifiers advertised by the backend."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)

            response = await self._client.models.list()
            models = [item.id for item in response.data if getattr(item, "id", None)]
            self._models_cache = models
            return list(models)

    def build_chat_messages(
        self, history: Sequence[Message], target: Message
    ) -> List[ChatCompletionMessageParam]:
        """Convert the turns preceding ``target`` into chat completion messages.

        Empty bot turns (placeholders, or replies that failed before any
        text arrived) are skipped. A configured system prompt comes first.
        """

        payload: List[ChatCompletionMessageParam] = []
        if self._settings.system_prompt:
            payload.append({"role": "system", "content": self._settings.system_prompt})
        for message in history:
            if message is target:
                break
            if message.is_from_bot:
                if message.content:
                    payload.append({"role": "assistant", "content": message.content})
                continue
            payload.append(_user_message_param(message))
        if not any(item["role"] != "system" for item in payload):
            raise ValueError("At least one message is required to start a chat")
        return payload

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key or "ollama",
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
        )

    def _build_chat_payload(
        self,
        messages: Sequence[Mapping[str, Any] | ChatCompletionMessageParam],
        extra_params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._model,
            "messages": [dict(message) for message in messages],
        }
        if self._settings.temperature is not None:
            payload["temperature"] = self._settings.temperature
        if extra_params:
            payload.update(extra_params)
        return payload

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        redacted = copy.deepcopy(dict(payload))
        for message in redacted.get("messages", []):
            content = message.get("content")
            if isinstance(content, list):
                for part in content:
                    if part.get("type") == "image_url":
                        part["image_url"] = {"url": "<image omitted>"}
        try:
            serialized = json.dumps(redacted, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", redacted)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Cancel any active stream and close the underlying OpenAI client."""

        self.cancel()
        if self._close_tasks:
            await asyncio.gather(*self._close_tasks, return_exceptions=True)
        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # pragma: no cover - defensive guard
            LOGGER.debug("AI client close failed: %s", exc)


def _user_message_param(message: Message) -> ChatCompletionMessageParam:
    if not message.image:
        return {"role": "user", "content": message.content}
    mime = guess_image_mime(message.image)
    parts: List[Dict[str, Any]] = []
    if message.content:
        parts.append({"type": "text", "text": message.content})
    parts.append({"type": "image_url", "image_url": {"url": f"data:{mime};base64,{message.image}"}})
    return {"role": "user", "content": parts}  # type: ignore[typeddict-item]


def _extract_text(event: Any) -> str | None:
    if getattr(event, "type", None) not in _TEXT_EVENT_TYPES:
        return None
    delta = getattr(event, "delta", None)
    return str(delta) if delta else None


async def _await_quietly(awaitable: Any) -> None:
    try:
        await awaitable
    except Exception as exc:  # pragma: no cover - best effort close
        LOGGER.debug("Closing cancelled stream failed: %s", exc)


__all__ = ["AIClient", "ClientSettings"]
