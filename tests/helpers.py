"""Fake collaborators shared by the test-suite."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Sequence

from streamchat.chat.message_model import Message
from streamchat.services.notifications import NotificationLevel


class FakeStreamingClient:
    """Yields a fixed list of fragments, then optionally raises ``error``."""

    def __init__(self, fragments: Iterable[str] = (), *, error: BaseException | None = None) -> None:
        self.fragments = list(fragments)
        self.error = error
        self.calls: list[tuple[list[Message], Message]] = []
        self.cancel_calls = 0

    def stream(self, history: Sequence[Message], target: Message) -> AsyncIterator[str]:
        self.calls.append((list(history), target))
        return self._generate()

    async def _generate(self) -> AsyncIterator[str]:
        for fragment in self.fragments:
            await asyncio.sleep(0)
            yield fragment
        if self.error is not None:
            raise self.error

    def cancel(self) -> None:
        self.cancel_calls += 1


class BlockingStreamingClient(FakeStreamingClient):
    """Yields its fragments, then blocks until :meth:`cancel` or :meth:`finish`.

    After ``cancel()`` the stream raises ``error_on_cancel``, the way a
    transport fails once its connection is torn down.
    """

    def __init__(
        self,
        fragments: Iterable[str] = (),
        *,
        error_on_cancel: BaseException | None = None,
    ) -> None:
        super().__init__(fragments)
        self.error_on_cancel = error_on_cancel or ConnectionResetError("connection closed")
        self.waiting = asyncio.Event()
        self._release = asyncio.Event()
        self._cancelled = False

    async def _generate(self) -> AsyncIterator[str]:
        for fragment in self.fragments:
            await asyncio.sleep(0)
            yield fragment
        self.waiting.set()
        await self._release.wait()
        if self._cancelled:
            raise self.error_on_cancel

    def cancel(self) -> None:
        super().cancel()
        self._cancelled = True
        self._release.set()

    def finish(self) -> None:
        self._release.set()


class FakeConnectivity:
    def __init__(self, model_name: str | None = "llama3:8b") -> None:
        self.selected_model_name = model_name
        self.revalidations = 0

    def revalidate_connectivity(self) -> None:
        self.revalidations += 1


class RecordingNotifier:
    def __init__(self) -> None:
        self.notices: list[tuple[str, NotificationLevel]] = []

    def notify(self, message: str, level: NotificationLevel = NotificationLevel.INFO) -> None:
        self.notices.append((message, level))


class FakeImageEncoder:
    def __init__(self, payload: str = "aGVsbG8=", error: Exception | None = None) -> None:
        self.payload = payload
        self.error = error
        self.files: list[Any] = []

    async def encode(self, file: Path | str) -> str:
        self.files.append(file)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.payload


