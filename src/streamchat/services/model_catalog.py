"""Model selection and backend connectivity checks."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, Sequence

import httpx
from openai import APIConnectionError, APITimeoutError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..events import EventBus, ModelsUpdated
from .notifications import NotificationLevel, NotificationSink

LOGGER = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (APIConnectionError, APITimeoutError, httpx.TransportError)


class ModelLister(Protocol):
    """Backend capable of listing its models."""

    async def list_models(self, *, force_refresh: bool = False) -> list[str]:
        ...

    def use_model(self, model: str) -> None:
        ...


class ModelCatalog:
    """Tracks the selected model and whether the backend is reachable.

    Implements :class:`~streamchat.ai.ai_types.ConnectivityMonitor`: after a
    transport failure the conversation calls :meth:`revalidate_connectivity`,
    which schedules :meth:`update_models` without waiting for it.
    """

    def __init__(
        self,
        client: ModelLister,
        *,
        selected_model: str | None = None,
        notifier: NotificationSink | None = None,
        event_bus: EventBus | None = None,
        probe_attempts: int = 2,
        retry_min_seconds: float = 0.5,
        retry_max_seconds: float = 4.0,
    ) -> None:
        self._client = client
        self._selected = selected_model or None
        self._notifier = notifier
        self._bus = event_bus
        self._probe_attempts = max(1, int(probe_attempts))
        self._retry_min_seconds = retry_min_seconds
        self._retry_max_seconds = retry_max_seconds
        self._models: tuple[str, ...] = ()
        self._connected: bool | None = None
        self._pending: set[asyncio.Task[Any]] = set()
        if self._selected:
            self._client.use_model(self._selected)

    @property
    def models(self) -> tuple[str, ...]:
        return self._models

    @property
    def connected(self) -> bool | None:
        """``None`` until the first probe finished."""
        return self._connected

    @property
    def selected_model_name(self) -> str | None:
        return self._selected

    def select_model(self, name: str) -> None:
        if self._models and name not in self._models:
            raise ValueError(f"Unknown model {name!r}")
        self._selected = name
        self._client.use_model(name)
        LOGGER.info("Selected model %s", name)

    async def update_models(self) -> Sequence[str]:
        """Probe the backend for its models and keep the selection valid."""

        try:
            async for attempt in self._retrying():
                with attempt:
                    models = await self._client.list_models(force_refresh=True)
        except Exception as exc:
            self._connected = False
            LOGGER.warning("Model probe failed: %s", exc, exc_info=LOGGER.isEnabledFor(logging.DEBUG))
            if self._notifier is not None:
                self._notifier.notify(
                    "Unable to reach the model server, check that it is running",
                    NotificationLevel.ERROR,
                )
            self._publish()
            return self._models

        self._models = tuple(models)
        self._connected = True
        if self._models and self._selected not in self._models:
            fallback = self._models[0]
            LOGGER.info("Model %s unavailable; selecting %s", self._selected or "<unset>", fallback)
            self._selected = fallback
            self._client.use_model(fallback)
        LOGGER.debug("Backend reachable with %d model(s)", len(self._models))
        self._publish()
        return self._models

    def revalidate_connectivity(self) -> None:
        """Schedule :meth:`update_models` on the running loop and return."""

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.debug("No running event loop; skipping connectivity check")
            return
        task = loop.create_task(self.update_models())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def wait_pending(self) -> None:
        """Wait for scheduled connectivity checks to finish."""

        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._probe_attempts),
            wait=wait_exponential(multiplier=self._retry_min_seconds, max=self._retry_max_seconds),
            retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        )

    def _publish(self) -> None:
        if self._bus is None:
            return
        self._bus.publish(
            ModelsUpdated(models=self._models, selected=self._selected, connected=bool(self._connected))
        )


__all__ = ["ModelCatalog", "ModelLister"]
