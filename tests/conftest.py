"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Any

import pytest

from streamchat.chat.conversation import Conversation
from streamchat.events import Event, EventBus
from tests.helpers import FakeConnectivity, FakeImageEncoder, RecordingNotifier


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorded_events(event_bus: EventBus) -> list[Event]:
    events: list[Event] = []
    event_bus.subscribe(Event, events.append)
    return events


@pytest.fixture
def connectivity() -> FakeConnectivity:
    return FakeConnectivity()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def image_encoder() -> FakeImageEncoder:
    return FakeImageEncoder()


@pytest.fixture
def make_conversation(
    event_bus: EventBus,
    connectivity: FakeConnectivity,
    notifier: RecordingNotifier,
    image_encoder: FakeImageEncoder,
):
    def _factory(client: Any, **kwargs: Any) -> Conversation:
        return Conversation(
            client,
            connectivity=kwargs.pop("connectivity", connectivity),
            notifier=kwargs.pop("notifier", notifier),
            image_encoder=kwargs.pop("image_encoder", image_encoder),
            event_bus=kwargs.pop("event_bus", event_bus),
            conversation_id=kwargs.pop("conversation_id", 1),
            **kwargs,
        )

    return _factory
