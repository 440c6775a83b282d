"""Tests covering the application bootstrap helpers and terminal front end."""

from __future__ import annotations

import io
import json
from pathlib import Path
from typing import Any, Iterable

import pytest

from streamchat import app
from streamchat.services.settings import Settings, SettingsStore
from tests.helpers import FakeStreamingClient


class _FakeBackend(FakeStreamingClient):
    """Streaming client that also answers the catalog's model probes."""

    def __init__(self, fragments: Iterable[str] = (), *, models: Iterable[str] = ("llama3:8b",), **kwargs: Any):
        super().__init__(fragments, **kwargs)
        self.models = list(models)
        self.selected: list[str] = []
        self.closed = False

    def use_model(self, model: str) -> None:
        self.selected.append(model)

    async def list_models(self, *, force_refresh: bool = False) -> list[str]:
        return list(self.models)

    async def aclose(self) -> None:
        self.closed = True


def _chat(backend: _FakeBackend, **settings: Any) -> tuple[app.TerminalChat, io.StringIO]:
    settings.setdefault("model", "llama3:8b")
    runtime = app.build_runtime(Settings(**settings), client=backend)  # type: ignore[arg-type]
    output = io.StringIO()
    return app.TerminalChat(runtime, output=output), output


def test_coerce_cli_overrides_casts_types() -> None:
    overrides = app._coerce_cli_overrides(
        [
            "base_url=https://cli",
            "debug_logging=true",
            "max_image_bytes=2048",
            "request_timeout=42.25",
            "temperature=none",
            "default_headers={\"X-Test\": \"1\"}",
        ]
    )

    assert overrides["base_url"] == "https://cli"
    assert overrides["debug_logging"] is True
    assert overrides["max_image_bytes"] == 2048
    assert overrides["request_timeout"] == pytest.approx(42.25)
    assert overrides["temperature"] is None
    assert overrides["default_headers"] == {"X-Test": "1"}


@pytest.mark.parametrize("entry", ["not_a_setting=value", "missing-equals", "=value", "debug_logging=maybe"])
def test_coerce_cli_overrides_rejects_bad_entries(entry: str) -> None:
    with pytest.raises(ValueError):
        app._coerce_cli_overrides([entry])


def test_dump_settings_redacts_api_key(tmp_path: Path) -> None:
    settings = Settings(api_key="super-secret", base_url="https://example.com")
    store = SettingsStore(tmp_path / "settings.json")
    buffer = io.StringIO()

    app._dump_settings(settings, store, overrides={"base_url": "https://cli"}, stream=buffer)

    payload = json.loads(buffer.getvalue())
    assert "super-secret" not in payload["settings"]["api_key"]
    assert payload["meta"]["secret_backend"] == store.vault.strategy
    assert payload["meta"]["cli_overrides"] == ["base_url"]


def test_main_dump_settings_applies_cli_overrides(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("STREAMCHAT_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("STREAMCHAT_MODEL", raising=False)
    monkeypatch.setattr(app, "configure_logging", lambda debug=False, force=False: None)

    app.main(["--settings-path", str(tmp_path / "settings.json"), "--set", "model=mistral", "--dump-settings"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["settings"]["model"] == "mistral"


def test_main_rejects_malformed_override(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(app, "configure_logging", lambda debug=False, force=False: None)

    with pytest.raises(SystemExit) as excinfo:
        app.main(["--settings-path", str(tmp_path / "settings.json"), "--set", "oops"])

    assert excinfo.value.code == 2


def test_build_runtime_shares_bus_and_client() -> None:
    backend = _FakeBackend()

    runtime = app.build_runtime(Settings(model="llama3:8b"), client=backend)  # type: ignore[arg-type]

    assert runtime.client is backend
    assert runtime.conversation.events is runtime.bus
    assert runtime.catalog.selected_model_name == "llama3:8b"
    assert backend.selected == ["llama3:8b"]


@pytest.mark.asyncio
async def test_sending_a_line_streams_the_reply() -> None:
    backend = _FakeBackend(["Hi", " there"])
    chat, output = _chat(backend)

    keep_going = await chat.handle_line("Hello")

    assert keep_going is True
    assert output.getvalue() == "llama3:8b> Hi there\n"
    user, reply = chat.conversation.messages
    assert user.content == "Hello"
    assert reply.content == "Hi there"
    assert chat.conversation.name == "Hello"


@pytest.mark.asyncio
async def test_failed_reply_prints_error_and_revalidates() -> None:
    backend = _FakeBackend(["par"], error=ConnectionError("backend down"))
    chat, output = _chat(backend)

    await chat.handle_line("Hello")
    await chat._runtime.catalog.wait_pending()

    assert output.getvalue() == "llama3:8b> par\n[backend down]\n"
    assert chat._runtime.catalog.connected is True


@pytest.mark.asyncio
async def test_retry_regenerates_last_reply() -> None:
    backend = _FakeBackend(["first"])
    chat, output = _chat(backend)
    await chat.handle_line("Hello")
    backend.fragments = ["second"]

    await chat.handle_line("/retry")

    assert len(chat.conversation.messages) == 2
    assert chat.conversation.messages[-1].content == "second"


@pytest.mark.asyncio
async def test_retry_with_empty_conversation() -> None:
    chat, output = _chat(_FakeBackend())

    await chat.handle_line("/retry")

    assert output.getvalue() == "Nothing to retry.\n"


@pytest.mark.asyncio
async def test_image_command_attaches_to_next_message(tmp_path: Path) -> None:
    image = tmp_path / "pixel.png"
    image.write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 16)
    backend = _FakeBackend(["nice"])
    chat, output = _chat(backend)

    await chat.handle_line(f"/image {image}")
    await chat.handle_line("What is this?")

    assert "Image attached" in output.getvalue()
    assert chat.conversation.messages[0].image is not None
    assert chat.conversation.preview_image is None


@pytest.mark.asyncio
async def test_unreadable_image_posts_notice(tmp_path: Path) -> None:
    chat, output = _chat(_FakeBackend())

    await chat.handle_line(f"/image {tmp_path / 'missing.png'}")

    assert output.getvalue() == "! Unable to read image, check the log for error information\n"
    assert chat.conversation.preview_image is None


@pytest.mark.asyncio
async def test_models_command_lists_and_selects() -> None:
    backend = _FakeBackend(models=["llama3:8b", "mistral"])
    chat, output = _chat(backend)

    await chat.handle_line("/models")
    await chat.handle_line("/models mistral")
    await chat.handle_line("/models nope")

    lines = output.getvalue().splitlines()
    assert lines[:2] == ["* llama3:8b", "  mistral"]
    assert lines[2] == "Unknown model 'nope'"
    assert chat._runtime.catalog.selected_model_name == "mistral"
    assert backend.selected[-1] == "mistral"


@pytest.mark.asyncio
async def test_misc_commands() -> None:
    chat, output = _chat(_FakeBackend())

    assert await chat.handle_line("") is True
    assert await chat.handle_line("/name Trip plans") is True
    assert await chat.handle_line("/bogus") is True
    assert await chat.handle_line("/help") is True
    assert await chat.handle_line("/quit") is False

    assert chat.conversation.name == "Trip plans"
    assert "Unknown command /bogus" in output.getvalue()
    assert "/retry" in output.getvalue()


@pytest.mark.asyncio
async def test_run_session_reads_until_quit(monkeypatch: pytest.MonkeyPatch) -> None:
    backend = _FakeBackend(["pong"])
    runtime = app.build_runtime(Settings(model="llama3:8b"), client=backend)  # type: ignore[arg-type]
    lines = iter(["ping", "/quit"])
    monkeypatch.setattr("builtins.input", lambda prompt="": next(lines))
    output = io.StringIO()

    await app.run_session(runtime, output=output)

    assert "llama3:8b> pong" in output.getvalue()
    assert backend.closed is True
    assert runtime.conversation.messages[-1].content == "pong"
