"""Terminal front end and bootstrap helpers for streamchat."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.client import AIClient, ClientSettings
from .chat.conversation import Conversation
from .chat.message_model import Message
from .events import EventBus, FragmentReceived, GenerationFinished, NoticePosted
from .services.model_catalog import ModelCatalog
from .services.notifications import NotificationCenter
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils
from .utils.images import Base64ImageEncoder

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}

HELP_TEXT = """Commands
/help              Show this help
/image PATH        Attach an image to the next message (/image alone clears it)
/retry             Regenerate the last reply
/name TITLE        Rename the conversation
/models [NAME]     List models, or select NAME
/quit              Exit
Press Ctrl+C while a reply is streaming to stop it.
"""


@dataclass(slots=True)
class ChatRuntime:
    """Collaborators wired together for one terminal session."""

    settings: Settings
    bus: EventBus
    client: AIClient
    catalog: ModelCatalog
    notifier: NotificationCenter
    conversation: Conversation


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except Exception as exc:  # pragma: no cover - defensive path
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def build_runtime(settings: Settings, *, client: AIClient | None = None) -> ChatRuntime:
    bus: EventBus = EventBus()
    notifier = NotificationCenter(bus)
    ai_client = client or AIClient(
        ClientSettings(
            base_url=settings.base_url,
            api_key=settings.api_key,
            model=settings.model,
            organization=settings.organization,
            request_timeout=settings.request_timeout,
            temperature=settings.temperature,
            system_prompt=settings.system_prompt,
            default_headers=settings.default_headers,
            debug_logging=settings.debug_logging,
        )
    )
    catalog = ModelCatalog(
        ai_client,
        selected_model=settings.model or None,
        notifier=notifier,
        event_bus=bus,
        probe_attempts=settings.probe_attempts,
    )
    conversation = Conversation(
        ai_client,
        connectivity=catalog,
        notifier=notifier,
        image_encoder=Base64ImageEncoder(max_bytes=settings.max_image_bytes),
        event_bus=bus,
    )
    return ChatRuntime(
        settings=settings,
        bus=bus,
        client=ai_client,
        catalog=catalog,
        notifier=notifier,
        conversation=conversation,
    )


class TerminalChat:
    """Line-oriented chat loop writing streamed replies to ``output``."""

    def __init__(self, runtime: ChatRuntime, *, output: TextIO | None = None) -> None:
        self._runtime = runtime
        self._out = output or sys.stdout
        runtime.bus.subscribe(FragmentReceived, self._on_fragment)
        runtime.bus.subscribe(GenerationFinished, self._on_finished)
        runtime.bus.subscribe(NoticePosted, self._on_notice)

    @property
    def conversation(self) -> Conversation:
        return self._runtime.conversation

    async def handle_line(self, line: str) -> bool:
        """Process one line of input; return ``False`` to end the session."""

        text = line.strip()
        if not text:
            return True
        if not text.startswith("/"):
            await self.send(text)
            return True

        command, _, argument = text.partition(" ")
        argument = argument.strip()
        if command == "/quit":
            return False
        if command == "/help":
            self.write(HELP_TEXT)
        elif command == "/image":
            await self.conversation.set_preview_image(argument or None)
            if self.conversation.preview_image:
                self.write("Image attached to the next message.\n")
        elif command == "/retry":
            await self.retry()
        elif command == "/name":
            self.conversation.set_name(argument)
        elif command == "/models":
            await self._models(argument)
        else:
            self.write(f"Unknown command {command}; try /help\n")
        return True

    async def send(self, text: str) -> None:
        conversation = self.conversation
        message = conversation.add_user_message(text, conversation.preview_image)
        if message is None:
            return
        if conversation.preview_image:
            await conversation.set_preview_image(None)
        await self._generate(conversation.create_incoming_message())

    async def retry(self) -> None:
        messages = self.conversation.messages
        if not messages:
            self.write("Nothing to retry.\n")
            return
        last = messages[-1]
        target = last if last.is_from_bot else self.conversation.create_incoming_message()
        await self._generate(target)

    async def _generate(self, target: Message) -> None:
        label = target.bot_name or "assistant"
        self.write(f"{label}> ")
        with _abort_on_interrupt(self.conversation):
            await self.conversation.generate_message(target)

    async def _models(self, argument: str) -> None:
        catalog = self._runtime.catalog
        if argument:
            try:
                catalog.select_model(argument)
            except ValueError as exc:
                self.write(f"{exc}\n")
            return
        models = await catalog.update_models()
        for name in models:
            marker = "*" if name == catalog.selected_model_name else " "
            self.write(f"{marker} {name}\n")

    def _on_fragment(self, event: FragmentReceived) -> None:
        self._out.write(event.fragment)
        self._out.flush()

    def _on_finished(self, event: GenerationFinished) -> None:
        suffix = f"\n[{event.error}]" if event.error else ""
        self.write(f"{suffix}\n")

    def _on_notice(self, event: NoticePosted) -> None:
        self.write(f"! {event.message}\n")

    def write(self, text: str) -> None:
        self._out.write(text)
        self._out.flush()


@contextlib.contextmanager
def _abort_on_interrupt(conversation: Conversation):
    """Route Ctrl+C to :meth:`Conversation.abort_generation` while streaming."""

    loop = asyncio.get_running_loop()
    installed = True
    try:
        loop.add_signal_handler(signal.SIGINT, conversation.abort_generation)
    except (NotImplementedError, RuntimeError, ValueError):  # pragma: no cover - platform dependent
        installed = False
    try:
        yield
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def run_session(runtime: ChatRuntime, *, output: TextIO | None = None) -> None:
    chat = TerminalChat(runtime, output=output)
    await runtime.catalog.update_models()
    chat.write("Type a message, or /help for commands.\n")
    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "you> ")
            except EOFError:
                break
            if not await chat.handle_line(line):
                break
    finally:
        runtime.conversation.close()
        await runtime.catalog.wait_pending()
        await runtime.client.aclose()


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the ``streamchat`` console script."""

    args = _parse_cli_args(argv)
    debug = args.debug or _env_flag("STREAMCHAT_DEBUG")
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("STREAMCHAT_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    store = SettingsStore(resolved_path)
    try:
        overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    settings = load_settings(resolved_path, store=store, overrides=overrides or None)
    if args.dump_settings:
        _dump_settings(settings, store, overrides=overrides)
        return
    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    runtime = build_runtime(settings)
    try:
        asyncio.run(run_session(runtime))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="streamchat",
        description="Chat with an OpenAI-compatible model server from the terminal.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.streamchat/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override a setting for this run (repeatable).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key, fields[key].type), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    if raw_value.lower() in {"none", "null"} and _is_optional(annotation):
        return None
    if target is str or target is Any:
        return raw_value
    if target is bool:
        return _parse_bool(raw_value)
    if target is int:
        return int(raw_value, 10)
    if target is float:
        return float(raw_value)
    if target is dict:
        try:
            return json.loads(raw_value or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
    return raw_value


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    return args[0] if args else origin


def _is_optional(annotation: Any) -> bool:
    return type(None) in get_args(annotation)


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(payload.get("api_key", ""))
    meta = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides),
        "environment_variables": sorted(name for name in os.environ if name.startswith("STREAMCHAT_")),
    }
    json.dump({"settings": payload, "meta": meta}, destination, indent=2)
    destination.write("\n")
