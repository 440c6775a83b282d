"""Logging setup for the streamchat terminal application.

Replies stream to stdout, so the log file is the primary sink. Console
logging goes to stderr with a compact format and, outside debug runs, only
shows warnings and errors so it does not interleave with a streaming reply.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import TextIO

__all__ = ["setup_logging", "get_log_path", "TerminalFormatter"]

_DEFAULT_LOG_DIR = Path.home() / ".streamchat" / "logs"
_LOG_FILE_NAME = "streamchat.log"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_CONSOLE_ENV = "STREAMCHAT_LOG_CONSOLE"
_TRUE_VALUES = {"1", "true", "yes", "on"}
_CONFIGURED = False
_LOG_PATH: Path | None = None


class TerminalFormatter(logging.Formatter):
    """One-line ``level name: message`` records for the chat terminal.

    The ``streamchat.`` prefix is dropped from logger names and tracebacks
    are reduced to their last line; the full trace stays in the log file.
    """

    def __init__(self) -> None:
        super().__init__(fmt="[%(levelname)s] %(shortname)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        name = record.name
        record.shortname = name.split(".", 1)[1] if name.startswith("streamchat.") else name
        exc_info, exc_text = record.exc_info, record.exc_text
        record.exc_info = None
        record.exc_text = None
        try:
            text = super().format(record)
        finally:
            record.exc_info, record.exc_text = exc_info, exc_text
        if exc_info and exc_info[1] is not None:
            text = f"{text} ({type(exc_info[1]).__name__}: {exc_info[1]})"
        return text


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool | None = None,
    console_stream: TextIO | None = None,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging with a rotating file and optional console output.

    ``console=None`` defers to the ``STREAMCHAT_LOG_CONSOLE`` environment
    variable. Returns the log file path.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / _LOG_FILE_NAME

    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(fmt=_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handlers: list[logging.Handler] = [file_handler]

    if _console_enabled(console):
        console_handler = logging.StreamHandler(console_stream or sys.stderr)
        console_handler.setLevel(level if level <= logging.DEBUG else max(level, logging.WARNING))
        console_handler.setFormatter(TerminalFormatter())
        handlers.append(console_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the configured log file, if logging was set up."""

    return _LOG_PATH


def _console_enabled(console: bool | None) -> bool:
    if console is not None:
        return console
    return os.environ.get(_CONSOLE_ENV, "").strip().lower() in _TRUE_VALUES


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("STREAMCHAT_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
