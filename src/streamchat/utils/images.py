"""Base64 encoding for images attached to user messages."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import mimetypes
from pathlib import Path
from typing import Protocol

__all__ = [
    "Base64ImageEncoder",
    "DEFAULT_MAX_IMAGE_BYTES",
    "ImageEncoder",
    "ImageEncodingError",
    "guess_image_mime",
]

LOGGER = logging.getLogger(__name__)
DEFAULT_MAX_IMAGE_BYTES = 20 * 1024 * 1024
_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"BM", "image/bmp"),
)


class ImageEncodingError(Exception):
    """The file could not be read or is not a usable image."""


class ImageEncoder(Protocol):
    """Turns a file reference into a base64 payload."""

    async def encode(self, file: Path | str) -> str:
        ...


class Base64ImageEncoder:
    """Reads image files off the event loop and returns base64 text."""

    def __init__(self, *, max_bytes: int = DEFAULT_MAX_IMAGE_BYTES) -> None:
        self._max_bytes = max(1, int(max_bytes))

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    async def encode(self, file: Path | str) -> str:
        path = Path(file).expanduser()
        data = await asyncio.to_thread(self._read, path)
        if _sniff_mime(data) is None:
            guessed, _ = mimetypes.guess_type(path.name)
            if not guessed or not guessed.startswith("image/"):
                raise ImageEncodingError(f"{path.name} is not a supported image")
        LOGGER.debug("Encoded image %s (%d bytes)", path, len(data))
        return base64.b64encode(data).decode("ascii")

    def _read(self, path: Path) -> bytes:
        try:
            size = path.stat().st_size
        except OSError as exc:
            raise ImageEncodingError(f"Unable to read {path}: {exc}") from exc
        if size == 0:
            raise ImageEncodingError(f"{path.name} is empty")
        if size > self._max_bytes:
            raise ImageEncodingError(
                f"{path.name} is {size:,} bytes; the limit is {self._max_bytes:,}"
            )
        try:
            return path.read_bytes()
        except OSError as exc:
            raise ImageEncodingError(f"Unable to read {path}: {exc}") from exc


def guess_image_mime(payload: str, default: str = "image/png") -> str:
    """Best-effort MIME type for a base64 image payload."""

    try:
        head = base64.b64decode(payload[:64] + "=" * (-len(payload[:64]) % 4), validate=False)
    except (binascii.Error, ValueError):
        return default
    return _sniff_mime(head) or default


def _sniff_mime(data: bytes) -> str | None:
    for signature, mime in _SIGNATURES:
        if data.startswith(signature):
            return mime
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None
