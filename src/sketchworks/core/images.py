"""Image payload helpers built on Pillow."""

from __future__ import annotations

import base64
import binascii
import hashlib
import re
from io import BytesIO

from PIL import Image, UnidentifiedImageError

# Pillow format name -> (MIME type, file extension)
SUPPORTED_FORMATS: dict[str, tuple[str, str]] = {
    "PNG": ("image/png", "png"),
    "JPEG": ("image/jpeg", "jpg"),
    "WEBP": ("image/webp", "webp"),
    "GIF": ("image/gif", "gif"),
}

_EXTENSIONS = {mime: ext for mime, ext in SUPPORTED_FORMATS.values()}

_WHITESPACE_RE = re.compile(r"\s+")

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+)?(?:;[\w=-]+)*;base64,", re.IGNORECASE)


def split_data_url(payload: str) -> tuple[str | None, str]:
    """Strip a ``data:<mime>;base64,`` prefix.

    Returns:
        Tuple of (declared MIME type or None, raw base64 text).
    """
    match = _DATA_URL_RE.match(payload)
    if match is None:
        return None, payload.strip()
    return match.group("mime"), payload[match.end():].strip()


def decode_base64(payload: str) -> bytes:
    """Decode base64 text, raising ``ValueError`` on malformed input.

    Line breaks and other whitespace are ignored, so MIME-wrapped payloads
    decode the same as single-line ones.  Any other non-alphabet character
    is an error.
    """
    try:
        return base64.b64decode(_WHITESPACE_RE.sub("", payload), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e


def identify_format(data: bytes) -> str | None:
    """Return the Pillow format name of an encoded image, or None if unreadable."""
    try:
        with Image.open(BytesIO(data)) as image:
            image.verify()
            return image.format
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return None


def content_type_for(data: bytes, default: str = "image/png") -> str:
    fmt = identify_format(data)
    if fmt in SUPPORTED_FORMATS:
        return SUPPORTED_FORMATS[fmt][0]
    return default


def extension_for(content_type: str) -> str:
    return _EXTENSIONS.get(content_type.lower(), "png")


def content_digest(data: bytes) -> str:
    """Content address of a payload, e.g. ``sha256:ab12...``."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"
