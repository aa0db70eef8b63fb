"""Raster encoding helpers shared by the provider, orchestrator and compositor.

Generated designs travel as base64 PNG payloads and are stored on versions
as ``data:image/png;base64,...`` URLs until something hosts them elsewhere.
"""

from __future__ import annotations

import base64
import binascii
import io
import re

from PIL import Image, UnidentifiedImageError

_DATA_URL_RE = re.compile(r"^data:image/[\w.+-]+;base64,(.+)$", re.DOTALL)


def is_data_url(url: str | None) -> bool:
    return bool(url) and _DATA_URL_RE.match(url) is not None


def unwrap_data_url(url: str) -> str | None:
    """Return the base64 payload of a ``data:image/...;base64,`` URL, else ``None``."""
    match = _DATA_URL_RE.match(url)
    return match.group(1) if match else None


def to_data_url(image_base64: str, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{image_base64}"


def encode_png_base64(image: Image.Image) -> str:
    """Encode a PIL image as base64 PNG text."""
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def decode_image_bytes(data: bytes) -> Image.Image:
    """Open raw image bytes as a fully loaded PIL image.

    Raises:
        ValueError: If the bytes are not a readable image.
    """
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Not a readable image: {e}") from e
    return image


def decode_base64_image(image_base64: str) -> Image.Image:
    """Decode base64 text (or a data URL) into a PIL image.

    Raises:
        ValueError: If the text is not valid base64 or not an image.
    """
    payload = unwrap_data_url(image_base64) or image_base64
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Image payload is not valid base64") from e
    return decode_image_bytes(data)


def preview_url(image_base64: str, length: int = 100) -> str:
    """Truncated data URL recorded on a request instead of the full payload."""
    return to_data_url(image_base64[:length]) + "..."
