"""Validation helpers for screenshot payloads."""

import base64
import binascii
import re

ALLOWED_IMAGE_FORMATS = {
    "png": "image/png",
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "webp": "image/webp",
}

_DATA_URL = re.compile(r"^data:image/(png|jpe?g|webp);base64,", re.IGNORECASE)


def ensure_base64_image(raw: bytes) -> bytes:
    """Return base64-encoded image bytes, encoding binary input when necessary."""
    try:
        base64.b64decode(raw, validate=True)
        return raw
    except (binascii.Error, ValueError):
        return base64.b64encode(raw)


def mime_type_for(image_format: str) -> str:
    """Return the MIME type for a capture format, rejecting unknown formats."""
    mime = ALLOWED_IMAGE_FORMATS.get((image_format or "").lower().strip())
    if mime is None:
        raise ValueError(f"Unsupported screenshot format: {image_format!r}")
    return mime


def to_image_data_url(image: str, image_format: str = "png") -> str:
    """Return a data URL for base64 image text; data and http(s) URLs pass through."""
    text = (image or "").strip()
    if not text:
        raise ValueError("Screenshot payload is empty.")
    if _DATA_URL.match(text) or text.lower().startswith(("http://", "https://")):
        return text
    encoded = ensure_base64_image(text.encode("ascii", errors="ignore")).decode("ascii")
    return f"data:{mime_type_for(image_format)};base64,{encoded}"
