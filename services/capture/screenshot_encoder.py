"""Screenshot encoder service.

Small wrapper around Pillow that turns a captured screen image into the
bytes sent to the model. Large screens are downscaled to fit within
`max_dimension` on their longest side, preserving aspect ratio; the
normalized coordinates the model returns are resolution independent, so the
reported screen size is left untouched by the caller.

Example:
    encoder = ScreenshotEncoder(max_dimension=1600)
    png_bytes = encoder.encode(pil_image)
"""
from __future__ import annotations

import io
from typing import Tuple

from PIL import Image


class ScreenshotEncoder:
    """Encode Pillow images for transport to the model.

    Args:
        max_dimension: Longest side of the encoded image in pixels. Defaults to 1920.
        image_format: Pillow format name used for the output ("PNG" or "JPEG").
        background: Color used to flatten alpha channels. Defaults to white.
    """

    def __init__(
        self,
        max_dimension: int = 1920,
        image_format: str = "PNG",
        background: Tuple[int, int, int] | None = None,
    ):
        if max_dimension <= 0:
            raise ValueError("max_dimension must be positive")
        self.max_dimension = max_dimension
        self.image_format = image_format.upper()
        self.background = background or (255, 255, 255)

    @property
    def format_name(self) -> str:
        """Lowercase format name as reported on captures."""
        return "jpeg" if self.image_format in ("JPEG", "JPG") else self.image_format.lower()

    def encode(self, src: Image.Image) -> bytes:
        """Return encoded bytes for `src`, downscaled when it is larger than allowed."""
        image = src.convert("RGBA")
        image.thumbnail((self.max_dimension, self.max_dimension), Image.LANCZOS)

        # Flatten alpha against the background color
        flattened = Image.new("RGB", image.size, self.background)
        flattened.paste(image, mask=image.split()[3])

        out_io = io.BytesIO()
        if self.format_name == "png":
            flattened.save(out_io, format="PNG", optimize=True)
        else:
            flattened.save(out_io, format=self.image_format, quality=85)
        return out_io.getvalue()

    def encode_bytes(self, data: bytes) -> bytes:
        """Decode raw image bytes (any Pillow-supported format) and re-encode them.

        Raises:
            ValueError: If the bytes cannot be opened as an image.
        """
        try:
            src = Image.open(io.BytesIO(data))
            src.load()
        except Exception as exc:
            raise ValueError("Bytes are not a supported image format") from exc
        return self.encode(src)
