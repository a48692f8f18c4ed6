"""Capture the current desktop for guidance requests.

Real captures use `mss`; when real capture is disabled, or fails and the
synthetic fallback is allowed, a blank placeholder sized from
`LAPTOP_VERSION` is returned instead and flagged `is_synthetic`.
"""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

import mss
from PIL import Image

from models.guidance_models import CaptureResult
from services.capture.screenshot_encoder import ScreenshotEncoder
from services.guidance.errors import CaptureError
from utils.settings import GuidanceSettings, resolution_for

LOGGER = logging.getLogger(__name__)

SYNTHETIC_FILL = (32, 33, 36)


class ScreenCapture:
    """Capture port backed by `mss` with a synthetic fallback."""

    def __init__(
        self,
        *,
        use_real_capture: bool = True,
        allow_synthetic_fallback: bool = True,
        laptop_version: str = "default",
        monitor_index: int = 1,
        timeout_seconds: float = 10.0,
        encoder: Optional[ScreenshotEncoder] = None,
    ) -> None:
        self.use_real_capture = use_real_capture
        self.allow_synthetic_fallback = allow_synthetic_fallback
        self.laptop_version = laptop_version
        self.monitor_index = monitor_index
        self.timeout_seconds = timeout_seconds
        self.encoder = encoder or ScreenshotEncoder()

    @classmethod
    def from_settings(cls, settings: GuidanceSettings) -> "ScreenCapture":
        return cls(
            use_real_capture=settings.use_real_capture,
            allow_synthetic_fallback=settings.allow_synthetic_fallback,
            laptop_version=settings.laptop_version,
            monitor_index=settings.capture_monitor_index,
            timeout_seconds=settings.capture_timeout_seconds,
            encoder=ScreenshotEncoder(max_dimension=settings.capture_max_dimension),
        )

    async def capture(self) -> CaptureResult:
        """Return a snapshot of the configured monitor.

        Raises:
            CaptureError: If real capture fails (or times out) and the synthetic
                fallback is disabled.
        """
        if not self.use_real_capture:
            return await asyncio.to_thread(self._synthetic_capture)
        try:
            return await asyncio.wait_for(asyncio.to_thread(self._grab_screen), timeout=self.timeout_seconds)
        except Exception as exc:
            reason = "timed out" if isinstance(exc, asyncio.TimeoutError) else str(exc)
            if not self.allow_synthetic_fallback:
                raise CaptureError(f"Screen capture failed: {reason}") from exc
            LOGGER.warning("Real screen capture failed (%s); returning synthetic capture", reason)
            return await asyncio.to_thread(self._synthetic_capture)

    async def load_demo_image(self, image_path: Path | str) -> CaptureResult:
        """Return a synthetic capture built from an image file on disk."""
        path = Path(image_path).expanduser().resolve()
        if not path.exists():
            raise FileNotFoundError(f"Image file not found: {path}")
        return await asyncio.to_thread(self._capture_from_file, path)

    def _grab_screen(self) -> CaptureResult:
        with mss.mss() as sct:
            monitors = sct.monitors
            monitor = monitors[min(self.monitor_index, len(monitors) - 1)]
            frame = sct.grab(monitor)
            image = Image.frombytes("RGB", frame.size, frame.rgb)
        width, height = frame.size
        logical_width = monitor.get("width") or width
        return CaptureResult(
            image=self.encoder.encode(image),
            width=width,
            height=height,
            device_pixel_ratio=round(width / float(logical_width), 3),
            is_synthetic=False,
            taken_at=time.time(),
            format=self.encoder.format_name,
        )

    def _synthetic_capture(self) -> CaptureResult:
        width, height = resolution_for(self.laptop_version)
        image = Image.new("RGB", (width, height), SYNTHETIC_FILL)
        return CaptureResult(
            image=self.encoder.encode(image),
            width=width,
            height=height,
            device_pixel_ratio=1.0,
            is_synthetic=True,
            taken_at=time.time(),
            format=self.encoder.format_name,
        )

    def _capture_from_file(self, path: Path) -> CaptureResult:
        with Image.open(path) as src:
            src.load()
            width, height = src.size
            encoded = self.encoder.encode(src)
        return CaptureResult(
            image=encoded,
            width=width,
            height=height,
            device_pixel_ratio=1.0,
            is_synthetic=True,
            taken_at=time.time(),
            format=self.encoder.format_name,
        )
