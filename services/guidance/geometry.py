"""Map normalized boxes onto screen coordinates."""

from __future__ import annotations

from models.guidance_models import CaptureResult, NormalizedBox, PixelBox


def _clamp(value: int, low: int, high: int) -> int:
	return max(low, min(value, high))


def to_pixel_box(box: NormalizedBox, capture: CaptureResult) -> PixelBox:
	"""Return `box` in logical screen pixels for the given capture.

	The capture reports physical pixels; dividing by the device pixel ratio
	gives the coordinate space overlays are drawn in. The result never extends
	past the screen bounds.
	"""
	ratio = capture.device_pixel_ratio if capture.device_pixel_ratio and capture.device_pixel_ratio > 0 else 1.0
	screen_width = max(1, int(round(capture.width / ratio)))
	screen_height = max(1, int(round(capture.height / ratio)))

	x = _clamp(int(round(box.x * screen_width)), 0, screen_width - 1)
	y = _clamp(int(round(box.y * screen_height)), 0, screen_height - 1)
	width = _clamp(int(round(box.width * screen_width)), 1, screen_width - x)
	height = _clamp(int(round(box.height * screen_height)), 1, screen_height - y)
	return PixelBox(x=x, y=y, width=width, height=height)
