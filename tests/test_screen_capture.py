import io

import pytest
from PIL import Image

from services.capture.screen_capture import ScreenCapture
from services.capture.screenshot_encoder import ScreenshotEncoder
from services.guidance.errors import CaptureError
from utils.settings import GuidanceSettings, resolution_for


def _decode(data: bytes) -> Image.Image:
    return Image.open(io.BytesIO(data))


async def test_synthetic_capture_uses_laptop_resolution():
    capture = ScreenCapture(use_real_capture=False, laptop_version="macbook-pro-14")

    result = await capture.capture()

    assert result.is_synthetic is True
    assert (result.width, result.height) == (3024, 1964)
    assert result.device_pixel_ratio == 1.0
    assert result.format == "png"
    image = _decode(result.image)
    assert max(image.size) == 1920


async def test_real_capture_failure_falls_back(monkeypatch):
    capture = ScreenCapture(use_real_capture=True, allow_synthetic_fallback=True)

    def broken():
        raise RuntimeError("no display")

    monkeypatch.setattr(capture, "_grab_screen", broken)
    result = await capture.capture()

    assert result.is_synthetic is True
    assert (result.width, result.height) == resolution_for("default")


async def test_real_capture_failure_without_fallback(monkeypatch):
    capture = ScreenCapture(use_real_capture=True, allow_synthetic_fallback=False)

    def broken():
        raise RuntimeError("no display")

    monkeypatch.setattr(capture, "_grab_screen", broken)
    with pytest.raises(CaptureError, match="Screen capture failed: no display"):
        await capture.capture()


async def test_load_demo_image(tmp_path):
    path = tmp_path / "screen.png"
    Image.new("RGB", (800, 600), (10, 20, 30)).save(path)

    result = await ScreenCapture(use_real_capture=False).load_demo_image(path)

    assert (result.width, result.height) == (800, 600)
    assert _decode(result.image).size == (800, 600)

    with pytest.raises(FileNotFoundError):
        await ScreenCapture().load_demo_image(tmp_path / "missing.png")


def test_encoder_downscales_and_flattens():
    encoder = ScreenshotEncoder(max_dimension=100, image_format="JPEG")
    data = encoder.encode(Image.new("RGBA", (400, 200), (255, 0, 0, 0)))
    image = _decode(data)
    assert image.size == (100, 50)
    assert image.mode == "RGB"
    assert encoder.format_name == "jpeg"
    with pytest.raises(ValueError):
        encoder.encode_bytes(b"not an image")
    with pytest.raises(ValueError):
        ScreenshotEncoder(max_dimension=0)


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("OPENAI_TEMPERATURE", "3")
    monkeypatch.setenv("GUIDE_USE_REAL_CAPTURE", "false")
    monkeypatch.setenv("CAPTURE_MAX_DIMENSION", "not-a-number")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = GuidanceSettings.from_env()

    assert settings.openai_temperature == 1.0
    assert settings.use_real_capture is False
    assert settings.capture_max_dimension == 1920
    assert settings.log_level == "DEBUG"
    assert resolution_for("unknown-laptop") == (1920, 1080)
