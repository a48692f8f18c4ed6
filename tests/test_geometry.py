from models.guidance_models import CaptureResult, NormalizedBox, PixelBox
from services.guidance.geometry import to_pixel_box


def _capture(width=1920, height=1080, dpr=1.0):
    return CaptureResult(image=b"x", width=width, height=height, device_pixel_ratio=dpr)


def test_dock_icon_example():
    box = NormalizedBox(x=0.40, y=0.90, width=0.44 - 0.40, height=0.96 - 0.90)
    assert to_pixel_box(box, _capture()) == PixelBox(x=768, y=972, width=77, height=65)


def test_device_pixel_ratio_scales_to_logical_points():
    box = NormalizedBox(x=0.5, y=0.5, width=0.25, height=0.25)
    assert to_pixel_box(box, _capture(3024, 1964, dpr=2.0)) == PixelBox(x=756, y=491, width=378, height=246)


def test_result_stays_on_screen():
    box = NormalizedBox(x=0.995, y=0.995, width=0.005, height=0.005)
    pixel = to_pixel_box(box, _capture(100, 100))
    assert pixel.x + pixel.width <= 100
    assert pixel.y + pixel.height <= 100
    assert pixel.width >= 1 and pixel.height >= 1


def test_invalid_ratio_falls_back_to_one():
    box = NormalizedBox(x=0.0, y=0.0, width=1.0, height=1.0)
    assert to_pixel_box(box, _capture(dpr=0)) == PixelBox(x=0, y=0, width=1920, height=1080)
