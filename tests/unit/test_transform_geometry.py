import io

import pytest
from PIL import Image

from imagepipe.engines.transform.processor import (
    ImageProcessor,
    compute_contain_dimensions,
    compute_cover_dimensions,
    compute_extract_box,
    force_even,
    parse_background_color,
    round_half_up,
)
from imagepipe.engines.transform.schemas import (
    CropBox,
    ExtractRegion,
    FitMode,
    OutputFormat,
    ProcessingOptions,
)
from tests.conftest import make_image_bytes


def _decode(buffer: bytes) -> Image.Image:
    return Image.open(io.BytesIO(buffer))


def test_round_half_up_and_force_even():
    assert round_half_up(2.5) == 3
    assert round_half_up(2.4999) == 2
    assert force_even(167) == 166
    assert force_even(500) == 500


def test_contain_scales_by_smaller_factor():
    # 1000x500 into 500x500 scales by min(0.5, 1.0)
    assert compute_contain_dimensions(1000, 500, 500, 500) == (500, 250)


def test_contain_forces_even_dimensions():
    width, height = compute_contain_dimensions(999, 333, 500, 500)
    assert (width, height) == (500, 166)


def test_cover_wide_source_fills_height():
    # ratio 2.0 > 1.0 -> height=400, width=round(400 * 2.0)
    assert compute_cover_dimensions(1000, 500, 400, 400) == (800, 400)


def test_cover_tall_source_fills_width():
    assert compute_cover_dimensions(500, 1000, 400, 400) == (400, 800)


def test_extract_box_clamps_to_image_bounds():
    region = ExtractRegion(left=0.9, top=0.9, width=0.3, height=0.3)

    box = compute_extract_box(region, 100, 100)

    assert box == CropBox(left=90, top=90, width=10, height=10)


def test_extract_box_collapsing_to_zero_is_none():
    region = ExtractRegion(left=1.0, top=0.0, width=0.01, height=0.5)

    assert compute_extract_box(region, 100, 100) is None


def test_extract_box_forces_even_size():
    region = ExtractRegion(left=0.0, top=0.0, width=0.33, height=0.55)

    box = compute_extract_box(region, 100, 100)

    assert (box.width, box.height) == (32, 54)


@pytest.mark.parametrize("value,expected", [
    ("#fff", (255, 255, 255)),
    ("#000000", (0, 0, 0)),
    ("#1a2b3c", (26, 43, 60)),
    ("#zzzzzz", (255, 255, 255)),
    ("#12", (255, 255, 255)),
    (None, (255, 255, 255)),
])
def test_parse_background_color(value, expected):
    assert parse_background_color(value) == expected


def test_process_contain_pads_to_target_with_background():
    source = make_image_bytes(1000, 500, color=(255, 0, 0))
    options = ProcessingOptions(
        width=500,
        height=500,
        fit=FitMode.CONTAIN,
        format=OutputFormat.PNG,
        background="#0000ff",
    )

    output = _decode(ImageProcessor().process(source, options)).convert("RGB")

    assert output.size == (500, 500)
    # 500x250 content centered, padding above and below
    assert output.getpixel((250, 10)) == (0, 0, 255)
    assert output.getpixel((250, 250)) == (255, 0, 0)


def test_process_cover_crops_centered():
    source = make_image_bytes(1000, 500)
    options = ProcessingOptions(width=400, height=400, fit=FitMode.COVER, format=OutputFormat.PNG)

    output = _decode(ImageProcessor().process(source, options))

    assert output.size == (400, 400)


def test_process_fill_ignores_aspect_ratio():
    source = make_image_bytes(1000, 500)
    options = ProcessingOptions(width=300, height=300, fit=FitMode.FILL, format=OutputFormat.PNG)

    output = _decode(ImageProcessor().process(source, options))

    assert output.size == (300, 300)
