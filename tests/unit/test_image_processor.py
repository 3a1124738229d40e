import io

import pytest
from PIL import Image

from imagepipe.core.exceptions import CompressionError, ImageInfoError, ImageProcessingError
from imagepipe.engines.transform.schemas import (
    ExtractRegion,
    FitMode,
    OutputFormat,
    ProcessingOptions,
)
from tests.conftest import make_image_bytes


def _two_tone(width=200, height=100) -> bytes:
    """Left half red, right half blue."""
    image = Image.new("RGB", (width, height), (255, 0, 0))
    image.paste((0, 0, 255), (width // 2, 0, width, height))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def test_process_encodes_webp(processor, png_bytes):
    options = ProcessingOptions(width=60, height=60, fit=FitMode.COVER, format=OutputFormat.WEBP)

    output = processor.process(png_bytes, options)
    info = processor.get_info(output)

    assert info.format == "webp"
    assert (info.width, info.height) == (60, 60)
    assert info.size == len(output)


def test_process_keeps_alpha_for_webp(processor):
    source = make_image_bytes(80, 40, mode="RGBA")
    options = ProcessingOptions(width=40, height=40, fit=FitMode.CONTAIN, format=OutputFormat.WEBP)

    info = processor.get_info(processor.process(source, options))

    assert info.has_alpha is True


def test_process_flattens_alpha_for_jpeg(processor):
    source = make_image_bytes(80, 40, mode="RGBA")
    options = ProcessingOptions(width=40, height=40, fit=FitMode.COVER, format=OutputFormat.JPG)

    output = processor.process(source, options)

    assert Image.open(io.BytesIO(output)).mode == "RGB"
    assert processor.get_info(output).format == "jpeg"


def test_extract_region_applied_before_resize(processor):
    options = ProcessingOptions(
        width=20,
        height=20,
        fit=FitMode.FILL,
        format=OutputFormat.PNG,
        extract_region=ExtractRegion(left=0.5, top=0.0, width=0.5, height=1.0),
    )

    output = Image.open(io.BytesIO(processor.process(_two_tone(), options))).convert("RGB")

    assert output.getpixel((10, 10)) == (0, 0, 255)


def test_process_rejects_non_image_as_recoverable(processor):
    options = ProcessingOptions(width=10, height=10)

    with pytest.raises(ImageProcessingError) as exc_info:
        processor.process(b"not an image", options)

    assert exc_info.value.recoverable is True
    assert exc_info.value.details["fit"] == "cover"


def test_get_info_rejects_non_image_as_non_recoverable(processor):
    with pytest.raises(ImageInfoError) as exc_info:
        processor.get_info(b"not an image")

    assert exc_info.value.recoverable is False


def test_get_info_rejects_oversized_image_as_non_recoverable(processor, monkeypatch):
    buffer = make_image_bytes(width=400, height=400)
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 10_000)

    with pytest.raises(ImageInfoError) as exc_info:
        processor.get_info(buffer)

    assert exc_info.value.recoverable is False
    assert exc_info.value.details["error_type"] == "DecompressionBombError"


def test_get_info_reports_density(processor):
    image = Image.new("RGB", (10, 10), (0, 0, 0))
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", dpi=(300, 300))

    info = processor.get_info(buffer.getvalue())

    assert info.density == 300.0
    assert info.color_space == "srgb"


def test_compress_reencodes_at_quality(processor):
    source = make_image_bytes(64, 64)

    output = processor.compress(source, OutputFormat.WEBP, 70)

    assert processor.get_info(output).format == "webp"


def test_compress_failure_raises_compression_error(processor):
    with pytest.raises(CompressionError):
        processor.compress(b"garbage", OutputFormat.WEBP, 70)


def test_background_must_be_hex():
    with pytest.raises(ValueError):
        ProcessingOptions(width=10, height=10, background="white")
