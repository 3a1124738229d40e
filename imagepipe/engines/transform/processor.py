"""
Image Transform Engine

Pure buffer-in/buffer-out transforms on top of Pillow:
- optional normalized extract region (smart crop)
- resize with contain / cover / fill fit modes
- encode to WEBP / JPG / PNG at a given quality

All geometry helpers force even output dimensions (`dim - dim % 2`) and
round half up on computed sizes.
"""

import io
import math
from typing import Optional, Tuple

from PIL import Image

from imagepipe.core.exceptions import (
    DomainError,
    ImageProcessingError,
    CompressionError,
    ImageInfoError,
)
from imagepipe.core.logging import get_logger
from imagepipe.engines.transform.schemas import (
    CropBox,
    ExtractRegion,
    FitMode,
    ImageInfo,
    OutputFormat,
    ProcessingOptions,
)

logger = get_logger(__name__)

WHITE = (255, 255, 255)

COLOR_SPACES = {
    "1": "b-w",
    "L": "b-w",
    "LA": "b-w",
    "P": "srgb",
    "RGB": "srgb",
    "RGBA": "srgb",
    "CMYK": "cmyk",
    "YCbCr": "ycbcr",
    "LAB": "lab",
    "I": "grey16",
    "I;16": "grey16",
    "F": "float",
}


# =============================================================================
# Geometry
# =============================================================================

def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def force_even(value: int) -> int:
    return value - value % 2


def compute_extract_box(region: ExtractRegion, width: int, height: int) -> Optional[CropBox]:
    """
    Convert a normalized region to a pixel crop box inside width x height.

    Left/top are clamped to `dimension - 1`, width/height to the remaining
    space, then both are forced even. Returns None when the box collapses.
    """
    crop_left = round_half_up(region.left * width)
    crop_top = round_half_up(region.top * height)
    crop_width = round_half_up(region.width * width)
    crop_height = round_half_up(region.height * height)

    safe_left = max(0, min(crop_left, width - 1))
    safe_top = max(0, min(crop_top, height - 1))
    safe_width = min(crop_width, width - safe_left)
    safe_height = min(crop_height, height - safe_top)

    even_width = force_even(safe_width)
    even_height = force_even(safe_height)

    if even_width <= 0 or even_height <= 0:
        return None

    return CropBox(left=safe_left, top=safe_top, width=even_width, height=even_height)


def compute_contain_dimensions(
    original_width: int,
    original_height: int,
    target_width: int,
    target_height: int
) -> Tuple[int, int]:
    factor = min(target_width / original_width, target_height / original_height)
    width = force_even(round_half_up(original_width * factor))
    height = force_even(round_half_up(original_height * factor))
    return width, height


def compute_cover_dimensions(
    original_width: int,
    original_height: int,
    target_width: int,
    target_height: int
) -> Tuple[int, int]:
    original_ratio = original_width / original_height
    target_ratio = target_width / target_height

    if original_ratio > target_ratio:
        height = target_height
        width = round_half_up(target_height * original_ratio)
    else:
        width = target_width
        height = round_half_up(target_width / original_ratio)

    return force_even(width), force_even(height)


def parse_background_color(value: Optional[str]) -> Tuple[int, int, int]:
    """Parse #RGB or #RRGGBB. Anything else falls back to white."""
    if not value:
        return WHITE

    hex_value = value.lstrip("#")
    if len(hex_value) == 3:
        hex_value = "".join(c * 2 for c in hex_value)
    if len(hex_value) != 6:
        return WHITE

    try:
        return (
            int(hex_value[0:2], 16),
            int(hex_value[2:4], 16),
            int(hex_value[4:6], 16),
        )
    except ValueError:
        return WHITE


# =============================================================================
# Processor
# =============================================================================

def _has_alpha(image: Image.Image) -> bool:
    return image.mode in ("RGBA", "LA", "PA") or (
        image.mode == "P" and "transparency" in image.info
    )


def _open(buffer: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(buffer))
    image.load()
    return image


def _normalize_mode(image: Image.Image) -> Image.Image:
    target = "RGBA" if _has_alpha(image) else "RGB"
    if image.mode != target:
        image = image.convert(target)
    return image


def _flatten(image: Image.Image, background: Tuple[int, int, int]) -> Image.Image:
    """Drop alpha by compositing onto the background color."""
    if image.mode != "RGBA":
        return image.convert("RGB")
    canvas = Image.new("RGB", image.size, background)
    canvas.paste(image, mask=image.getchannel("A"))
    return canvas


def _encode(
    image: Image.Image,
    fmt: OutputFormat,
    quality: int,
    background: Tuple[int, int, int] = WHITE
) -> bytes:
    output = io.BytesIO()

    if fmt is OutputFormat.WEBP:
        image.save(
            output,
            format="WEBP",
            quality=quality,
            method=6,  # maximum compression effort
            lossless=False,
            alpha_quality=quality,
        )
    elif fmt is OutputFormat.JPG:
        _flatten(image, background).save(
            output,
            format="JPEG",
            quality=quality,
            progressive=True,
            optimize=True,
        )
    else:
        image.save(output, format="PNG", optimize=True)

    return output.getvalue()


class ImageProcessor:
    """Stateless transform engine. All methods are blocking; run them off the event loop."""

    def process(self, buffer: bytes, options: ProcessingOptions) -> bytes:
        try:
            image = _normalize_mode(_open(buffer))
            background = parse_background_color(options.background)

            if options.extract_region is not None:
                box = compute_extract_box(options.extract_region, image.width, image.height)
                if box is not None:
                    image = image.crop(
                        (box.left, box.top, box.left + box.width, box.top + box.height)
                    )

            image = self._resize(image, options, background)
            output = _encode(image, options.format, options.quality, background)

            logger.debug(
                "image_processed",
                width=image.width,
                height=image.height,
                fit=options.fit.value,
                format=options.format.value,
                size=len(output),
            )
            return output

        except DomainError:
            raise
        except Exception as e:
            raise ImageProcessingError(
                f"Image processing failed: {e}",
                details={
                    "width": options.width,
                    "height": options.height,
                    "fit": options.fit.value,
                    "format": options.format.value,
                    "error_type": type(e).__name__,
                }
            ) from e

    def compress(self, buffer: bytes, fmt: OutputFormat, quality: int) -> bytes:
        try:
            image = _normalize_mode(_open(buffer))
            return _encode(image, fmt, quality)
        except Exception as e:
            raise CompressionError(
                f"Image compression failed: {e}",
                details={"format": fmt.value, "quality": quality, "error_type": type(e).__name__}
            ) from e

    def get_info(self, buffer: bytes) -> ImageInfo:
        try:
            image = Image.open(io.BytesIO(buffer))
            dpi = image.info.get("dpi")
            return ImageInfo(
                width=image.width,
                height=image.height,
                format=(image.format or "unknown").lower(),
                size=len(buffer),
                has_alpha=_has_alpha(image),
                color_space=COLOR_SPACES.get(image.mode, image.mode.lower()),
                density=float(dpi[0]) if dpi else None,
            )
        except Exception as e:
            raise ImageInfoError(
                f"Failed to read image info: {e}",
                details={"size": len(buffer), "error_type": type(e).__name__}
            ) from e

    def _resize(
        self,
        image: Image.Image,
        options: ProcessingOptions,
        background: Tuple[int, int, int]
    ) -> Image.Image:
        if options.fit is FitMode.FILL:
            return image.resize((options.width, options.height), Image.Resampling.LANCZOS)

        if options.fit is FitMode.CONTAIN:
            width, height = compute_contain_dimensions(
                image.width, image.height, options.width, options.height
            )
            resized = image.resize((max(width, 2), max(height, 2)), Image.Resampling.LANCZOS)
            fill = background + (255,) if resized.mode == "RGBA" else background
            canvas = Image.new(resized.mode, (options.width, options.height), fill)
            offset = (
                (options.width - resized.width) // 2,
                (options.height - resized.height) // 2,
            )
            if resized.mode == "RGBA":
                canvas.paste(resized, offset, mask=resized.getchannel("A"))
            else:
                canvas.paste(resized, offset)
            return canvas

        width, height = compute_cover_dimensions(
            image.width, image.height, options.width, options.height
        )
        resized = image.resize((max(width, 2), max(height, 2)), Image.Resampling.LANCZOS)
        crop_width = min(options.width, resized.width)
        crop_height = min(options.height, resized.height)
        left = (resized.width - crop_width) // 2
        top = (resized.height - crop_height) // 2
        return resized.crop((left, top, left + crop_width, top + crop_height))
