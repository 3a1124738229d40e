"""
Version Presets

The fixed set of outputs every job produces, plus the mapping from the
AI suggested crop to a normalized extract region.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from imagepipe.engines.analysis.schemas import CropRegion
from imagepipe.engines.transform.schemas import (
    ExtractRegion,
    FitMode,
    OutputFormat,
    ProcessingOptions,
)
from imagepipe.modules.imagery.models import VersionType

KB = 1024
MB = 1024 * KB


@dataclass(frozen=True)
class VersionPreset:
    version_type: VersionType
    width: int
    height: int
    format: OutputFormat
    quality: int
    fit: FitMode
    max_file_size_bytes: int

    def to_options(
        self,
        extract_region: Optional[ExtractRegion] = None,
        background: Optional[str] = None
    ) -> ProcessingOptions:
        return ProcessingOptions(
            width=self.width,
            height=self.height,
            fit=self.fit,
            format=self.format,
            quality=self.quality,
            background=background,
            extract_region=extract_region,
        )

    def file_name(self, job_id: str) -> str:
        return f"{job_id}_{self.version_type.value.lower()}.{self.format.extension}"


VERSION_PRESETS: Tuple[VersionPreset, ...] = (
    VersionPreset(
        version_type=VersionType.MASTER_4K,
        width=4096,
        height=4096,
        format=OutputFormat.WEBP,
        quality=95,
        fit=FitMode.CONTAIN,
        max_file_size_bytes=int(1.5 * MB),
    ),
    VersionPreset(
        version_type=VersionType.GRID,
        width=2048,
        height=2048,
        format=OutputFormat.WEBP,
        quality=85,
        fit=FitMode.COVER,
        max_file_size_bytes=500 * KB,
    ),
    VersionPreset(
        version_type=VersionType.PDP,
        width=1200,
        height=1200,
        format=OutputFormat.WEBP,
        quality=85,
        fit=FitMode.COVER,
        max_file_size_bytes=300 * KB,
    ),
    VersionPreset(
        version_type=VersionType.THUMBNAIL,
        width=600,
        height=600,
        format=OutputFormat.WEBP,
        quality=80,
        fit=FitMode.COVER,
        max_file_size_bytes=150 * KB,
    ),
)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def derive_extract_region(
    crop: Optional[CropRegion],
    image_width: int,
    image_height: int
) -> Optional[ExtractRegion]:
    """
    Normalize an AI suggested crop to [0, 1].

    All values <= 1 are read as fractions, values up to 100 as percentages,
    anything larger as pixels of the source image.
    """
    if crop is None or image_width <= 0 or image_height <= 0:
        return None

    values = (crop.x, crop.y, crop.width, crop.height)
    if max(values) <= 1:
        left, top, width, height = values
    elif max(values) <= 100:
        left, top, width, height = (v / 100 for v in values)
    else:
        left = crop.x / image_width
        top = crop.y / image_height
        width = crop.width / image_width
        height = crop.height / image_height

    region = ExtractRegion(
        left=_clamp(left),
        top=_clamp(top),
        width=_clamp(width),
        height=_clamp(height),
    )
    if region.width == 0 or region.height == 0:
        return None
    # A full-frame suggestion is not a crop
    if region.left == 0 and region.top == 0 and region.width == 1 and region.height == 1:
        return None
    return region
