from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional
from enum import Enum


class OutputFormat(str, Enum):
    WEBP = "WEBP"
    JPG = "JPG"
    PNG = "PNG"

    @property
    def pil_format(self) -> str:
        return "JPEG" if self is OutputFormat.JPG else self.value

    @property
    def extension(self) -> str:
        return self.value.lower()

    @property
    def mime_type(self) -> str:
        return {
            OutputFormat.WEBP: "image/webp",
            OutputFormat.JPG: "image/jpeg",
            OutputFormat.PNG: "image/png",
        }[self]


class FitMode(str, Enum):
    CONTAIN = "contain"  # scale to fit, pad with background
    COVER = "cover"      # scale to fill, crop centered overflow
    FILL = "fill"        # exact target size, aspect ratio ignored


class ExtractRegion(BaseModel):
    """Normalized crop region, every field in [0, 1]."""
    left: float = Field(..., ge=0.0, le=1.0)
    top: float = Field(..., ge=0.0, le=1.0)
    width: float = Field(..., ge=0.0, le=1.0)
    height: float = Field(..., ge=0.0, le=1.0)


class ProcessingOptions(BaseModel):
    """Options for a single transform."""
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    fit: FitMode = FitMode.COVER
    format: OutputFormat = OutputFormat.WEBP
    quality: int = Field(85, ge=1, le=100)
    background: Optional[str] = None  # hex, defaults to white
    extract_region: Optional[ExtractRegion] = None

    @field_validator("background")
    @classmethod
    def validate_background(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith("#"):
            raise ValueError("background must be a hex color like #fff or #ffffff")
        return v


class ImageInfo(BaseModel):
    """Metadata extracted from an encoded image."""
    width: int
    height: int
    format: str
    size: int
    has_alpha: bool
    color_space: str
    density: Optional[float] = None


class CropBox(BaseModel):
    """Absolute pixel crop box."""
    left: int
    top: int
    width: int
    height: int

    @model_validator(mode="after")
    def check_non_negative(self):
        if min(self.left, self.top, self.width, self.height) < 0:
            raise ValueError("crop box values must be non-negative")
        return self
