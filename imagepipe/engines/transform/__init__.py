"""
Image Transform Engine - smart crop, resize fit modes, multi-format encode.
"""

from imagepipe.engines.transform.processor import ImageProcessor
from imagepipe.engines.transform.schemas import (
    ExtractRegion,
    FitMode,
    ImageInfo,
    OutputFormat,
    ProcessingOptions,
)

__all__ = [
    "ImageProcessor",
    "ExtractRegion",
    "FitMode",
    "ImageInfo",
    "OutputFormat",
    "ProcessingOptions",
]
