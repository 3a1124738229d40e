from pydantic import BaseModel, ConfigDict, Field, AliasChoices, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from typing import List, Optional

from imagepipe.modules.imagery.schemas import BrandContext, ProductContext


class AnalysisContext(BaseModel):
    """Brand/product hints used to shape the provider instructions."""
    brand: Optional[BrandContext] = None
    product: Optional[ProductContext] = None


class CropRegion(BaseModel):
    """
    Region of interest as returned by the provider.

    Values may be fractions (0-1), percentages (0-100) or pixels; the
    pipeline normalizes them against the source size before cropping.
    """
    x: float = Field(0.0, ge=0, validation_alias=AliasChoices("x", "left"))
    y: float = Field(0.0, ge=0, validation_alias=AliasChoices("y", "top"))
    width: float = Field(..., gt=0)
    height: float = Field(..., gt=0)


class AnalysisIssue(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = "other"
    severity: str = "low"  # low, medium, high
    message: str = ""
    suggestion: Optional[str] = None


class AIAnalysisResult(BaseModel):
    """Transient analysis output. Never persisted on its own."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    detected_objects: List[str] = Field(default_factory=list)
    suggested_crop: Optional[CropRegion] = None
    quality_score: float = Field(50, ge=0, le=100)
    dominant_colors: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    issues: List[AnalysisIssue] = Field(default_factory=list)

    @field_validator("quality_score", mode="before")
    @classmethod
    def clamp_quality_score(cls, value):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return min(100, max(0, value))
        return value

    @field_validator("suggested_crop", mode="wrap")
    @classmethod
    def drop_unusable_crop(cls, value, handler):
        # A bad crop means "no crop", not an unreadable analysis
        try:
            return handler(value)
        except ValidationError:
            return None
