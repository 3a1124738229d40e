from pydantic import BaseModel, Field
from typing import List, Dict, Optional, Any
from enum import Enum


class BrandVertical(str, Enum):
    FASHION = "fashion"
    ELECTRONICS = "electronics"
    HOME = "home"
    OTHER = "other"


class BrandTone(str, Enum):
    PREMIUM = "premium"
    NEUTRAL = "neutral"
    MASS_MARKET = "mass-market"


class BrandContext(BaseModel):
    """Brand hints used to shape AI analysis."""
    name: Optional[str] = Field(None, max_length=200)
    vertical: Optional[BrandVertical] = None
    tone: Optional[BrandTone] = None
    background: Optional[str] = Field(None, max_length=100)


class ProductContext(BaseModel):
    """Product hints used to shape AI analysis."""
    id: Optional[str] = Field(None, max_length=200)
    category: Optional[str] = Field(None, max_length=200)
    attributes: List[str] = Field(default_factory=list)


class JobStats(BaseModel):
    """Aggregate job counts.

    pending_jobs covers PENDING and QUEUED (both are waiting for a worker);
    queued_jobs breaks out the QUEUED share.
    """
    total_jobs: int = 0
    pending_jobs: int = 0
    queued_jobs: int = 0
    processing_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0
    average_processing_time_ms: int = 0


class UploadResponseDTO(BaseModel):
    """Response from the upload endpoint."""
    job_id: str
    status: str
    status_label: str
    queue_status: str  # queued, fallback
    queue_job_id: Optional[str] = None
    message: str


class JobResponseDTO(BaseModel):
    """Single job view."""
    id: str
    status: str
    status_label: str
    original_file_name: str
    original_file_size: int
    mime_type: str
    attempts: int = 0
    run_ai_analysis: bool = True
    brand_context: Optional[Dict[str, Any]] = None
    product_context: Optional[Dict[str, Any]] = None
    versions: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    processing_time_ms: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    processing_started_at: Optional[str] = None
    processing_ended_at: Optional[str] = None


class JobListResponseDTO(BaseModel):
    """Paginated job listing."""
    jobs: List[JobResponseDTO]
    total: int
    page: int
    page_size: int
    stats: JobStats
