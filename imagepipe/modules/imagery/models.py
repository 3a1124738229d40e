"""
ImageJob Aggregate with Status State Machine

Tracks one uploaded image through the pipeline:
- Status transitions with processing start/end stamps
- Generated versions keyed by version type
- Error state management
"""

import uuid
from enum import Enum
from sqlmodel import SQLModel, Field, Column, JSON
from pydantic import BaseModel, field_validator
from typing import Optional, Dict, Any, Iterable
from datetime import datetime

from imagepipe.core.exceptions import InvalidImageJobError, InvalidStatusTransitionError
from imagepipe.engines.transform.schemas import OutputFormat


class ProcessingStatus(str, Enum):
    """Job status states."""
    PENDING = "PENDING"         # Job created, not enqueued yet
    QUEUED = "QUEUED"           # Accepted, waiting for a worker
    PROCESSING = "PROCESSING"   # A worker is running the pipeline
    COMPLETED = "COMPLETED"     # All versions persisted
    FAILED = "FAILED"           # Gave up on the job
    CANCELLED = "CANCELLED"     # Administrative override

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingStatus.COMPLETED, ProcessingStatus.CANCELLED)


class VersionType(str, Enum):
    MASTER_4K = "MASTER_4K"
    GRID = "GRID"
    PDP = "PDP"
    THUMBNAIL = "THUMBNAIL"


# PROCESSING -> PROCESSING is a retry re-entering the pipeline after a
# recoverable error. FAILED -> PROCESSING is only reached below the attempt
# ceiling; the worker refuses it once the ceiling is hit.
ALLOWED_TRANSITIONS: Dict[ProcessingStatus, frozenset] = {
    ProcessingStatus.PENDING: frozenset({
        ProcessingStatus.QUEUED,
        ProcessingStatus.PROCESSING,
        ProcessingStatus.FAILED,
        ProcessingStatus.CANCELLED,
    }),
    ProcessingStatus.QUEUED: frozenset({
        ProcessingStatus.PROCESSING,
        ProcessingStatus.FAILED,
        ProcessingStatus.CANCELLED,
    }),
    ProcessingStatus.PROCESSING: frozenset({
        ProcessingStatus.PROCESSING,
        ProcessingStatus.COMPLETED,
        ProcessingStatus.FAILED,
        ProcessingStatus.CANCELLED,
    }),
    ProcessingStatus.FAILED: frozenset({
        ProcessingStatus.PROCESSING,
    }),
    ProcessingStatus.COMPLETED: frozenset(),
    ProcessingStatus.CANCELLED: frozenset(),
}


class ImageVersion(BaseModel):
    """One generated output image. Owned by exactly one ImageJob."""
    version_type: VersionType
    width: int
    height: int
    file_size: int
    format: OutputFormat
    quality: int
    file_name: str
    file_path: str
    url: Optional[str] = None
    content_hash: Optional[str] = None
    created_at: datetime

    @field_validator("width", "height")
    @classmethod
    def validate_even_dimension(cls, v: int) -> int:
        if v <= 0 or v % 2 != 0:
            raise ValueError(f"dimension must be a positive even number, got {v}")
        return v

    @field_validator("quality")
    @classmethod
    def validate_quality(cls, v: int) -> int:
        if not 1 <= v <= 100:
            raise ValueError("quality must be between 1 and 100")
        return v

    @field_validator("file_size")
    @classmethod
    def validate_file_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("file_size must be positive")
        return v


class ImageJob(SQLModel, table=True):
    """
    ImageJob aggregate root.

    Stores:
    - Original upload metadata and storage path
    - Brand/product context used to shape AI analysis
    - Generated versions as {version_type: serialized ImageVersion}
    - Timing and error information
    """
    __tablename__ = "image_jobs"

    # Primary Key
    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )

    # Original upload
    original_file_name: str
    original_file_size: int
    mime_type: str
    original_file_path: str = Field(default="")

    # Status
    status: str = Field(default=ProcessingStatus.PENDING.value, index=True)
    attempts: int = Field(default=0)
    run_ai_analysis: bool = Field(default=True)

    # Context for AI analysis
    brand_context: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    product_context: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    # Generated versions
    versions: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    # Error Tracking
    error_message: Optional[str] = None
    error_code: Optional[str] = None

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    processing_started_at: Optional[datetime] = None
    processing_ended_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        original_file_name: str,
        original_file_size: int,
        mime_type: str,
        allowed_mime_types: Iterable[str],
        max_file_size: int,
        run_ai_analysis: bool = True,
        brand_context: Optional[Dict[str, Any]] = None,
        product_context: Optional[Dict[str, Any]] = None,
    ) -> "ImageJob":
        """Build a PENDING job after enforcing the upload rules."""
        if not original_file_name or len(original_file_name) > 255:
            raise InvalidImageJobError(
                "File name must be between 1 and 255 characters",
                code="INVALID_FILE_NAME"
            )
        if mime_type not in set(allowed_mime_types):
            raise InvalidImageJobError(
                f"Invalid file type: {mime_type}",
                code="INVALID_FILE_TYPE",
                details={"allowed": sorted(allowed_mime_types)}
            )
        if original_file_size <= 0:
            raise InvalidImageJobError("File is empty", code="EMPTY_FILE")
        if original_file_size > max_file_size:
            raise InvalidImageJobError(
                f"File too large: {original_file_size} bytes (max {max_file_size})",
                code="FILE_TOO_LARGE",
                http_status=413,
                details={"size": original_file_size, "max_size": max_file_size}
            )

        return cls(
            original_file_name=original_file_name,
            original_file_size=original_file_size,
            mime_type=mime_type,
            run_ai_analysis=run_ai_analysis,
            brand_context=brand_context,
            product_context=product_context,
        )

    @property
    def processing_status(self) -> ProcessingStatus:
        return ProcessingStatus(self.status)

    def can_transition_to(self, target: ProcessingStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.processing_status]

    def transition_to(self, target: ProcessingStatus):
        """Move to `target`, stamping processing start/end times."""
        target = ProcessingStatus(target)
        if not self.can_transition_to(target):
            raise InvalidStatusTransitionError(self.status, target.value, job_id=self.id)
        if target is ProcessingStatus.COMPLETED and not self.versions:
            raise InvalidImageJobError(
                "A job without versions cannot be completed",
                code="NO_VERSIONS",
                job_id=self.id
            )

        now = datetime.utcnow()
        if target is ProcessingStatus.PROCESSING:
            self.processing_started_at = now
            self.processing_ended_at = None
            self.attempts += 1
        elif target in (ProcessingStatus.COMPLETED, ProcessingStatus.FAILED):
            self.processing_ended_at = now

        self.status = target.value
        self.updated_at = now

    def attach_version(self, version: ImageVersion):
        if self.processing_status is not ProcessingStatus.PROCESSING:
            raise InvalidImageJobError(
                f"Versions can only be attached while PROCESSING (status is {self.status})",
                code="INVALID_JOB_STATE",
                job_id=self.id,
                http_status=409
            )
        # Replace dict so the JSON column is flagged dirty
        versions = dict(self.versions or {})
        versions[version.version_type.value] = version.model_dump(mode="json")
        self.versions = versions
        self.updated_at = datetime.utcnow()

    def get_versions(self) -> Dict[VersionType, ImageVersion]:
        return {
            VersionType(key): ImageVersion.model_validate(value)
            for key, value in (self.versions or {}).items()
        }

    def mark_failed(self, message: str, code: Optional[str] = None):
        self.transition_to(ProcessingStatus.FAILED)
        self.error_message = message
        self.error_code = code

    @property
    def processing_time_ms(self) -> Optional[int]:
        if self.processing_started_at and self.processing_ended_at:
            delta = self.processing_ended_at - self.processing_started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_response_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        status = self.processing_status
        return {
            "id": self.id,
            "status": status.value,
            "status_label": status.label,
            "original_file_name": self.original_file_name,
            "original_file_size": self.original_file_size,
            "mime_type": self.mime_type,
            "attempts": self.attempts,
            "run_ai_analysis": self.run_ai_analysis,
            "brand_context": self.brand_context,
            "product_context": self.product_context,
            "versions": dict(self.versions or {}),
            "error": {
                "message": self.error_message,
                "code": self.error_code,
            } if status is ProcessingStatus.FAILED and self.error_message else None,
            "processing_time_ms": self.processing_time_ms,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "processing_started_at": self.processing_started_at.isoformat() if self.processing_started_at else None,
            "processing_ended_at": self.processing_ended_at.isoformat() if self.processing_ended_at else None,
        }
