"""
Domain Errors and Global Exception Handling

Every error raised by the pipeline carries a machine-readable code and a
recoverability flag. The retry layer retries recoverable errors up to the
attempt ceiling; non-recoverable errors fail the job immediately.
"""

import time
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from imagepipe.core.logging import get_logger, job_id_var

logger = get_logger(__name__)


# =============================================================================
# Domain Errors
# =============================================================================

class DomainError(Exception):
    """Base error for the image pipeline."""

    default_code = "DOMAIN_ERROR"
    default_recoverable = False
    http_status = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        recoverable: Optional[bool] = None,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        http_status: Optional[int] = None
    ):
        self.message = message
        self.code = code or self.default_code
        self.recoverable = self.default_recoverable if recoverable is None else recoverable
        self.job_id = job_id or job_id_var.get()
        self.stage = stage
        self.details = details or {}
        if http_status is not None:
            self.http_status = http_status
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "recoverable": self.recoverable,
            "job_id": self.job_id,
            "stage": self.stage,
            "details": self.details,
        }


# Image transform engine
class ImageProcessingError(DomainError):
    default_code = "IMAGE_PROCESSING_ERROR"
    default_recoverable = True


class CompressionError(DomainError):
    default_code = "COMPRESSION_ERROR"
    default_recoverable = True


class ImageInfoError(DomainError):
    default_code = "IMAGE_INFO_ERROR"
    default_recoverable = False
    http_status = 422


# AI analysis adapter
class AIAnalysisError(DomainError):
    default_code = "AI_ANALYSIS_ERROR"
    default_recoverable = True
    http_status = 502


class PromptGenerationError(DomainError):
    default_code = "PROMPT_GENERATION_ERROR"
    default_recoverable = True
    http_status = 502


# Storage
class StorageError(DomainError):
    default_code = "STORAGE_ERROR"
    default_recoverable = True


class StorageObjectNotFoundError(StorageError):
    """The referenced object is gone; retrying will not bring it back."""
    default_code = "STORAGE_OBJECT_NOT_FOUND"
    default_recoverable = False


# Pipeline
class PipelineError(DomainError):
    default_code = "PIPELINE_ERROR"
    default_recoverable = True


class VersionGenerationError(DomainError):
    default_code = "VERSION_GENERATION_FAILED"
    default_recoverable = False


# Queue
class QueueUnavailableError(DomainError):
    default_code = "QUEUE_UNAVAILABLE"
    default_recoverable = True
    http_status = 503


# Job entity
class InvalidImageJobError(DomainError):
    """Raised when an upload or a persisted job breaks the entity rules."""
    default_code = "INVALID_IMAGE_JOB"
    default_recoverable = False
    http_status = 400


class InvalidStatusTransitionError(DomainError):
    default_code = "INVALID_JOB_STATE"
    default_recoverable = False
    http_status = 409

    def __init__(self, current: str, target: str, **kwargs):
        super().__init__(
            f"Cannot transition job from {current} to {target}",
            **kwargs
        )
        self.details.update({"from": current, "to": target})


class NotFoundError(DomainError):
    """Referenced entity never existed. Kept apart from processing failures."""
    default_code = "NOT_FOUND"
    default_recoverable = False
    http_status = 404


class JobNotFoundError(NotFoundError):
    default_code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str, **kwargs):
        super().__init__(f"Image job not found: {job_id}", job_id=job_id, **kwargs)


# =============================================================================
# Circuit Breaker
# =============================================================================

class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    Fail-fast guard for the external AI provider.

    After `failure_threshold` consecutive failures the circuit opens and
    callers are refused without touching the provider. Once
    `recovery_timeout` seconds have passed a single trial call is let
    through (HALF_OPEN); its outcome closes or reopens the circuit.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self.reset()

    @property
    def state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self._clock() - self._opened_at >= self.recovery_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
        return self._state

    def can_execute(self) -> bool:
        state = self.state
        if state is CircuitState.CLOSED:
            return True
        if state is CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def record_success(self):
        if self._state is not CircuitState.CLOSED:
            logger.info("circuit_breaker_closed", circuit=self.name)
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._trial_in_flight = False

    def record_failure(self, error: Optional[Exception] = None):
        self._failures += 1
        if self._state is CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            event = "circuit_breaker_reopened" if self._state is CircuitState.HALF_OPEN else "circuit_breaker_opened"
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            self._trial_in_flight = False
            logger.warning(
                event,
                circuit=self.name,
                failures=self._failures,
                error=str(error) if error else None
            )

    def reset(self):
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False


# =============================================================================
# Exception Handlers
# =============================================================================

def error_body(message: str, code: str, job_id: Optional[str] = None, **extra) -> Dict[str, Any]:
    """JSON body shared by every error response."""
    return {
        "error": message,
        "code": code,
        "job_id": job_id,
        **extra,
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }


def register_exception_handlers(app: FastAPI):
    """Render DomainError as structured JSON; hide everything else behind a 500."""

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        log = logger.warning if exc.http_status < 500 else logger.error
        log(
            "domain_error",
            code=exc.code,
            error=exc.message,
            recoverable=exc.recoverable,
            stage=exc.stage,
            path=request.url.path
        )
        return JSONResponse(
            status_code=exc.http_status,
            content=error_body(
                exc.message,
                exc.code,
                exc.job_id,
                stage=exc.stage,
                details=exc.details,
            )
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=exc
        )
        return JSONResponse(
            status_code=500,
            content=error_body("Internal server error", "INTERNAL_ERROR", job_id_var.get())
        )
