"""
Process Image Pipeline

Drives one job through: load source -> optional AI analysis -> crop region
-> version generation -> persist -> COMPLETED.

Re-delivery safety comes from re-reading the job first: COMPLETED and
CANCELLED jobs, and FAILED jobs at the attempt ceiling, are skipped.
Recoverable errors propagate with the job left in PROCESSING so the retry
layer can run it again; non-recoverable errors fail the job immediately.
"""

import time
from dataclasses import dataclass, asdict
from typing import Optional, Sequence

from imagepipe.core.audit import AuditEvent, AuditSink, emit_audit
from imagepipe.core.exceptions import (
    DomainError,
    JobNotFoundError,
    InvalidStatusTransitionError,
    PipelineError,
)
from imagepipe.core.logging import get_logger, LogContext
from imagepipe.core.metrics import record_job_started, record_job_finished, record_job_skipped
from imagepipe.core.storage import IStorage
from imagepipe.engines.analysis.services import AIAnalysisService
from imagepipe.engines.transform.processor import ImageProcessor
from imagepipe.modules.imagery.models import ProcessingStatus
from imagepipe.modules.imagery.repositories import ImageJobRepository
from imagepipe.pipeline.presets import VERSION_PRESETS, VersionPreset, derive_extract_region
from imagepipe.pipeline.stages import load_source, run_analysis, generate_versions

logger = get_logger(__name__)


@dataclass
class PipelineResult:
    job_id: str
    status: str
    versions_generated: int = 0
    processing_time_ms: int = 0
    skipped: bool = False
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class ProcessImagePipeline:
    """Runs the pipeline for one job id per execute() call."""

    def __init__(
        self,
        repository: ImageJobRepository,
        storage: IStorage,
        processor: ImageProcessor,
        analysis: Optional[AIAnalysisService] = None,
        audit: Optional[AuditSink] = None,
        presets: Sequence[VersionPreset] = VERSION_PRESETS,
        max_attempts: int = 3,
        recompress_quality: int = 70,
    ):
        self.repository = repository
        self.storage = storage
        self.processor = processor
        self.analysis = analysis
        self.audit = audit
        self.presets = tuple(presets)
        self.max_attempts = max_attempts
        self.recompress_quality = recompress_quality

    def _skip(self, job_id: str, status: ProcessingStatus, reason: str, versions: int = 0) -> PipelineResult:
        logger.info("pipeline_skipped", job_id=job_id, status=status.value, reason=reason)
        record_job_skipped(reason)
        return PipelineResult(
            job_id=job_id,
            status=status.value,
            versions_generated=versions,
            skipped=True,
            reason=reason,
        )

    async def execute(
        self,
        job_id: str,
        run_ai_analysis: bool = True,
        attempt_number: int = 1,
        max_attempts: Optional[int] = None,
    ) -> PipelineResult:
        ceiling = max_attempts or self.max_attempts

        with LogContext(job_id=job_id):
            job = await self.repository.find_by_id(job_id)
            if job is None:
                raise JobNotFoundError(job_id)

            status = job.processing_status
            if status is ProcessingStatus.COMPLETED:
                return self._skip(job_id, status, "already_completed", len(job.versions or {}))
            if status is ProcessingStatus.CANCELLED:
                return self._skip(job_id, status, "cancelled")
            if status is ProcessingStatus.FAILED and attempt_number >= ceiling:
                return self._skip(job_id, status, "max_attempts_exceeded")

            job = await self.repository.update_status(job_id, ProcessingStatus.PROCESSING)
            start = time.monotonic()
            record_job_started()
            logger.info(
                "pipeline_started",
                attempt=attempt_number,
                max_attempts=ceiling,
                run_ai_analysis=run_ai_analysis
            )

            try:
                result = await self._run(job, run_ai_analysis, start)
            except DomainError as e:
                await self._handle_failure(job_id, e, start)
                raise
            except Exception as e:
                error = PipelineError(
                    f"Pipeline failed: {e}",
                    job_id=job_id,
                    details={"error_type": type(e).__name__}
                )
                await self._handle_failure(job_id, error, start)
                raise error from e

            return result

    async def _run(self, job, run_ai_analysis: bool, start: float) -> PipelineResult:
        source, info = await load_source(self.storage, self.processor, job)

        analysis_result = None
        if run_ai_analysis and self.analysis is not None:
            analysis_result = await run_analysis(self.analysis, source, job)
            await emit_audit(self.audit, AuditEvent.ANALYSIS_COMPLETED, job.id, {
                "quality_score": analysis_result.quality_score,
                "issues": len(analysis_result.issues),
            })
        elif run_ai_analysis:
            logger.info("ai_analysis_unavailable")

        extract_region = derive_extract_region(
            analysis_result.suggested_crop if analysis_result else None,
            info.width,
            info.height,
        )

        versions = await generate_versions(
            self.processor,
            self.storage,
            job,
            source,
            self.presets,
            extract_region,
            self.recompress_quality,
        )

        current = await self.repository.find_by_id(job.id)
        if current is not None and current.processing_status in (
            ProcessingStatus.COMPLETED,
            ProcessingStatus.CANCELLED,
        ):
            # Another execution finished first, or an operator cancelled mid-flight
            record_job_finished("skipped", time.monotonic() - start, "superseded")
            logger.info("pipeline_result_discarded", status=current.status)
            return PipelineResult(
                job_id=job.id,
                status=current.status,
                versions_generated=len(current.versions or {}),
                skipped=True,
                reason="superseded",
            )

        for version in versions:
            job.attach_version(version)
        job.transition_to(ProcessingStatus.COMPLETED)
        await self.repository.save(job)

        elapsed = time.monotonic() - start
        processing_time_ms = int(elapsed * 1000)
        record_job_finished("completed", elapsed)
        await emit_audit(self.audit, AuditEvent.VERSIONS_GENERATED, job.id, {
            "versions": [v.version_type.value for v in versions],
            "processing_time_ms": processing_time_ms,
        })
        logger.info(
            "pipeline_completed",
            versions_generated=len(versions),
            processing_time_ms=processing_time_ms,
            extract_region=extract_region.model_dump() if extract_region else None
        )

        return PipelineResult(
            job_id=job.id,
            status=ProcessingStatus.COMPLETED.value,
            versions_generated=len(versions),
            processing_time_ms=processing_time_ms,
        )

    async def _handle_failure(self, job_id: str, error: DomainError, start: float):
        elapsed = time.monotonic() - start

        if error.recoverable:
            record_job_finished("retryable", elapsed, error.code)
            logger.warning(
                "pipeline_failed_recoverable",
                code=error.code,
                error=error.message
            )
            return

        record_job_finished("failed", elapsed, error.code)
        logger.error(
            "pipeline_failed",
            code=error.code,
            error=error.message,
            details=error.details
        )
        await self.mark_failed(job_id, error)

    async def mark_failed(self, job_id: str, error: DomainError):
        """Persist FAILED with the error and emit the job_failed audit event."""
        try:
            await self.repository.update_status(
                job_id,
                ProcessingStatus.FAILED,
                error_message=error.message,
                error_code=error.code,
            )
        except (JobNotFoundError, InvalidStatusTransitionError) as e:
            logger.warning("job_failed_status_not_updated", job_id=job_id, error=str(e))

        await emit_audit(self.audit, AuditEvent.JOB_FAILED, job_id, {
            "code": error.code,
            "message": error.message,
        })
