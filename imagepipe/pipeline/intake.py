"""
Upload and Enqueue

Synchronous acceptance, asynchronous processing: validate the upload,
store the original, persist the job (PENDING -> QUEUED) and hand it to
the queue. The pipeline itself never runs on this path.
"""

from dataclasses import dataclass, asdict
from pathlib import PurePosixPath
from typing import Iterable, Optional

from imagepipe.core.audit import AuditEvent, AuditSink, emit_audit
from imagepipe.core.exceptions import QueueUnavailableError
from imagepipe.core.logging import get_logger, LogContext
from imagepipe.core.queue import JobQueue
from imagepipe.core.storage import IStorage
from imagepipe.modules.imagery.models import ImageJob, ProcessingStatus
from imagepipe.modules.imagery.repositories import ImageJobRepository
from imagepipe.modules.imagery.schemas import BrandContext, ProductContext

logger = get_logger(__name__)


@dataclass
class UploadResult:
    job_id: str
    status: str
    queue_status: str  # queued, fallback
    queue_job_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def original_path_for(job_id: str, file_name: str) -> str:
    suffix = PurePosixPath(file_name.replace("\\", "/")).suffix.lower()
    return f"jobs/{job_id}/original{suffix}"


class UploadAndEnqueue:
    """Upload use case."""

    def __init__(
        self,
        repository: ImageJobRepository,
        storage: IStorage,
        queue: JobQueue,
        allowed_mime_types: Iterable[str],
        max_file_size: int,
        audit: Optional[AuditSink] = None,
    ):
        self.repository = repository
        self.storage = storage
        self.queue = queue
        self.allowed_mime_types = list(allowed_mime_types)
        self.max_file_size = max_file_size
        self.audit = audit

    async def execute(
        self,
        file_buffer: bytes,
        file_name: str,
        mime_type: str,
        file_size: Optional[int] = None,
        run_ai_analysis: bool = True,
        brand_context: Optional[BrandContext] = None,
        product_context: Optional[ProductContext] = None,
        priority: int = 0,
    ) -> UploadResult:
        job = ImageJob.create(
            original_file_name=file_name,
            original_file_size=len(file_buffer) if file_size is None else file_size,
            mime_type=mime_type,
            allowed_mime_types=self.allowed_mime_types,
            max_file_size=self.max_file_size,
            run_ai_analysis=run_ai_analysis,
            brand_context=brand_context.model_dump(mode="json") if brand_context else None,
            product_context=product_context.model_dump(mode="json") if product_context else None,
        )

        with LogContext(job_id=job.id, stage="upload"):
            stored = await self.storage.write(
                original_path_for(job.id, file_name),
                file_buffer,
                mime_type,
            )
            job.original_file_path = stored.path
            await self.repository.save(job)
            await emit_audit(self.audit, AuditEvent.JOB_CREATED, job.id, {
                "file_name": file_name,
                "file_size": job.original_file_size,
                "mime_type": mime_type,
            })

            # QUEUED before the handoff so a fast worker never sees PENDING
            job = await self.repository.update_status(job.id, ProcessingStatus.QUEUED)

            queue_job_id = None
            try:
                queue_job_id = await self.queue.add_job(
                    job.id,
                    run_ai_analysis=run_ai_analysis,
                    priority=priority,
                )
                queue_status = "queued"
            except QueueUnavailableError as e:
                # The job stays QUEUED; the orphan sweep picks it up later
                logger.warning("queue_fallback", error=e.message)
                queue_status = "fallback"

            logger.info(
                "job_accepted",
                file_name=file_name,
                file_size=job.original_file_size,
                queue_status=queue_status,
                queue_job_id=queue_job_id
            )

        return UploadResult(
            job_id=job.id,
            status=job.status,
            queue_status=queue_status,
            queue_job_id=queue_job_id,
        )
