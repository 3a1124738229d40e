"""
Queue Tasks for the Image Pipeline

handle_queue_job is the worker-side entry point shared by both queue
backends: the asyncio WorkerPool calls it directly, the Celery task below
calls it on a per-process event loop.

Implements:
- Exponential backoff for recoverable errors up to the attempt ceiling
- FAILED status on non-recoverable errors and on the last attempt
- Orphan sweep re-enqueueing PENDING/QUEUED jobs (and, at in-memory
  worker startup, PROCESSING jobs) after a restart
"""

import asyncio
from typing import Any, Dict, Optional

from celery import Task
from celery.signals import worker_process_shutdown

from imagepipe.core.celery_app import celery_app
from imagepipe.core.config import settings
from imagepipe.core.exceptions import (
    DomainError,
    JobNotFoundError,
    InvalidStatusTransitionError,
    QueueUnavailableError,
)
from imagepipe.core.logging import get_logger, set_job_context, clear_job_context
from imagepipe.core.metrics import queue_retries_total
from imagepipe.core.queue import (
    PROCESS_TASK_NAME,
    SWEEP_TASK_NAME,
    QueueJobRecord,
    backoff_delay_ms,
    queue_job_id_for,
)
from imagepipe.modules.imagery.models import ProcessingStatus

logger = get_logger(__name__)


async def handle_queue_job(context, record: QueueJobRecord) -> Dict[str, Any]:
    """
    Process one queue delivery.

    Skips are decided by the pipeline from persisted status. A recoverable
    error on the last attempt is terminal, so the job is marked FAILED here
    before the error propagates.
    """
    try:
        result = await context.pipeline.execute(
            record.job_id,
            run_ai_analysis=record.run_ai_analysis,
            attempt_number=record.attempt_number,
            max_attempts=record.max_attempts,
        )
    except DomainError as e:
        if e.recoverable and record.attempt_number >= record.max_attempts:
            logger.error(
                "job_attempts_exhausted",
                job_id=record.job_id,
                attempts=record.attempt_number,
                code=e.code
            )
            await context.pipeline.mark_failed(record.job_id, e)
        raise

    return result.to_dict()


async def enqueue_orphaned_jobs(context, include_processing: bool = False) -> int:
    """
    Re-enqueue jobs accepted but never handed to a worker (PENDING) or
    handed to a queue that lost them (QUEUED). Returns the number submitted.

    With include_processing, PROCESSING jobs are picked up too. Only safe
    when no other execution can own them: at startup of a process whose
    in-memory queue died with the previous one, taking any pending retries
    and interrupted runs along with it.
    """
    statuses = [ProcessingStatus.PENDING, ProcessingStatus.QUEUED]
    if include_processing:
        statuses.append(ProcessingStatus.PROCESSING)

    orphans = []
    for status in statuses:
        orphans += await context.repository.find_by_status(status)

    submitted = 0
    for job in orphans:
        try:
            if job.processing_status is ProcessingStatus.PENDING:
                await context.repository.update_status(job.id, ProcessingStatus.QUEUED)
            await context.queue.add_job(job.id, run_ai_analysis=job.run_ai_analysis)
            submitted += 1
        except QueueUnavailableError as e:
            logger.warning("orphan_sweep_aborted", error=e.message, submitted=submitted)
            break
        except (JobNotFoundError, InvalidStatusTransitionError) as e:
            # Moved on between the read and the update
            logger.info("orphan_sweep_job_skipped", job_id=job.id, error=str(e))

    if orphans:
        logger.info("orphan_sweep_completed", found=len(orphans), submitted=submitted)
    return submitted


# =============================================================================
# Celery Tasks
# =============================================================================

class PipelineTask(Task):
    """
    Task base holding one event loop and one PipelineContext per worker
    process, built on first use.
    """

    _loop: Optional[asyncio.AbstractEventLoop] = None
    _context = None

    def run_async(self, coro):
        if PipelineTask._loop is None or PipelineTask._loop.is_closed():
            PipelineTask._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(PipelineTask._loop)
        return PipelineTask._loop.run_until_complete(coro)

    @property
    def context(self):
        if PipelineTask._context is None:
            from imagepipe.context import build_context
            PipelineTask._context = self.run_async(build_context(settings))
        return PipelineTask._context


@worker_process_shutdown.connect
def close_pipeline_context(**kwargs):
    loop = PipelineTask._loop
    if PipelineTask._context is not None and loop is not None and not loop.is_closed():
        loop.run_until_complete(PipelineTask._context.close())
        PipelineTask._context = None
    if loop is not None and not loop.is_closed():
        loop.close()


@celery_app.task(
    bind=True,
    base=PipelineTask,
    name=PROCESS_TASK_NAME,
    max_retries=max(settings.QUEUE_MAX_ATTEMPTS - 1, 0),
    acks_late=True
)
def process_image_job(self, job_id: str, run_ai_analysis: bool = True) -> Dict[str, Any]:
    """Celery entry point for one attempt of one image job."""
    record = QueueJobRecord(
        job_id=job_id,
        run_ai_analysis=run_ai_analysis,
        attempt_number=self.request.retries + 1,
        max_attempts=settings.QUEUE_MAX_ATTEMPTS,
        queue_job_id=self.request.id or queue_job_id_for(job_id),
    )
    set_job_context(job_id, "worker", record.attempt_number)
    context = self.context

    try:
        logger.info("task_process_image_started", attempt=record.attempt_number)
        result = self.run_async(handle_queue_job(context, record))

    except DomainError as e:
        if e.recoverable and record.attempt_number < record.max_attempts:
            countdown = backoff_delay_ms(record.attempt_number, settings.QUEUE_BACKOFF_BASE_MS) / 1000
            queue_retries_total.inc()
            logger.warning(
                "task_process_image_retry",
                attempt=record.attempt_number,
                countdown=countdown,
                code=e.code
            )
            raise self.retry(exc=e, countdown=countdown)

        self.run_async(context.queue.release(job_id))
        raise

    except Exception:
        self.run_async(context.queue.release(job_id))
        raise

    finally:
        clear_job_context()

    self.run_async(context.queue.release(job_id))
    logger.info("task_process_image_finished", job_id=job_id, status=result["status"])
    return result


@celery_app.task(
    bind=True,
    base=PipelineTask,
    name=SWEEP_TASK_NAME
)
def sweep_orphaned_jobs(self) -> int:
    return self.run_async(enqueue_orphaned_jobs(self.context))
