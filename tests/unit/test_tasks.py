import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from imagepipe.core.audit import AuditEvent
from imagepipe.core.exceptions import AIAnalysisError, QueueUnavailableError
from imagepipe.core.queue import InMemoryJobQueue, QueueJobRecord
from imagepipe.core.worker import WorkerPool
from imagepipe.modules.imagery.models import ProcessingStatus
from imagepipe.pipeline.orchestrator import ProcessImagePipeline
from imagepipe.pipeline.tasks import (
    PipelineTask,
    close_pipeline_context,
    enqueue_orphaned_jobs,
    handle_queue_job,
    process_image_job,
)


@pytest.fixture
def failing_analysis():
    analysis = AsyncMock()
    analysis.analyze.side_effect = AIAnalysisError("provider down")
    return analysis


def _context(repository, storage, processor, presets, analysis=None, queue=None, audit=None):
    pipeline = ProcessImagePipeline(repository, storage, processor, analysis, audit=audit, presets=presets)
    return SimpleNamespace(
        pipeline=pipeline,
        repository=repository,
        queue=queue or InMemoryJobQueue(),
    )


@pytest.mark.asyncio
async def test_handle_queue_job_returns_pipeline_result(repository, storage, processor, small_presets, job_factory):
    context = _context(repository, storage, processor, small_presets)
    job = await job_factory()

    result = await handle_queue_job(context, QueueJobRecord(job_id=job.id, run_ai_analysis=False))

    assert result["status"] == "COMPLETED"
    assert result["versions_generated"] == 4


@pytest.mark.asyncio
async def test_recoverable_error_on_last_attempt_fails_job(
    repository, storage, processor, small_presets, failing_analysis, job_factory
):
    context = _context(repository, storage, processor, small_presets, failing_analysis)
    job = await job_factory()

    with pytest.raises(AIAnalysisError):
        await handle_queue_job(context, QueueJobRecord(job_id=job.id, attempt_number=3, max_attempts=3))

    stored = await repository.find_by_id(job.id)
    assert stored.processing_status is ProcessingStatus.FAILED
    assert stored.error_code == "AI_ANALYSIS_ERROR"


@pytest.mark.asyncio
async def test_exhausted_attempts_emit_job_failed_audit(
    repository, storage, processor, small_presets, failing_analysis, job_factory
):
    audit = AsyncMock()
    context = _context(repository, storage, processor, small_presets, failing_analysis, audit=audit)
    job = await job_factory()

    with pytest.raises(AIAnalysisError):
        await handle_queue_job(context, QueueJobRecord(job_id=job.id, attempt_number=3, max_attempts=3))

    audit.record.assert_awaited_once()
    event, job_id, data = audit.record.await_args.args
    assert (event, job_id) == (AuditEvent.JOB_FAILED, job.id)
    assert data["code"] == "AI_ANALYSIS_ERROR"


@pytest.mark.asyncio
async def test_recoverable_error_before_last_attempt_keeps_processing(
    repository, storage, processor, small_presets, failing_analysis, job_factory
):
    context = _context(repository, storage, processor, small_presets, failing_analysis)
    job = await job_factory()

    with pytest.raises(AIAnalysisError):
        await handle_queue_job(context, QueueJobRecord(job_id=job.id, attempt_number=1, max_attempts=3))

    assert (await repository.find_by_id(job.id)).processing_status is ProcessingStatus.PROCESSING


@pytest.mark.asyncio
async def test_orphan_sweep_enqueues_waiting_jobs(repository, storage, processor, small_presets, job_factory):
    queue = InMemoryJobQueue()
    context = _context(repository, storage, processor, small_presets, queue=queue)
    pending = await job_factory(status=ProcessingStatus.PENDING, run_ai_analysis=False)
    queued = await job_factory(status=ProcessingStatus.QUEUED)
    await job_factory(status=ProcessingStatus.COMPLETED)

    submitted = await enqueue_orphaned_jobs(context)

    assert submitted == 2
    assert (await repository.find_by_id(pending.id)).processing_status is ProcessingStatus.QUEUED
    records = {r.job_id: r for r in [await queue.get(), await queue.get()]}
    assert set(records) == {pending.id, queued.id}
    assert records[pending.id].run_ai_analysis is False


@pytest.mark.asyncio
async def test_orphan_sweep_stops_when_queue_unavailable(repository, storage, processor, small_presets, job_factory):
    queue = AsyncMock()
    queue.add_job.side_effect = QueueUnavailableError("redis down")
    context = _context(repository, storage, processor, small_presets, queue=queue)
    await job_factory(status=ProcessingStatus.QUEUED)
    await job_factory(status=ProcessingStatus.QUEUED)

    assert await enqueue_orphaned_jobs(context) == 0
    assert queue.add_job.await_count == 1


def test_celery_task_runs_pipeline_and_releases_marker(repository, storage, processor, small_presets, job_factory):
    queue = AsyncMock()
    context = _context(repository, storage, processor, small_presets, queue=queue)
    job = process_image_job.run_async(job_factory())
    PipelineTask._context = context

    try:
        result = process_image_job.apply(kwargs={"job_id": job.id, "run_ai_analysis": False}).get()
    finally:
        PipelineTask._context = None
        close_pipeline_context()
        PipelineTask._loop = None

    assert result["status"] == "COMPLETED"
    queue.release.assert_awaited_once_with(job.id)


@pytest.mark.asyncio
async def test_periodic_sweep_leaves_processing_jobs_alone(repository, storage, processor, small_presets, job_factory):
    context = _context(repository, storage, processor, small_presets)
    await job_factory(status=ProcessingStatus.PROCESSING)

    assert await enqueue_orphaned_jobs(context) == 0
    assert await context.queue.get_pending_count() == 0


@pytest.mark.asyncio
async def test_startup_sweep_resumes_job_whose_retry_died_with_the_worker(
    repository, storage, processor, small_presets, failing_analysis, job_factory
):
    job = await job_factory()
    queue = InMemoryJobQueue()
    context = _context(repository, storage, processor, small_presets, failing_analysis, queue=queue)

    async def handler(record):
        return await handle_queue_job(context, record)

    pool = WorkerPool(queue, handler, concurrency=1, backoff_base_ms=60_000, shutdown_timeout=1)
    pool.start()
    await queue.add_job(job.id)

    async def _retry_scheduled():
        while failing_analysis.analyze.await_count < 1 or pool.in_flight:
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_retry_scheduled(), timeout=2)
    await pool.shutdown()

    assert (await repository.find_by_id(job.id)).processing_status is ProcessingStatus.PROCESSING

    restarted = _context(repository, storage, processor, small_presets, queue=InMemoryJobQueue())
    assert await enqueue_orphaned_jobs(restarted, include_processing=True) == 1

    record = await restarted.queue.get()
    result = await handle_queue_job(restarted, record)

    assert result["status"] == "COMPLETED"
    assert (await repository.find_by_id(job.id)).processing_status is ProcessingStatus.COMPLETED
