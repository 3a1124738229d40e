"""
Job Queue

Decouples "job accepted" from "job processed". Two implementations:
- InMemoryJobQueue: asyncio priority queue drained by core.worker.WorkerPool
- CeleryJobQueue: Redis-deduplicated handoff to the Celery image task

Both collapse duplicate enqueues of the same job id onto one queue job id
while the first one is still waiting or running.
"""

import asyncio
import heapq
import itertools
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, replace, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Tuple

from kombu.exceptions import OperationalError
from redis.exceptions import RedisError

from imagepipe.core.exceptions import QueueUnavailableError
from imagepipe.core.logging import get_logger
from imagepipe.core.metrics import record_enqueue

logger = get_logger(__name__)

PROCESS_TASK_NAME = "imagepipe.pipeline.tasks.process_image_job"
SWEEP_TASK_NAME = "imagepipe.pipeline.tasks.sweep_orphaned_jobs"


def queue_job_id_for(job_id: str) -> str:
    return f"image-{job_id}"


def backoff_delay_ms(attempt_number: int, base_ms: int) -> int:
    """Exponential backoff before the attempt following `attempt_number`."""
    return base_ms * 2 ** (attempt_number - 1)


@dataclass(frozen=True)
class QueueJobRecord:
    """What the queue hands to a worker for one execution."""
    job_id: str
    run_ai_analysis: bool = True
    attempt_number: int = 1
    max_attempts: int = 3
    queue_job_id: str = ""
    priority: int = 0


@dataclass
class QueueHistoryEntry:
    record: QueueJobRecord
    finished_at: datetime = field(default_factory=datetime.utcnow)
    result: Any = None
    error: Optional[str] = None


class JobQueue(ABC):
    """Enqueue side of the queue, shared by the upload flow and the sweep."""

    @abstractmethod
    async def add_job(
        self,
        job_id: str,
        run_ai_analysis: bool = True,
        priority: int = 0,
        delay_ms: int = 0
    ) -> str:
        """
        Enqueue a job and return its queue job id.

        Raises:
            QueueUnavailableError: the backend cannot accept work right now
        """
        pass

    @abstractmethod
    async def get_pending_count(self) -> int:
        pass

    @abstractmethod
    async def get_processing_count(self) -> int:
        pass

    async def release(self, job_id: str):
        """Forget the dedup marker of a job that reached a terminal state."""
        pass

    async def close(self):
        pass


# =============================================================================
# In-Memory Queue
# =============================================================================

class InMemoryJobQueue(JobQueue):
    """
    Process-local priority queue. Lower priority value runs first; equal
    priorities run in enqueue order.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        keep_completed: int = 100,
        keep_failed: int = 50
    ):
        self.max_attempts = max_attempts
        self._heap: List[Tuple[int, int, QueueJobRecord]] = []
        self._seq = itertools.count()
        self._wakeup = asyncio.Event()
        self._tracked: Dict[str, QueueJobRecord] = {}
        self._processing: Dict[str, QueueJobRecord] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._completed: Deque[QueueHistoryEntry] = deque(maxlen=keep_completed)
        self._failed: Deque[QueueHistoryEntry] = deque(maxlen=keep_failed)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def completed_history(self) -> List[QueueHistoryEntry]:
        return list(self._completed)

    @property
    def failed_history(self) -> List[QueueHistoryEntry]:
        return list(self._failed)

    async def add_job(
        self,
        job_id: str,
        run_ai_analysis: bool = True,
        priority: int = 0,
        delay_ms: int = 0
    ) -> str:
        if self._closed:
            record_enqueue("unavailable")
            raise QueueUnavailableError("Job queue is closed", job_id=job_id)

        existing = self._tracked.get(job_id)
        if existing is not None:
            record_enqueue("duplicate")
            logger.info("queue_duplicate_enqueue", job_id=job_id, queue_job_id=existing.queue_job_id)
            return existing.queue_job_id

        record = QueueJobRecord(
            job_id=job_id,
            run_ai_analysis=run_ai_analysis,
            attempt_number=1,
            max_attempts=self.max_attempts,
            queue_job_id=queue_job_id_for(job_id),
            priority=priority,
        )
        self._tracked[job_id] = record
        self._schedule(record, delay_ms)
        record_enqueue("queued")
        logger.info("job_enqueued", job_id=job_id, queue_job_id=record.queue_job_id, priority=priority)
        return record.queue_job_id

    def _schedule(self, record: QueueJobRecord, delay_ms: int):
        if delay_ms > 0:
            loop = asyncio.get_running_loop()
            self._timers[record.job_id] = loop.call_later(delay_ms / 1000, self._push, record)
        else:
            self._push(record)

    def _push(self, record: QueueJobRecord):
        self._timers.pop(record.job_id, None)
        if self._closed:
            return
        heapq.heappush(self._heap, (record.priority, next(self._seq), record))
        self._wakeup.set()

    async def get(self) -> Optional[QueueJobRecord]:
        """Wait for the next record. Returns None once the queue is closed."""
        while True:
            if self._closed:
                return None
            if self._heap:
                _, _, record = heapq.heappop(self._heap)
                self._processing[record.job_id] = record
                return record
            self._wakeup.clear()
            await self._wakeup.wait()

    def complete(self, record: QueueJobRecord, result: Any = None):
        self._processing.pop(record.job_id, None)
        self._tracked.pop(record.job_id, None)
        self._completed.append(QueueHistoryEntry(record=record, result=result))

    def fail(self, record: QueueJobRecord, error: Optional[BaseException] = None):
        self._processing.pop(record.job_id, None)
        self._tracked.pop(record.job_id, None)
        self._failed.append(QueueHistoryEntry(record=record, error=str(error) if error else None))

    def retry(self, record: QueueJobRecord, delay_ms: int) -> QueueJobRecord:
        """Reschedule a record for its next attempt."""
        self._processing.pop(record.job_id, None)
        next_record = replace(record, attempt_number=record.attempt_number + 1)
        self._tracked[record.job_id] = next_record
        self._schedule(next_record, delay_ms)
        return next_record

    async def get_pending_count(self) -> int:
        return len(self._heap) + len(self._timers)

    async def get_processing_count(self) -> int:
        return len(self._processing)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._wakeup.set()
        logger.info("queue_closed", dropped=len(self._heap))


# =============================================================================
# Celery Queue
# =============================================================================

class CeleryJobQueue(JobQueue):
    """
    Hands jobs to the Celery image task.

    A Redis SET NX key per job id suppresses duplicate enqueues until the
    worker releases it on a terminal outcome (or the key expires).
    """

    DEDUP_KEY_PREFIX = "imagepipe:dedup:"

    def __init__(
        self,
        celery_app,
        redis_client,
        queue_name: str,
        dedup_ttl_seconds: int = 3600
    ):
        self._celery = celery_app
        self._redis = redis_client
        self.queue_name = queue_name
        self.dedup_ttl_seconds = dedup_ttl_seconds

    def _dedup_key(self, job_id: str) -> str:
        return f"{self.DEDUP_KEY_PREFIX}{job_id}"

    async def add_job(
        self,
        job_id: str,
        run_ai_analysis: bool = True,
        priority: int = 0,
        delay_ms: int = 0
    ) -> str:
        queue_job_id = queue_job_id_for(job_id)
        key = self._dedup_key(job_id)

        try:
            created = await self._redis.set(key, queue_job_id, nx=True, ex=self.dedup_ttl_seconds)
            if not created:
                record_enqueue("duplicate")
                logger.info("queue_duplicate_enqueue", job_id=job_id, queue_job_id=queue_job_id)
                return queue_job_id

            try:
                await asyncio.to_thread(
                    self._celery.send_task,
                    PROCESS_TASK_NAME,
                    kwargs={"job_id": job_id, "run_ai_analysis": run_ai_analysis},
                    task_id=queue_job_id,
                    countdown=delay_ms / 1000 if delay_ms else None,
                    priority=priority,
                    queue=self.queue_name,
                )
            except Exception:
                await self._redis.delete(key)
                raise

        except (RedisError, OperationalError, OSError) as e:
            record_enqueue("unavailable")
            raise QueueUnavailableError(
                f"Queue backend unavailable: {e}",
                job_id=job_id,
                details={"error_type": type(e).__name__}
            ) from e

        record_enqueue("queued")
        logger.info("job_enqueued", job_id=job_id, queue_job_id=queue_job_id, priority=priority)
        return queue_job_id

    async def get_pending_count(self) -> int:
        return int(await self._redis.llen(self.queue_name))

    async def get_processing_count(self) -> int:
        def _count_active() -> int:
            active = self._celery.control.inspect(timeout=1.0).active() or {}
            return sum(
                1 for tasks in active.values() for task in tasks
                if task.get("name") == PROCESS_TASK_NAME
            )
        return await asyncio.to_thread(_count_active)

    async def release(self, job_id: str):
        await self._redis.delete(self._dedup_key(job_id))

    async def close(self):
        await self._redis.aclose()
