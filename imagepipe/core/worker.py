"""
Worker Pool

Drains an InMemoryJobQueue with bounded concurrency. Each record runs the
handler once; recoverable domain errors are rescheduled with exponential
backoff until the attempt ceiling, everything else is recorded as failed.

Also runnable as a standalone process:
    python -m imagepipe.core.worker
"""

import asyncio
import signal
import time
from typing import Any, Awaitable, Callable, Optional, Set

from imagepipe.core.exceptions import DomainError
from imagepipe.core.logging import get_logger, LogContext
from imagepipe.core.metrics import queue_retries_total
from imagepipe.core.queue import InMemoryJobQueue, QueueJobRecord, backoff_delay_ms

logger = get_logger(__name__)

JobHandler = Callable[[QueueJobRecord], Awaitable[Any]]


class WorkerPool:
    """Bounded-concurrency consumer with graceful shutdown."""

    def __init__(
        self,
        queue: InMemoryJobQueue,
        handler: JobHandler,
        concurrency: int = 2,
        backoff_base_ms: int = 1000,
        shutdown_timeout: float = 30.0,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.queue = queue
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.backoff_base_ms = backoff_base_ms
        self.shutdown_timeout = shutdown_timeout
        self.on_close = on_close

        self._slots = asyncio.Semaphore(self.concurrency)
        self._running: Set[asyncio.Task] = set()
        self._dispatcher: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()
        self._shutting_down = False

    @property
    def in_flight(self) -> int:
        return len(self._running)

    def start(self):
        if self._dispatcher is None:
            self._dispatcher = asyncio.create_task(self._dispatch())
            logger.info("worker_pool_started", concurrency=self.concurrency)

    async def _dispatch(self):
        while not self._shutting_down:
            await self._slots.acquire()
            record = await self.queue.get()
            if record is None:
                self._slots.release()
                break
            task = asyncio.create_task(self._run(record))
            self._running.add(task)
            task.add_done_callback(self._running.discard)

    async def _run(self, record: QueueJobRecord):
        try:
            with LogContext(job_id=record.job_id, stage="worker", attempt=record.attempt_number):
                try:
                    result = await self.handler(record)
                except DomainError as e:
                    if e.recoverable and record.attempt_number < record.max_attempts:
                        delay_ms = backoff_delay_ms(record.attempt_number, self.backoff_base_ms)
                        queue_retries_total.inc()
                        self.queue.retry(record, delay_ms)
                        logger.warning(
                            "job_retry_scheduled",
                            attempt=record.attempt_number,
                            max_attempts=record.max_attempts,
                            delay_ms=delay_ms,
                            code=e.code
                        )
                    else:
                        self.queue.fail(record, e)
                        logger.error(
                            "job_failed",
                            attempt=record.attempt_number,
                            code=e.code,
                            error=e.message
                        )
                except asyncio.CancelledError:
                    self.queue.fail(record, None)
                    raise
                except Exception as e:
                    self.queue.fail(record, e)
                    logger.exception("worker_unexpected_error", error=str(e))
                    # A handler bug is not a job outcome; stop taking work
                    self._shutdown_task = asyncio.get_running_loop().create_task(self.shutdown())
                else:
                    self.queue.complete(record, result)
                    logger.info("job_done", attempt=record.attempt_number)
        finally:
            self._slots.release()

    async def shutdown(self, timeout: Optional[float] = None):
        """
        Stop taking new records, give in-flight ones until the deadline,
        cancel whatever is left, then close the queue.
        """
        if self._shutting_down:
            await self._closed.wait()
            return
        self._shutting_down = True
        timeout = self.shutdown_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        logger.info("worker_pool_shutting_down", in_flight=self.in_flight, timeout=timeout)

        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)

        pending = set(self._running)
        if pending:
            remaining = max(0.0, deadline - time.monotonic())
            _, still_running = await asyncio.wait(pending, timeout=remaining)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
                logger.warning("worker_pool_cancelled_jobs", count=len(still_running))

        await self.queue.close()
        if self.on_close is not None:
            await self.on_close()

        self._closed.set()
        logger.info("worker_pool_stopped")

    async def wait_closed(self):
        await self._closed.wait()


# =============================================================================
# Standalone Runner
# =============================================================================

async def main():
    from imagepipe.context import build_context
    from imagepipe.core.config import settings as app_settings
    from imagepipe.core.logging import setup_logging
    from imagepipe.pipeline.tasks import handle_queue_job, enqueue_orphaned_jobs

    # This process is its own consumer; never hand jobs to Celery
    settings = app_settings.model_copy(update={"QUEUE_BACKEND": "memory"})
    setup_logging(log_level=settings.LOG_LEVEL, json_format=settings.LOG_FORMAT_JSON)
    context = await build_context(settings)

    async def handler(record: QueueJobRecord):
        return await handle_queue_job(context, record)

    pool = WorkerPool(
        queue=context.queue,
        handler=handler,
        concurrency=settings.WORKER_CONCURRENCY,
        backoff_base_ms=settings.QUEUE_BACKOFF_BASE_MS,
        shutdown_timeout=settings.WORKER_SHUTDOWN_TIMEOUT_SECONDS,
        on_close=context.close,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(pool.shutdown()))

    pool.start()
    await enqueue_orphaned_jobs(context, include_processing=True)

    async def sweep_periodically():
        while True:
            await asyncio.sleep(settings.SWEEP_INTERVAL_SECONDS)
            await enqueue_orphaned_jobs(context)

    sweeper = None
    if settings.SWEEP_INTERVAL_SECONDS > 0:
        sweeper = asyncio.create_task(sweep_periodically())

    await pool.wait_closed()
    if sweeper is not None:
        sweeper.cancel()


if __name__ == "__main__":
    asyncio.run(main())
