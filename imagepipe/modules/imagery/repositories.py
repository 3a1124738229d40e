"""
Image Job Repositories

ImageJobRepository is the persistence contract the pipeline depends on.
Two implementations, picked once at startup:
- InMemoryImageJobRepository: dict keyed by job id (tests, single process)
- SQLImageJobRepository: SQLModel/SQLAlchemy async (SQLite or PostgreSQL)

The repository is the single source of truth for job status. Writes are
last-writer-wins.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Iterable

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker
from sqlmodel import select, col

from imagepipe.core.exceptions import JobNotFoundError
from imagepipe.core.logging import get_logger
from imagepipe.modules.imagery.models import ImageJob, ProcessingStatus
from imagepipe.modules.imagery.schemas import JobStats

logger = get_logger(__name__)


def build_stats(counts: Dict[str, int], durations_ms: Iterable[int]) -> JobStats:
    """Assemble JobStats from per-status counts and completed-job durations."""
    durations = list(durations_ms)
    average = round(sum(durations) / len(durations)) if durations else 0
    queued = counts.get(ProcessingStatus.QUEUED.value, 0)

    return JobStats(
        total_jobs=sum(counts.values()),
        pending_jobs=counts.get(ProcessingStatus.PENDING.value, 0) + queued,
        queued_jobs=queued,
        processing_jobs=counts.get(ProcessingStatus.PROCESSING.value, 0),
        completed_jobs=counts.get(ProcessingStatus.COMPLETED.value, 0),
        failed_jobs=counts.get(ProcessingStatus.FAILED.value, 0),
        cancelled_jobs=counts.get(ProcessingStatus.CANCELLED.value, 0),
        average_processing_time_ms=average,
    )


def _apply_status_update(
    job: ImageJob,
    status: ProcessingStatus,
    error_message: Optional[str],
    error_code: Optional[str]
):
    if status is ProcessingStatus.FAILED:
        job.mark_failed(error_message or "Processing failed", error_code)
    else:
        job.transition_to(status)


class ImageJobRepository(ABC):
    """Persistence contract for ImageJob aggregates."""

    @abstractmethod
    async def save(self, job: ImageJob) -> ImageJob:
        pass

    @abstractmethod
    async def find_by_id(self, job_id: str) -> Optional[ImageJob]:
        pass

    @abstractmethod
    async def find_all(self, limit: Optional[int] = None, offset: int = 0) -> List[ImageJob]:
        """All jobs, newest first."""
        pass

    @abstractmethod
    async def delete(self, job_id: str) -> bool:
        pass

    @abstractmethod
    async def exists(self, job_id: str) -> bool:
        pass

    @abstractmethod
    async def find_by_status(
        self,
        status: ProcessingStatus,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[ImageJob]:
        pass

    @abstractmethod
    async def count(self, status: Optional[ProcessingStatus] = None) -> int:
        pass

    @abstractmethod
    async def find_by_file_name(self, file_name: str) -> List[ImageJob]:
        """Case-insensitive substring match on the original file name."""
        pass

    @abstractmethod
    async def update_status(
        self,
        job_id: str,
        status: ProcessingStatus,
        error_message: Optional[str] = None,
        error_code: Optional[str] = None
    ) -> ImageJob:
        """
        Transition a job and persist it.

        Raises:
            JobNotFoundError: no job with this id
            InvalidStatusTransitionError: the state machine forbids the move
        """
        pass

    @abstractmethod
    async def get_stats(self) -> JobStats:
        pass

    async def find_pending(self) -> List[ImageJob]:
        return await self.find_by_status(ProcessingStatus.PENDING)

    async def close(self):
        pass


# =============================================================================
# In-Memory Repository
# =============================================================================

class InMemoryImageJobRepository(ImageJobRepository):
    """
    Dict-backed repository.

    Stores snapshots, never live objects, so callers cannot mutate stored
    state without going through save().
    """

    def __init__(self):
        self._jobs: Dict[str, dict] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _snapshot(job: ImageJob) -> dict:
        return copy.deepcopy(job.model_dump())

    @staticmethod
    def _restore(data: dict) -> ImageJob:
        return ImageJob(**copy.deepcopy(data))

    def _sorted(self, jobs: Iterable[dict]) -> List[dict]:
        return sorted(jobs, key=lambda d: d["created_at"], reverse=True)

    @staticmethod
    def _page(items: List[dict], limit: Optional[int], offset: int) -> List[dict]:
        end = None if limit is None else offset + limit
        return items[offset:end]

    async def save(self, job: ImageJob) -> ImageJob:
        async with self._lock:
            self._jobs[job.id] = self._snapshot(job)
        return job

    async def find_by_id(self, job_id: str) -> Optional[ImageJob]:
        data = self._jobs.get(job_id)
        return self._restore(data) if data is not None else None

    async def find_all(self, limit: Optional[int] = None, offset: int = 0) -> List[ImageJob]:
        items = self._page(self._sorted(self._jobs.values()), limit, offset)
        return [self._restore(d) for d in items]

    async def delete(self, job_id: str) -> bool:
        async with self._lock:
            return self._jobs.pop(job_id, None) is not None

    async def exists(self, job_id: str) -> bool:
        return job_id in self._jobs

    async def find_by_status(
        self,
        status: ProcessingStatus,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[ImageJob]:
        status = ProcessingStatus(status)
        matching = [d for d in self._jobs.values() if d["status"] == status.value]
        items = self._page(self._sorted(matching), limit, offset)
        return [self._restore(d) for d in items]

    async def count(self, status: Optional[ProcessingStatus] = None) -> int:
        if status is None:
            return len(self._jobs)
        status = ProcessingStatus(status)
        return sum(1 for d in self._jobs.values() if d["status"] == status.value)

    async def find_by_file_name(self, file_name: str) -> List[ImageJob]:
        needle = file_name.lower()
        matching = [
            d for d in self._jobs.values()
            if needle in d["original_file_name"].lower()
        ]
        return [self._restore(d) for d in self._sorted(matching)]

    async def update_status(
        self,
        job_id: str,
        status: ProcessingStatus,
        error_message: Optional[str] = None,
        error_code: Optional[str] = None
    ) -> ImageJob:
        async with self._lock:
            data = self._jobs.get(job_id)
            if data is None:
                raise JobNotFoundError(job_id)
            job = self._restore(data)
            _apply_status_update(job, ProcessingStatus(status), error_message, error_code)
            self._jobs[job_id] = self._snapshot(job)
        return job

    async def get_stats(self) -> JobStats:
        counts: Dict[str, int] = {}
        durations = []
        for data in self._jobs.values():
            counts[data["status"]] = counts.get(data["status"], 0) + 1
            started = data.get("processing_started_at")
            ended = data.get("processing_ended_at")
            if data["status"] == ProcessingStatus.COMPLETED.value and started and ended:
                durations.append((ended - started).total_seconds() * 1000)
        return build_stats(counts, durations)


# =============================================================================
# SQL Repository
# =============================================================================

class SQLImageJobRepository(ImageJobRepository):
    """Relational repository on an async SQLAlchemy session factory."""

    def __init__(self, session_maker: sessionmaker):
        self._session_maker = session_maker

    async def save(self, job: ImageJob) -> ImageJob:
        async with self._session_maker() as session:
            await session.merge(job)
            await session.commit()
        return job

    async def find_by_id(self, job_id: str) -> Optional[ImageJob]:
        async with self._session_maker() as session:
            return await session.get(ImageJob, job_id)

    async def find_all(self, limit: Optional[int] = None, offset: int = 0) -> List[ImageJob]:
        statement = select(ImageJob).order_by(col(ImageJob.created_at).desc()).offset(offset)
        if limit is not None:
            statement = statement.limit(limit)
        async with self._session_maker() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def delete(self, job_id: str) -> bool:
        async with self._session_maker() as session:
            job = await session.get(ImageJob, job_id)
            if job is None:
                return False
            await session.delete(job)
            await session.commit()
            return True

    async def exists(self, job_id: str) -> bool:
        statement = select(func.count()).select_from(ImageJob).where(ImageJob.id == job_id)
        async with self._session_maker() as session:
            result = await session.execute(statement)
            return result.scalar_one() > 0

    async def find_by_status(
        self,
        status: ProcessingStatus,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[ImageJob]:
        status = ProcessingStatus(status)
        statement = (
            select(ImageJob)
            .where(ImageJob.status == status.value)
            .order_by(col(ImageJob.created_at).desc())
            .offset(offset)
        )
        if limit is not None:
            statement = statement.limit(limit)
        async with self._session_maker() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def count(self, status: Optional[ProcessingStatus] = None) -> int:
        statement = select(func.count()).select_from(ImageJob)
        if status is not None:
            statement = statement.where(ImageJob.status == ProcessingStatus(status).value)
        async with self._session_maker() as session:
            result = await session.execute(statement)
            return result.scalar_one()

    async def find_by_file_name(self, file_name: str) -> List[ImageJob]:
        statement = (
            select(ImageJob)
            .where(func.lower(ImageJob.original_file_name).contains(file_name.lower(), autoescape=True))
            .order_by(col(ImageJob.created_at).desc())
        )
        async with self._session_maker() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def update_status(
        self,
        job_id: str,
        status: ProcessingStatus,
        error_message: Optional[str] = None,
        error_code: Optional[str] = None
    ) -> ImageJob:
        async with self._session_maker() as session:
            job = await session.get(ImageJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            _apply_status_update(job, ProcessingStatus(status), error_message, error_code)
            session.add(job)
            await session.commit()
            return job

    async def get_stats(self) -> JobStats:
        counts_statement = select(ImageJob.status, func.count()).group_by(ImageJob.status)
        timing_statement = select(
            ImageJob.processing_started_at,
            ImageJob.processing_ended_at
        ).where(
            ImageJob.status == ProcessingStatus.COMPLETED.value,
            col(ImageJob.processing_started_at).is_not(None),
            col(ImageJob.processing_ended_at).is_not(None),
        )

        async with self._session_maker() as session:
            counts_result = await session.execute(counts_statement)
            counts = {status: total for status, total in counts_result.all()}
            timing_result = await session.execute(timing_statement)
            durations = [
                (ended - started).total_seconds() * 1000
                for started, ended in timing_result.all()
            ]

        return build_stats(counts, durations)
