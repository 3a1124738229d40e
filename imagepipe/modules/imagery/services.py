"""
Image Job Query Service

Read side used by the HTTP layer: single job, paginated listing, stats.
"""

from typing import List, Optional, Tuple

from imagepipe.core.exceptions import JobNotFoundError
from imagepipe.modules.imagery.models import ImageJob, ProcessingStatus
from imagepipe.modules.imagery.repositories import ImageJobRepository
from imagepipe.modules.imagery.schemas import JobStats

MAX_PAGE_SIZE = 100


class ImageJobQueryService:
    def __init__(self, repository: ImageJobRepository):
        self.repository = repository

    async def get_job(self, job_id: str) -> ImageJob:
        job = await self.repository.find_by_id(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(
        self,
        status: Optional[ProcessingStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[ImageJob], int]:
        """Newest first. Returns (jobs on this page, total matching)."""
        page = max(page, 1)
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        offset = (page - 1) * page_size

        if status is None:
            jobs = await self.repository.find_all(limit=page_size, offset=offset)
        else:
            jobs = await self.repository.find_by_status(status, limit=page_size, offset=offset)
        total = await self.repository.count(status)
        return jobs, total

    async def search_by_file_name(self, file_name: str) -> List[ImageJob]:
        return await self.repository.find_by_file_name(file_name)

    async def get_stats(self) -> JobStats:
        return await self.repository.get_stats()
