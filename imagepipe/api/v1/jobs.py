"""
Jobs Endpoint - Job Status Tracking

GET /api/v1/jobs            - Paginated listing with aggregate stats
GET /api/v1/jobs/stats      - Aggregate stats only
GET /api/v1/jobs/{job_id}   - Single job with its generated versions
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from imagepipe.api.dependencies import get_query_service
from imagepipe.modules.imagery.models import ProcessingStatus
from imagepipe.modules.imagery.schemas import JobListResponseDTO, JobResponseDTO, JobStats
from imagepipe.modules.imagery.services import ImageJobQueryService, MAX_PAGE_SIZE

router = APIRouter()


@router.get("", response_model=JobListResponseDTO)
async def list_jobs(
    status: Optional[ProcessingStatus] = Query(None),
    file_name: Optional[str] = Query(None, min_length=1, max_length=255),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    queries: ImageJobQueryService = Depends(get_query_service)
):
    """List jobs newest first, optionally filtered by status or file name."""
    if file_name:
        matching = await queries.search_by_file_name(file_name)
        if status is not None:
            matching = [j for j in matching if j.processing_status is status]
        total = len(matching)
        offset = (page - 1) * page_size
        jobs = matching[offset:offset + page_size]
    else:
        jobs, total = await queries.list_jobs(status=status, page=page, page_size=page_size)

    return JobListResponseDTO(
        jobs=[JobResponseDTO(**job.to_response_dict()) for job in jobs],
        total=total,
        page=page,
        page_size=page_size,
        stats=await queries.get_stats(),
    )


@router.get("/stats", response_model=JobStats)
async def get_job_stats(queries: ImageJobQueryService = Depends(get_query_service)):
    return await queries.get_stats()


@router.get("/{job_id}", response_model=JobResponseDTO)
async def get_job(job_id: str, queries: ImageJobQueryService = Depends(get_query_service)):
    """Current status of one job. 404 when the id is unknown."""
    job = await queries.get_job(job_id)
    return JobResponseDTO(**job.to_response_dict())
