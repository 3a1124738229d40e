"""
API v1 Router Module

All v1 endpoints are prefixed with /api/v1/

- POST /api/v1/upload - Accept an image and enqueue it
- GET  /api/v1/jobs/* - Job status, listing and stats
- GET  /api/v1/metrics - Prometheus metrics
"""

from fastapi import APIRouter

from imagepipe.api.v1.upload import router as upload_router
from imagepipe.api.v1.jobs import router as jobs_router
from imagepipe.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(upload_router, prefix="/upload", tags=["upload"])
api_v1_router.include_router(jobs_router, prefix="/jobs", tags=["jobs"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
