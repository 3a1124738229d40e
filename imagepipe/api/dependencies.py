"""
FastAPI Dependencies

Everything is resolved from the PipelineContext built in the app lifespan.
"""

from fastapi import Depends, Request

from imagepipe.context import PipelineContext
from imagepipe.modules.imagery.services import ImageJobQueryService
from imagepipe.pipeline.intake import UploadAndEnqueue


def get_context(request: Request) -> PipelineContext:
    """Returns the process-wide pipeline context."""
    return request.app.state.context


def get_query_service(context: PipelineContext = Depends(get_context)) -> ImageJobQueryService:
    return context.queries


def get_upload_use_case(context: PipelineContext = Depends(get_context)) -> UploadAndEnqueue:
    return context.intake
