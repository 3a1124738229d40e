"""
Upload Endpoint

POST /api/v1/upload - Accept an image and enqueue it for processing.

Returns 202 as soon as the job is persisted and handed to the queue; the
pipeline runs on the worker side.
"""

import json
from typing import Optional

from fastapi import APIRouter, Depends, UploadFile, File, Form
from pydantic import ValidationError

from imagepipe.api.dependencies import get_upload_use_case
from imagepipe.core.exceptions import InvalidImageJobError
from imagepipe.core.logging import get_logger
from imagepipe.modules.imagery.models import ProcessingStatus
from imagepipe.modules.imagery.schemas import BrandContext, ProductContext, UploadResponseDTO
from imagepipe.pipeline.intake import UploadAndEnqueue

logger = get_logger(__name__)
router = APIRouter()


def _parse_context(raw: Optional[str], model, field_name: str):
    """Parse an optional JSON form field into a context model."""
    if not raw:
        return None
    try:
        return model.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as e:
        raise InvalidImageJobError(
            f"Invalid {field_name}: {e}",
            code="INVALID_CONTEXT",
            details={"field": field_name}
        ) from e


@router.post("", response_model=UploadResponseDTO, status_code=202)
async def upload_image(
    file: UploadFile = File(...),
    run_ai_analysis: bool = Form(True),
    brand_context: Optional[str] = Form(None),
    product_context: Optional[str] = Form(None),
    priority: int = Form(0, ge=0, le=9),
    upload: UploadAndEnqueue = Depends(get_upload_use_case)
):
    """
    Submit a product image.

    brand_context and product_context are JSON objects sent as form fields,
    e.g. {"name": "Acme", "vertical": "fashion", "tone": "premium"}.
    """
    brand = _parse_context(brand_context, BrandContext, "brand_context")
    product = _parse_context(product_context, ProductContext, "product_context")

    file_buffer = await file.read()
    mime_type = file.content_type or "application/octet-stream"

    result = await upload.execute(
        file_buffer=file_buffer,
        file_name=file.filename or "",
        mime_type=mime_type,
        file_size=len(file_buffer),
        run_ai_analysis=run_ai_analysis,
        brand_context=brand,
        product_context=product,
        priority=priority,
    )

    message = "Image accepted for processing"
    if result.queue_status == "fallback":
        message = "Image accepted; queue unavailable, processing will resume when it recovers"

    return UploadResponseDTO(
        job_id=result.job_id,
        status=result.status,
        status_label=ProcessingStatus(result.status).label,
        queue_status=result.queue_status,
        queue_job_id=result.queue_job_id,
        message=message,
    )
