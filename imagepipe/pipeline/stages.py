"""
Pipeline Stage Implementations

Each stage is a separate function that can be called independently.
Blocking Pillow work runs in worker threads so the event loop keeps
serving other jobs.
"""

import asyncio
import hashlib
from datetime import datetime
from typing import Optional

from pydantic import ValidationError

from imagepipe.core.exceptions import DomainError, VersionGenerationError
from imagepipe.core.logging import get_logger, with_logging
from imagepipe.core.metrics import (
    track_stage_latency,
    record_version_generated,
    version_recompressions_total,
)
from imagepipe.core.storage import IStorage
from imagepipe.engines.analysis.schemas import AIAnalysisResult, AnalysisContext
from imagepipe.engines.analysis.services import AIAnalysisService
from imagepipe.engines.transform.processor import ImageProcessor
from imagepipe.engines.transform.schemas import ExtractRegion, ImageInfo
from imagepipe.modules.imagery.models import ImageJob, ImageVersion
from imagepipe.modules.imagery.schemas import BrandContext, ProductContext
from imagepipe.pipeline.presets import VersionPreset

logger = get_logger(__name__)


# =============================================================================
# Stage 1: Load Source
# =============================================================================

@with_logging("load_source")
async def load_source(storage: IStorage, processor: ImageProcessor, job: ImageJob):
    """
    Read the original upload and its metadata.

    Returns:
        Tuple of (source_bytes, image_info)
    """
    with track_stage_latency("load_source"):
        source = await storage.read(job.original_file_path)
        info: ImageInfo = await asyncio.to_thread(processor.get_info, source)

    logger.info(
        "source_loaded",
        size=info.size,
        width=info.width,
        height=info.height,
        format=info.format
    )
    return source, info


# =============================================================================
# Stage 2: AI Analysis
# =============================================================================

def analysis_context_for(job: ImageJob) -> AnalysisContext:
    return AnalysisContext(
        brand=BrandContext.model_validate(job.brand_context) if job.brand_context else None,
        product=ProductContext.model_validate(job.product_context) if job.product_context else None,
    )


@with_logging("analysis")
async def run_analysis(
    analysis: AIAnalysisService,
    source: bytes,
    job: ImageJob
) -> AIAnalysisResult:
    with track_stage_latency("analysis"):
        return await analysis.analyze(source, analysis_context_for(job))


# =============================================================================
# Stage 3: Version Generation
# =============================================================================

def background_hint(job: ImageJob) -> Optional[str]:
    """Brand background, when it is a usable hex color."""
    background = (job.brand_context or {}).get("background")
    if background and background.startswith("#"):
        return background
    return None


@with_logging("generate_version")
async def generate_version(
    processor: ImageProcessor,
    storage: IStorage,
    job: ImageJob,
    source: bytes,
    preset: VersionPreset,
    extract_region: Optional[ExtractRegion] = None,
    recompress_quality: int = 70
) -> ImageVersion:
    """
    Transform, size-check, hash and store one version.

    A buffer above the preset size limit is re-encoded once at
    `recompress_quality`.
    """
    with track_stage_latency(f"version_{preset.version_type.value.lower()}"):
        options = preset.to_options(extract_region, background_hint(job))
        output = await asyncio.to_thread(processor.process, source, options)

        quality = preset.quality
        if len(output) > preset.max_file_size_bytes:
            logger.info(
                "version_recompressing",
                version_type=preset.version_type.value,
                size=len(output),
                max_size=preset.max_file_size_bytes
            )
            output = await asyncio.to_thread(processor.compress, output, preset.format, recompress_quality)
            quality = recompress_quality
            version_recompressions_total.labels(version_type=preset.version_type.value).inc()

        info = await asyncio.to_thread(processor.get_info, output)
        file_name = preset.file_name(job.id)
        stored = await storage.write(f"jobs/{job.id}/{file_name}", output, preset.format.mime_type)

    try:
        version = ImageVersion(
            version_type=preset.version_type,
            width=info.width,
            height=info.height,
            file_size=len(output),
            format=preset.format,
            quality=quality,
            file_name=file_name,
            file_path=stored.path,
            url=stored.url,
            content_hash=hashlib.sha256(output).hexdigest(),
            created_at=datetime.utcnow(),
        )
    except ValidationError as e:
        raise VersionGenerationError(
            f"Generated {preset.version_type.value} version is invalid: {e}",
            details={"version_type": preset.version_type.value}
        ) from e

    record_version_generated(preset.version_type.value, preset.format.value)
    logger.info(
        "version_generated",
        version_type=preset.version_type.value,
        width=version.width,
        height=version.height,
        file_size=version.file_size
    )
    return version


async def generate_versions(
    processor: ImageProcessor,
    storage: IStorage,
    job: ImageJob,
    source: bytes,
    presets,
    extract_region: Optional[ExtractRegion] = None,
    recompress_quality: int = 70
):
    """
    Generate every preset concurrently and wait for all of them.

    When several versions fail, a non-recoverable error wins over
    recoverable ones so the job is failed rather than retried.
    """
    results = await asyncio.gather(
        *[
            generate_version(processor, storage, job, source, preset, extract_region, recompress_quality)
            for preset in presets
        ],
        return_exceptions=True
    )

    errors = []
    for result in results:
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, DomainError):
            errors.append(result)
        elif isinstance(result, Exception):
            wrapped = VersionGenerationError(
                f"Version generation failed: {result}",
                details={"error_type": type(result).__name__}
            )
            wrapped.__cause__ = result
            errors.append(wrapped)

    if errors:
        fatal = [e for e in errors if not e.recoverable]
        raise (fatal or errors)[0]

    return list(results)
