"""
Pipeline Context - Composition Root

Builds the dependency graph once per process and hands it down
explicitly. The API lifespan, the Celery worker process and the
standalone worker each own exactly one PipelineContext.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from imagepipe.core.audit import AuditSink, LoggingAuditSink
from imagepipe.core.config import Settings
from imagepipe.core.logging import get_logger
from imagepipe.core.queue import JobQueue, InMemoryJobQueue
from imagepipe.core.storage import IStorage, LocalStorage
from imagepipe.engines.analysis.services import AIAnalysisService, GeminiAnalysisService
from imagepipe.engines.transform.processor import ImageProcessor
from imagepipe.modules.imagery.repositories import (
    ImageJobRepository,
    InMemoryImageJobRepository,
    SQLImageJobRepository,
)
from imagepipe.modules.imagery.services import ImageJobQueryService
from imagepipe.pipeline.intake import UploadAndEnqueue
from imagepipe.pipeline.orchestrator import ProcessImagePipeline

logger = get_logger(__name__)


@dataclass
class PipelineContext:
    settings: Settings
    repository: ImageJobRepository
    storage: IStorage
    processor: ImageProcessor
    queue: JobQueue
    audit: AuditSink
    analysis: Optional[AIAnalysisService] = None
    engine: Optional[AsyncEngine] = None
    pipeline: ProcessImagePipeline = field(init=False)
    intake: UploadAndEnqueue = field(init=False)
    queries: ImageJobQueryService = field(init=False)

    def __post_init__(self):
        self.pipeline = ProcessImagePipeline(
            repository=self.repository,
            storage=self.storage,
            processor=self.processor,
            analysis=self.analysis,
            audit=self.audit,
            max_attempts=self.settings.QUEUE_MAX_ATTEMPTS,
            recompress_quality=self.settings.RECOMPRESS_QUALITY,
        )
        self.intake = UploadAndEnqueue(
            repository=self.repository,
            storage=self.storage,
            queue=self.queue,
            allowed_mime_types=self.settings.ALLOWED_MIME_TYPES,
            max_file_size=self.settings.MAX_UPLOAD_SIZE_BYTES,
            audit=self.audit,
        )
        self.queries = ImageJobQueryService(self.repository)

    async def close(self):
        """Release queue, provider and database connections."""
        await self.queue.close()
        if self.analysis is not None:
            await self.analysis.close()
        await self.repository.close()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("pipeline_context_closed")


async def build_repository(settings: Settings):
    """Returns (repository, engine). Engine is None for the memory backend."""
    if settings.REPOSITORY_BACKEND == "memory":
        return InMemoryImageJobRepository(), None

    from imagepipe.core.database import create_engine, create_session_maker, create_db_and_tables

    if settings.DATABASE_URL.startswith("sqlite") and "./data/" in settings.DATABASE_URL:
        Path("./data").mkdir(parents=True, exist_ok=True)

    engine = create_engine(settings.DATABASE_URL)
    await create_db_and_tables(engine)
    return SQLImageJobRepository(create_session_maker(engine)), engine


def build_queue(settings: Settings) -> JobQueue:
    if settings.QUEUE_BACKEND == "memory":
        return InMemoryJobQueue(
            max_attempts=settings.QUEUE_MAX_ATTEMPTS,
            keep_completed=settings.QUEUE_KEEP_COMPLETED,
            keep_failed=settings.QUEUE_KEEP_FAILED,
        )

    import redis.asyncio as redis
    from imagepipe.core.celery_app import celery_app
    from imagepipe.core.queue import CeleryJobQueue

    return CeleryJobQueue(
        celery_app=celery_app,
        redis_client=redis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True),
        queue_name=settings.QUEUE_NAME,
        dedup_ttl_seconds=settings.QUEUE_DEDUP_TTL_SECONDS,
    )


def build_analysis(settings: Settings) -> Optional[AIAnalysisService]:
    if not settings.GEMINI_API_KEY:
        logger.info("ai_analysis_disabled", reason="GEMINI_API_KEY not set")
        return None
    return GeminiAnalysisService(
        api_key=settings.GEMINI_API_KEY,
        model=settings.GEMINI_MODEL,
        api_url=settings.GEMINI_API_URL,
        timeout=settings.GEMINI_TIMEOUT_SECONDS,
        max_output_tokens=settings.GEMINI_MAX_OUTPUT_TOKENS,
        temperature=settings.GEMINI_TEMPERATURE,
        top_p=settings.GEMINI_TOP_P,
        top_k=settings.GEMINI_TOP_K,
    )


async def build_context(settings: Settings) -> PipelineContext:
    repository, engine = await build_repository(settings)
    context = PipelineContext(
        settings=settings,
        repository=repository,
        storage=LocalStorage(settings.LOCAL_STORAGE_PATH, settings.STORAGE_PUBLIC_BASE_URL),
        processor=ImageProcessor(),
        queue=build_queue(settings),
        audit=LoggingAuditSink(),
        analysis=build_analysis(settings),
        engine=engine,
    )
    logger.info(
        "pipeline_context_built",
        repository_backend=settings.REPOSITORY_BACKEND,
        queue_backend=settings.QUEUE_BACKEND,
        ai_analysis=context.analysis is not None,
    )
    return context
