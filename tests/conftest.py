import io
from typing import AsyncGenerator

import pytest
from httpx import AsyncClient, ASGITransport
from PIL import Image

from imagepipe.core.config import Settings
from imagepipe.core.storage import LocalStorage
from imagepipe.engines.transform.processor import ImageProcessor
from imagepipe.engines.transform.schemas import FitMode, OutputFormat
from imagepipe.modules.imagery.models import ImageJob, ProcessingStatus, VersionType
from imagepipe.modules.imagery.repositories import InMemoryImageJobRepository
from imagepipe.pipeline.presets import VersionPreset

ALLOWED_MIME_TYPES = ["image/jpeg", "image/png", "image/webp", "image/tiff"]


def make_image_bytes(width=120, height=80, fmt="PNG", color=(200, 30, 30), mode="RGB") -> bytes:
    if mode == "RGBA" and len(color) == 3:
        color = color + (128,)
    image = Image.new(mode, (width, height), color)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


# Same shape as VERSION_PRESETS, sized so tests encode in milliseconds
SMALL_PRESETS = (
    VersionPreset(VersionType.MASTER_4K, 64, 64, OutputFormat.WEBP, 90, FitMode.CONTAIN, 1024 * 1024),
    VersionPreset(VersionType.GRID, 48, 48, OutputFormat.WEBP, 85, FitMode.COVER, 512 * 1024),
    VersionPreset(VersionType.PDP, 32, 32, OutputFormat.WEBP, 85, FitMode.COVER, 256 * 1024),
    VersionPreset(VersionType.THUMBNAIL, 16, 16, OutputFormat.WEBP, 80, FitMode.COVER, 128 * 1024),
)


@pytest.fixture
def png_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture
def small_presets():
    return SMALL_PRESETS


@pytest.fixture
def processor() -> ImageProcessor:
    return ImageProcessor()


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(str(tmp_path / "storage"), "/static/storage")


@pytest.fixture
def repository() -> InMemoryImageJobRepository:
    return InMemoryImageJobRepository()


@pytest.fixture
def job_factory(repository, storage, png_bytes):
    """Persist a job whose original upload is already in storage."""
    async def _create(
        status: ProcessingStatus = ProcessingStatus.QUEUED,
        source: bytes = None,
        brand_context=None,
        run_ai_analysis: bool = True,
    ) -> ImageJob:
        source = png_bytes if source is None else source
        job = ImageJob.create(
            original_file_name="product.png",
            original_file_size=len(source),
            mime_type="image/png",
            allowed_mime_types=ALLOWED_MIME_TYPES,
            max_file_size=50 * 1024 * 1024,
            run_ai_analysis=run_ai_analysis,
            brand_context=brand_context,
        )
        stored = await storage.write(f"jobs/{job.id}/original.png", source, "image/png")
        job.original_file_path = stored.path
        job.status = status.value
        await repository.save(job)
        return job

    return _create


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        REPOSITORY_BACKEND="memory",
        QUEUE_BACKEND="memory",
        LOCAL_STORAGE_PATH=str(tmp_path / "storage"),
        GEMINI_API_KEY=None,
        QUEUE_BACKOFF_BASE_MS=10,
        WORKER_CONCURRENCY=2,
        WORKER_SHUTDOWN_TIMEOUT_SECONDS=5.0,
        START_EMBEDDED_WORKER=True,
        LOG_LEVEL="WARNING",
        LOG_FORMAT_JSON=False,
    )


@pytest.fixture
async def app(test_settings, small_presets):
    from imagepipe.main import create_app

    application = create_app(test_settings)
    # Trigger lifespan events (startup/shutdown)
    async with application.router.lifespan_context(application):
        application.state.context.pipeline.presets = tuple(small_presets)
        yield application


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
