"""
Product Image Pipeline - Main Application

FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Queue handoff to Celery, or an embedded asyncio worker pool
"""

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from imagepipe.api.v1 import api_v1_router
from imagepipe.context import build_context
from imagepipe.core.config import Settings, settings as default_settings
from imagepipe.core.database import ping as ping_database
from imagepipe.core.exceptions import register_exception_handlers
from imagepipe.core.logging import setup_logging, get_logger
from imagepipe.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from imagepipe.core.worker import WorkerPool
from imagepipe.pipeline.tasks import handle_queue_job, enqueue_orphaned_jobs

logger = get_logger(__name__)


async def start_embedded_worker(context, settings: Settings) -> Optional[WorkerPool]:
    """
    With the in-memory queue the API process is also the worker: start a
    WorkerPool on the shared context and hand it any jobs the previous process
    left waiting or interrupted.
    """
    if settings.QUEUE_BACKEND != "memory" or not settings.START_EMBEDDED_WORKER:
        return None

    async def handler(record):
        return await handle_queue_job(context, record)

    pool = WorkerPool(
        queue=context.queue,
        handler=handler,
        concurrency=settings.WORKER_CONCURRENCY,
        backoff_base_ms=settings.QUEUE_BACKOFF_BASE_MS,
        shutdown_timeout=settings.WORKER_SHUTDOWN_TIMEOUT_SECONDS,
    )
    pool.start()
    await enqueue_orphaned_jobs(context, include_processing=True)
    return pool


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or default_settings

    setup_logging(
        log_level=settings.LOG_LEVEL,
        json_format=settings.LOG_FORMAT_JSON
    )

    # =========================================================================
    # Lifespan Handler
    # =========================================================================
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        started = time.perf_counter()
        logger.info(
            "application_starting",
            environment=settings.ENVIRONMENT,
            repository_backend=settings.REPOSITORY_BACKEND,
            queue_backend=settings.QUEUE_BACKEND
        )

        context = await build_context(settings)
        app.state.context = context
        set_app_info(version=settings.APP_VERSION, environment=settings.ENVIRONMENT)
        pool = app.state.worker_pool = await start_embedded_worker(context, settings)

        logger.info(
            "application_ready",
            embedded_worker=pool is not None,
            startup_ms=int((time.perf_counter() - started) * 1000)
        )

        yield

        # Drain the worker before the context it uses goes away
        logger.info("application_shutting_down")
        if pool is not None:
            await pool.shutdown()
        await context.close()
        logger.info("application_shutdown_complete")

    # =========================================================================
    # Create FastAPI Application
    # =========================================================================
    app = FastAPI(
        title=settings.APP_NAME,
        description="""
        Product image pipeline:

        - **Upload**: validated, stored and enqueued; returns 202 with a job id
        - **AI Analysis**: optional smart-crop suggestion and quality score
        - **Versions**: MASTER_4K, GRID, PDP and THUMBNAIL renditions in WebP
        - **Observability**: Structured logging, Prometheus metrics

        All endpoints are versioned under `/api/v1/`
        """,
        version=settings.APP_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )

    # =========================================================================
    # Middleware
    # =========================================================================
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS.split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def record_request_metrics(request: Request, call_next):
        """Per-route request count and latency, labelled by route template."""
        started = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - started

        # Route template keeps job ids out of the label set
        route = request.scope.get("route")
        endpoint = route.path if route is not None else request.url.path

        http_request_duration_seconds.labels(method=request.method, endpoint=endpoint).observe(duration)
        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code
        ).inc()

        response.headers["X-Process-Time"] = f"{duration:.4f}"
        return response

    register_exception_handlers(app)
    app.include_router(api_v1_router)

    # Generated versions are served from local storage
    if settings.STORAGE_PUBLIC_BASE_URL.startswith("/"):
        app.mount(
            settings.STORAGE_PUBLIC_BASE_URL,
            StaticFiles(directory=settings.LOCAL_STORAGE_PATH, check_dir=False),
            name="storage"
        )

    # =========================================================================
    # Root Endpoints
    # =========================================================================
    @app.get("/", tags=["root"])
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "docs": "/api/docs",
            "api_v1": "/api/v1",
            "metrics": "/api/v1/metrics"
        }

    @app.get("/health", tags=["health"])
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": settings.APP_VERSION
        }

    @app.get("/ready", tags=["health"])
    async def ready(request: Request):
        """Ready when the job repository and the queue backend both answer."""
        context = request.app.state.context
        checks = {"database": False, "queue": False}
        queue_pending = None

        try:
            checks["database"] = await ping_database(context.engine)
        except Exception as e:
            logger.warning("readiness_database_failed", error=str(e))

        try:
            queue_pending = await context.queue.get_pending_count()
            checks["queue"] = True
        except Exception as e:
            logger.warning("readiness_queue_failed", error=str(e))

        is_ready = all(checks.values())
        return JSONResponse(
            status_code=200 if is_ready else 503,
            content={
                "ready": is_ready,
                "checks": checks,
                "queue_pending": queue_pending,
                "ai_analysis": context.analysis is not None,
            }
        )

    return app


app = create_app()


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "imagepipe.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
