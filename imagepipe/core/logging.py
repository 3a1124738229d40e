"""
Structured Logging

structlog on top of stdlib logging: JSON lines in production, colored
console output in development. Entries emitted while a job is handled
carry its job_id, the current pipeline stage and the queue attempt.
"""

import asyncio
import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from functools import wraps
from typing import Any, Dict, Iterator, Optional

import structlog

APP_VERSION = "1.0.0"

# Job-scoped context, set by LogContext / set_job_context
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)
attempt_var: ContextVar[Optional[int]] = ContextVar("attempt", default=None)

_JOB_CONTEXT = {
    "job_id": job_id_var,
    "stage": stage_var,
    "attempt": attempt_var,
}

# Chatty at INFO on every request, decode or connection
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "PIL", "aiosqlite", "multipart")


def add_job_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Stamp the app version and the job context. Explicit fields win."""
    event_dict["version"] = APP_VERSION
    for key, var in _JOB_CONTEXT.items():
        value = var.get()
        if value is not None:
            event_dict.setdefault(key, value)
    return event_dict


def setup_logging(log_level: str = "INFO", json_format: bool = True):
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_format: JSON lines if True, colored console output otherwise
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        add_job_context,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_format:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class LogContext:
    """
    Scope job context to a block. Only the values given are set; the
    previous values come back on exit.

        with LogContext(job_id=job.id, stage="upload"):
            logger.info("upload_accepted")
    """

    def __init__(
        self,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        attempt: Optional[int] = None
    ):
        self._values = {"job_id": job_id, "stage": stage, "attempt": attempt}
        self._tokens = []

    def __enter__(self):
        for key, value in self._values.items():
            if value is not None:
                var = _JOB_CONTEXT[key]
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)
        return False


def set_job_context(job_id: str, stage: Optional[str] = None, attempt: Optional[int] = None):
    """Set job context for the rest of the current task (Celery workers)."""
    job_id_var.set(job_id)
    stage_var.set(stage)
    attempt_var.set(attempt)


def clear_job_context():
    for var in _JOB_CONTEXT.values():
        var.set(None)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


@contextmanager
def _stage_scope(stage: str, logger) -> Iterator[None]:
    token = stage_var.set(stage)
    started = time.perf_counter()
    logger.info("stage_started", stage=stage)
    try:
        yield
    except Exception as e:
        logger.error(
            "stage_failed",
            stage=stage,
            duration_ms=_elapsed_ms(started),
            error=str(e),
            error_type=type(e).__name__,
            code=getattr(e, "code", None)
        )
        raise
    else:
        logger.info("stage_completed", stage=stage, duration_ms=_elapsed_ms(started))
    finally:
        stage_var.reset(token)


def with_logging(stage: str):
    """
    Run a pipeline stage helper under `stage`, logging
    stage_started / stage_completed / stage_failed with duration_ms.
    Works on both coroutine and plain functions.
    """
    def decorator(func):
        logger = get_logger(func.__module__)

        if asyncio.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                with _stage_scope(stage, logger):
                    return await func(*args, **kwargs)
            return async_wrapper

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            with _stage_scope(stage, logger):
                return func(*args, **kwargs)
        return sync_wrapper

    return decorator


# A JSON entry from inside a worker run:
# {"event": "version_generated", "version_type": "PDP", "width": 1200,
#  "height": 1200, "timestamp": "2025-03-02T10:00:00.412Z", "version": "1.0.0",
#  "job_id": "550e8400-...", "stage": "generate_version", "attempt": 1,
#  "logger": "imagepipe.pipeline.stages", "level": "info"}
