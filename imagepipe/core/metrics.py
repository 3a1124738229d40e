"""
Prometheus Metrics for Observability

Tracks pipeline stage latency, job outcomes, version output and queue health.
Exposes /api/v1/metrics for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_stage_latency_seconds = Histogram(
    "pipeline_stage_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

# Total Pipeline Duration
pipeline_total_duration = Histogram(
    "pipeline_total_duration_seconds",
    "Total time for one job execution",
    labelnames=["outcome"],
    buckets=[0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# Jobs Counter
jobs_total = Counter(
    "image_jobs_total",
    "Total number of image jobs finished or skipped by the pipeline",
    labelnames=["outcome", "reason"]
)

# Active Jobs
active_jobs_gauge = Gauge(
    "image_active_jobs",
    "Number of currently processing jobs"
)

# Generated versions
versions_generated_total = Counter(
    "image_versions_generated_total",
    "Total number of image versions written to storage",
    labelnames=["version_type", "format"]
)

version_recompressions_total = Counter(
    "image_version_recompressions_total",
    "Versions re-encoded because they exceeded their size limit",
    labelnames=["version_type"]
)

# AI Analysis Calls
ai_analysis_calls_total = Counter(
    "ai_analysis_calls_total",
    "Total number of AI analysis provider calls",
    labelnames=["operation", "status"]
)

# Queue
queue_enqueue_total = Counter(
    "queue_enqueue_total",
    "Enqueue attempts by result",
    labelnames=["result"]  # queued, duplicate, unavailable
)

queue_retries_total = Counter(
    "queue_retries_total",
    "Job executions rescheduled after a recoverable error"
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "image_pipeline_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_stage_latency(stage: str):
    """
    Observe the duration of a pipeline stage.

    The status label is success, retryable (recoverable domain error) or
    error.

        with track_stage_latency("analysis"):
            ...
    """
    start = time.perf_counter()
    status = "success"
    try:
        yield
    except Exception as e:
        status = "retryable" if getattr(e, "recoverable", False) else "error"
        raise
    finally:
        pipeline_stage_latency_seconds.labels(stage=stage, status=status).observe(
            time.perf_counter() - start
        )


def record_job_started():
    active_jobs_gauge.inc()


def record_job_finished(outcome: str, duration_seconds: float, reason: str = "none"):
    """Record a job leaving the PROCESSING state for this execution."""
    active_jobs_gauge.dec()
    jobs_total.labels(outcome=outcome, reason=reason).inc()
    pipeline_total_duration.labels(outcome=outcome).observe(duration_seconds)


def record_job_skipped(reason: str):
    jobs_total.labels(outcome="skipped", reason=reason).inc()


def record_version_generated(version_type: str, fmt: str):
    versions_generated_total.labels(version_type=version_type, format=fmt).inc()


def record_ai_call(operation: str, status: str):
    ai_analysis_calls_total.labels(operation=operation, status=status).inc()


def record_enqueue(result: str):
    queue_enqueue_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
