"""
Celery Application

One queue for image jobs, with Redis priorities 0-9 (0 runs first).
Tasks are acknowledged late and prefetched one at a time, so a job held
by a worker that dies is redelivered rather than lost; the pipeline's
status check turns such a redelivery into a skip when the job already
finished.
"""

from celery import Celery
from kombu import Queue

from imagepipe.core.config import Settings, settings
from imagepipe.core.queue import SWEEP_TASK_NAME

# Unacked deliveries come back after this long; must exceed the hard time
# limit plus the longest retry countdown
VISIBILITY_TIMEOUT_SECONDS = 3600


def create_celery_app(config: Settings) -> Celery:
    app = Celery(
        "image_pipeline",
        broker=config.broker_url,
        backend=config.result_backend,
        include=["imagepipe.pipeline.tasks"],
    )

    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,

        task_track_started=True,
        task_time_limit=600,
        task_soft_time_limit=540,
        result_expires=86400,

        worker_prefetch_multiplier=1,
        worker_concurrency=config.WORKER_CONCURRENCY,
        worker_soft_shutdown_timeout=config.WORKER_SHUTDOWN_TIMEOUT_SECONDS,

        task_queues=(Queue(config.QUEUE_NAME, routing_key=config.QUEUE_NAME),),
        task_default_queue=config.QUEUE_NAME,
        task_routes={"imagepipe.pipeline.tasks.*": {"queue": config.QUEUE_NAME}},
        broker_transport_options={
            "priority_steps": list(range(10)),
            "queue_order_strategy": "priority",
            "visibility_timeout": VISIBILITY_TIMEOUT_SECONDS,
        },

        task_acks_late=True,
        task_reject_on_worker_lost=True,
    )

    if config.SWEEP_INTERVAL_SECONDS > 0:
        app.conf.beat_schedule = {
            "sweep-orphaned-jobs": {
                "task": SWEEP_TASK_NAME,
                "schedule": config.SWEEP_INTERVAL_SECONDS,
            },
        }

    return app


celery_app = create_celery_app(settings)
