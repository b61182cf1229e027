from celery import Celery

from navigator.core.config import settings

celery_app = Celery(
    "md_navigator",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
)

# Celery Beat schedule. Queue passes are idempotent: rows are claimed with
# SKIP LOCKED, so overlapping runs never transmit a return twice.
celery_app.conf.beat_schedule = {
    "process-federal-efile-queue": {
        "task": "process_federal_queue",
        "schedule": settings.federal_poll_interval_seconds,
    },
    "process-maryland-efile-queue": {
        "task": "process_maryland_queue",
        "schedule": settings.maryland_poll_interval_seconds,
    },
    "poll-federal-acknowledgments": {
        "task": "process_federal_acknowledgments",
        "schedule": 300.0,
    },
    "refresh-efile-queue-health": {
        "task": "refresh_queue_health",
        "schedule": 300.0,
    },
}

celery_app.conf.include = ["navigator.tasks.efile_tasks"]
