"""Celery application configuration."""
from celery import Celery

from registry_import.config import get_settings

settings = get_settings()

celery_app = Celery(
    "shareholder_importer",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["registry_import.tasks.import_tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # one invocation at a time: staging is single-writer per user
    worker_concurrency=1,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "process-shareholder-import-queue": {
            "task": "registry_import.tasks.import_tasks.process_shareholder_import_queue",
            "schedule": settings.queue_poll_interval_seconds,
        },
    },
)
