"""Celery tasks for shareholder-registry import processing."""
import logging

from registry_import.config import get_settings
from registry_import.database import SessionLocal
from registry_import.services.import_queue import queue_processor
from registry_import.tasks.celery_app import celery_app

settings = get_settings()
logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    soft_time_limit=settings.import_time_budget_seconds * 2,
    time_limit=settings.import_time_budget_seconds * 3,
)
def process_shareholder_import_queue(self) -> dict:
    """
    Run one queue-processing invocation.

    A partial result means the job was parked by the time budget; the task
    re-enqueues itself so the job continues without waiting for the next beat.

    Args:
        self: Celery task instance

    Returns:
        Dict with the invocation result
    """
    logger.info("🚀 Starting shareholder import queue task")
    db = SessionLocal()
    try:
        with queue_processor(db, settings) as processor:
            result = processor.run()
    finally:
        db.close()

    if result.partial:
        logger.info(f"🔁 Job parked, re-enqueueing in {settings.resume_delay_seconds}s")
        self.apply_async(countdown=settings.resume_delay_seconds)

    logger.info(f"✅ Queue task finished: {result.message}")
    return result.model_dump(exclude_none=True)
