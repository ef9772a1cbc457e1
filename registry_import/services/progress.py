"""Publish import progress to Redis pub/sub for live status views."""
import json
import logging
from typing import Optional

import redis

from registry_import.config import get_settings

logger = logging.getLogger(__name__)


def progress_channel(job_id: int) -> str:
    return f"shareholder-import:{job_id}"


def publish_progress(
    job_id: int, processed: int, total: int, status: str, error: Optional[str] = None
) -> None:
    """
    Publish progress for one job.

    Args:
        job_id: Import job ID
        processed: Rows accepted into the permanent store so far
        total: Rows read from the source so far
        status: processing, partial, completed or failed
        error: Error message (for failed status)
    """
    try:
        redis_client = redis.Redis.from_url(get_settings().redis_url, decode_responses=True)
        message = {
            "job_id": job_id,
            "status": status,
            "processed": processed,
            "total": total,
        }
        if error:
            message["error"] = error
        redis_client.publish(progress_channel(job_id), json.dumps(message))
    except redis.RedisError as e:
        # Progress is advisory; the import itself must not fail on it
        logger.warning(f"⚠️ Failed to publish progress for job {job_id}: {e}")
