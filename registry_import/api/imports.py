"""Shareholder import API endpoints."""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from registry_import.database import get_db
from registry_import.exceptions import UnsupportedFormatError
from registry_import.models.import_job import JOB_PENDING, ImportJob
from registry_import.models.queue_item import QUEUE_PENDING, ShareholderImportQueueItem
from registry_import.schemas.imports import (
    ImportJobResponse,
    ImportRunResult,
    ImportSubmitRequest,
    ImportSubmitResponse,
)
from registry_import.services.import_queue import queue_processor, source_format

router = APIRouter(prefix="/api/imports/shareholders", tags=["imports"])

logger = logging.getLogger(__name__)


def get_queue_processor(db: Session = Depends(get_db)):
    """Dependency yielding a processor for one invocation."""
    with queue_processor(db) as processor:
        yield processor


@router.api_route(
    "/process",
    methods=["GET", "POST", "PUT"],
    response_model=ImportRunResult,
    response_model_exclude_none=True,
)
def process_queue(processor=Depends(get_queue_processor)):
    """
    Process the oldest waiting shareholder import.

    No request body is needed. Returns 200 for completion, partial progress
    (``partial: true``, the job resumes on the next call) and for an empty
    queue. A job that fails is reported with ``success: false``.
    """
    logger.info("🎯 Shareholder import queue handler triggered")
    return processor.run()


@router.post("", response_model=ImportSubmitResponse, status_code=201)
def submit_import(request: ImportSubmitRequest, db: Session = Depends(get_db)):
    """
    Queue a registry file that has already been uploaded to object storage.
    """
    try:
        source_format(request.path)
    except UnsupportedFormatError as e:
        raise HTTPException(status_code=400, detail=str(e))

    job = ImportJob(
        user_id=request.user_id,
        file_name=request.file_name or request.path.rsplit("/", 1)[-1],
        bucket=request.bucket,
        path=request.path,
        status=JOB_PENDING,
    )
    db.add(job)
    db.flush()

    item = ShareholderImportQueueItem(
        job_id=job.id,
        user_id=request.user_id,
        bucket=request.bucket,
        path=request.path,
        mapping=request.mapping,
        status=QUEUE_PENDING,
    )
    db.add(item)
    db.commit()
    logger.info(f"💾 Queued import job {job.id} for {request.bucket}/{request.path}")

    return ImportSubmitResponse(job_id=job.id, queue_item_id=item.id, status=item.status)


@router.get("/{job_id}", response_model=ImportJobResponse)
def get_import_status(job_id: int, db: Session = Depends(get_db)):
    """Get import job status and progress counters."""
    job = db.get(ImportJob, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job
