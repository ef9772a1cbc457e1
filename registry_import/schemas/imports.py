"""Shareholder import request and response schemas."""
from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ImportRunResult(BaseModel):
    """Outcome of one queue-processing invocation."""

    success: bool
    message: str
    partial: Optional[bool] = None
    processed: Optional[int] = None


class ImportSubmitRequest(BaseModel):
    """Request to queue a registry file that is already in object storage."""

    user_id: str = Field(..., min_length=1, max_length=64)
    bucket: str = Field(..., min_length=1, max_length=255)
    path: str = Field(..., min_length=1, max_length=1024)
    file_name: Optional[str] = Field(None, max_length=500)
    mapping: Dict[str, str] = Field(
        default_factory=dict, description="Source column -> canonical field"
    )


class ImportSubmitResponse(BaseModel):
    job_id: int
    queue_item_id: int
    status: str
    message: str = "Import queued"


class ImportJobResponse(BaseModel):
    """Import job status response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    file_name: Optional[str] = None
    bucket: str
    path: str
    status: str
    total_rows: int
    processed_rows: int
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
