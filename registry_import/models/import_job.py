"""Import job model for tracking shareholder-registry import progress."""
from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from registry_import.database import Base

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_ERROR = "error"


class ImportJob(Base):
    """One logical import of a registry file, as seen by the owning user."""

    __tablename__ = "import_jobs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    file_name = Column(String(500), nullable=True)
    bucket = Column(String(255), nullable=False)
    path = Column(String(1024), nullable=False)
    status = Column(
        String(50), nullable=False, default=JOB_PENDING
    )  # pending, processing, completed, error
    total_rows = Column(Integer, default=0, nullable=False)
    processed_rows = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<ImportJob(id={self.id}, status='{self.status}', processed={self.processed_rows})>"
