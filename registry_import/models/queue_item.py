"""Queue entry driving the background shareholder import worker."""
from sqlalchemy import JSON, BigInteger, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from registry_import.database import Base

QUEUE_PENDING = "pending"
QUEUE_PROCESSING = "processing"
QUEUE_COMPLETED = "completed"
QUEUE_FAILED = "failed"


class ShareholderImportQueueItem(Base):
    """Durable unit of work for one ImportJob.

    Besides the submission data (location and column mapping) the row carries
    the resume checkpoint written after every promoted batch, so a parked job
    continues where the previous invocation stopped.
    """

    __tablename__ = "shareholder_import_queue"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("import_jobs.id"), nullable=False, unique=True)
    user_id = Column(String(64), nullable=False, index=True)
    bucket = Column(String(255), nullable=False)
    path = Column(String(1024), nullable=False)
    mapping = Column(JSON, nullable=False, default=dict)
    status = Column(
        String(50), nullable=False, default=QUEUE_PENDING, index=True
    )  # pending, processing, completed, failed
    error_message = Column(Text, nullable=True)

    # Resume checkpoint
    resume_byte_offset = Column(BigInteger, default=0, nullable=False)
    resume_row_skip = Column(Integer, default=0, nullable=False)
    source_columns = Column(JSON, nullable=True)
    source_delimiter = Column(String(1), nullable=True)

    # Invocation currently working on the item; stale once claimed_at stops moving
    claim_token = Column(String(32), nullable=True)
    claimed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )
    processed_at = Column(DateTime, nullable=True)
