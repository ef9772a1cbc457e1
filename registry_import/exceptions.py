"""Fatal error types raised by the shareholder import pipeline.

Every error in this module aborts the current invocation and, except for
``StagingConflictError``, marks the job failed. Running out of time budget is
not an error and has no type here; see
``registry_import.services.governor.BudgetSignal``.
"""
from typing import Optional


class ShareholderImportError(Exception):
    """Base class for fatal import errors."""


class SignedUrlError(ShareholderImportError):
    """Signed URL could not be created after all retry attempts."""

    def __init__(self, bucket: str, path: str, attempts: int, reason: str):
        self.bucket = bucket
        self.path = path
        self.attempts = attempts
        super().__init__(
            f"Failed to create signed URL for {bucket}/{path} after {attempts} attempts: {reason}"
        )


class DownloadError(ShareholderImportError):
    """Object could not be read from storage."""


class UnsupportedFormatError(ShareholderImportError):
    """Source file type has no decoder."""


class MemoryCeilingExceeded(ShareholderImportError):
    """Process memory crossed the configured ceiling."""

    def __init__(self, used_bytes: int, ceiling_bytes: int):
        self.used_bytes = used_bytes
        self.ceiling_bytes = ceiling_bytes
        used_mb = round(used_bytes / 1024 / 1024)
        ceiling_mb = round(ceiling_bytes / 1024 / 1024)
        super().__init__(
            f"Memory usage too high ({used_mb}MB > {ceiling_mb}MB), aborting import"
        )


class StagingWriteError(ShareholderImportError):
    """Insert into the staging area failed."""


class PromotionError(ShareholderImportError):
    """Promoting staged rows into the permanent store failed."""


class StagingConflictError(ShareholderImportError):
    """Another invocation owns the user's staging area; the job is left for later."""

    def __init__(self, user_id: str, owner_job_id: Optional[int], job_id: int):
        self.user_id = user_id
        self.owner_job_id = owner_job_id
        self.job_id = job_id
        super().__init__(
            f"Staging area for user {user_id} is held by job {owner_job_id}; "
            f"job {job_id} cannot write to it"
        )
