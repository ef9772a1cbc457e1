"""Staging area writes and atomic promotion into ``shareholdings``."""
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Sequence

from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from registry_import.database import utcnow
from registry_import.exceptions import PromotionError, StagingConflictError, StagingWriteError
from registry_import.models.import_job import JOB_COMPLETED, JOB_ERROR, ImportJob
from registry_import.models.shareholding import Shareholding
from registry_import.models.staging import StagingLease, StagingRow
from registry_import.services.column_mapper import CanonicalRecord

logger = logging.getLogger(__name__)

DEFAULT_SHARE_CLASS = "Ordinære aksjer"
UNKNOWN_HOLDER = "Ukjent eier"
DEFAULT_LEASE_TIMEOUT = timedelta(seconds=120)


@dataclass(frozen=True)
class PromoteResult:
    processed_count: int
    rejected_count: int


def clear_staging(db: Session, user_id: str) -> int:
    """Delete every staged row for ``user_id``. Returns the number removed."""
    result = db.execute(delete(StagingRow).where(StagingRow.user_id == user_id))
    return result.rowcount or 0


def normalize_orgnr(value: Optional[str]) -> Optional[str]:
    """Digits only; 8-digit numbers lost their leading zero in a spreadsheet."""
    digits = re.sub(r"\D", "", value or "")
    if len(digits) == 8:
        digits = "0" + digits
    return digits if len(digits) == 9 else None


def _to_shareholding(row: StagingRow) -> Optional[Shareholding]:
    orgnr = normalize_orgnr(row.orgnr)
    if orgnr is None:
        logger.warning(f"⚠️ Rejecting staged row {row.id}: invalid orgnr {row.orgnr!r}")
        return None
    if not row.selskap and not row.navn_aksjonaer:
        logger.warning(f"⚠️ Rejecting staged row {row.id}: no company or holder name for {orgnr}")
        return None
    if row.antall_aksjer is None or row.antall_aksjer < 0:
        logger.warning(f"⚠️ Rejecting staged row {row.id}: invalid share count {row.antall_aksjer}")
        return None

    return Shareholding(
        user_id=row.user_id,
        job_id=row.job_id,
        year=row.year,
        orgnr=orgnr,
        company_name=row.selskap or f"Ukjent selskap ({orgnr})",
        share_class=row.aksjeklasse or DEFAULT_SHARE_CLASS,
        holder_name=row.navn_aksjonaer or UNKNOWN_HOLDER,
        holder_birth_year_or_orgnr=row.fodselsaar_orgnr,
        country_code=row.landkode,
        shares=row.antall_aksjer,
    )


def promote_batch(
    db: Session, job_id: int, user_id: str, offset: int = 0, limit: int = 1000
) -> PromoteResult:
    """
    Move staged rows for (job, user) into the permanent store.

    Rows failing validation are rejected and not counted. The user's staging
    area is emptied afterwards whatever the outcome per row. Nothing is
    committed here; the caller commits promotion together with its progress
    counters.

    Args:
        db: Database session
        job_id: Owning import job
        user_id: Owning user
        offset: Staged rows to skip, in insertion order
        limit: Maximum staged rows to consider

    Returns:
        PromoteResult with accepted and rejected counts
    """
    staged = db.scalars(
        select(StagingRow)
        .where(StagingRow.job_id == job_id, StagingRow.user_id == user_id)
        .order_by(StagingRow.id)
        .offset(offset)
        .limit(limit)
    ).all()

    holdings = []
    for row in staged:
        holding = _to_shareholding(row)
        if holding is not None:
            holdings.append(holding)

    db.add_all(holdings)
    clear_staging(db, user_id)
    db.flush()
    return PromoteResult(processed_count=len(holdings), rejected_count=len(staged) - len(holdings))


class StagingSession:
    """
    Exclusive use of one user's staging area by one invocation of one job.

    Staging is keyed by user, so two writers for the same user would promote
    or wipe each other's rows. Opening a session takes the user's lease row
    and wipes any residue left by an earlier crash. The lease carries the
    invocation's claim token and a heartbeat; a parked job keeps the lease
    without a token so only its own next invocation can take it back.
    """

    def __init__(self, db: Session, job_id: int, user_id: str, claim_token: str):
        self.db = db
        self.job_id = job_id
        self.user_id = user_id
        self.claim_token = claim_token

    @classmethod
    def open(
        cls,
        db: Session,
        job_id: int,
        user_id: str,
        claim_token: str,
        stale_after: timedelta = DEFAULT_LEASE_TIMEOUT,
    ) -> "StagingSession":
        now = utcnow()
        lease = db.get(StagingLease, user_id)
        if lease is not None and (lease.job_id != job_id or lease.claim_token != claim_token):
            live = (
                lease.claim_token is not None
                and lease.heartbeat_at is not None
                and lease.heartbeat_at > now - stale_after
            )
            if lease.job_id != job_id:
                owner = db.get(ImportJob, lease.job_id)
                if owner is not None and owner.status not in (JOB_COMPLETED, JOB_ERROR):
                    raise StagingConflictError(user_id, lease.job_id, job_id)
            elif live:
                # same job, but another invocation is still writing
                raise StagingConflictError(user_id, lease.job_id, job_id)
            if lease.claim_token is not None:
                logger.warning(f"⚠️ Taking over stale staging lease of job {lease.job_id} for user {user_id}")
        if lease is None:
            lease = StagingLease(user_id=user_id, job_id=job_id)
            db.add(lease)
        lease.job_id = job_id
        lease.claim_token = claim_token
        lease.heartbeat_at = now

        removed = clear_staging(db, user_id)
        db.commit()
        if removed:
            logger.info(f"🗑️ Cleared {removed} residual staging rows for user {user_id}")
        logger.info(f"🔒 Staging lease held by job {job_id} for user {user_id}")
        return cls(db, job_id, user_id, claim_token)

    def _own_lease(self):
        return and_(StagingLease.user_id == self.user_id, StagingLease.claim_token == self.claim_token)

    def touch(self) -> None:
        """Refresh the heartbeat; fails if another invocation took the lease over."""
        result = self.db.execute(update(StagingLease).where(self._own_lease()).values(heartbeat_at=utcnow()))
        if result.rowcount != 1:
            self.db.rollback()
            lease = self.db.get(StagingLease, self.user_id)
            raise StagingConflictError(self.user_id, lease.job_id if lease else None, self.job_id)

    def park(self) -> None:
        """Keep the lease for this job but let its next invocation take it."""
        self.db.execute(update(StagingLease).where(self._own_lease()).values(claim_token=None))
        self.db.commit()
        logger.info(f"⏸️ Staging lease parked for job {self.job_id}")

    def release(self) -> None:
        clear_staging(self.db, self.user_id)
        self.db.execute(delete(StagingLease).where(self._own_lease()))
        self.db.commit()
        logger.info(f"🔓 Staging lease released by job {self.job_id}")


class StagingWriter:
    """Insert mapped records into staging in fixed-size sub-batches."""

    def __init__(self, batch_size: int = 100):
        self.batch_size = batch_size

    def write(self, staging: StagingSession, records: Sequence[CanonicalRecord]) -> int:
        written = 0
        for i in range(0, len(records), self.batch_size):
            chunk: List[dict] = []
            for record in records[i : i + self.batch_size]:
                values = record.as_staging_values()
                values["job_id"] = staging.job_id
                chunk.append(values)
            batch_number = i // self.batch_size + 1
            try:
                staging.db.execute(insert(StagingRow), chunk)
                staging.db.commit()
            except SQLAlchemyError as e:
                staging.db.rollback()
                logger.error(f"❌ Staging insert error for batch {batch_number}: {e}")
                raise StagingWriteError(
                    f"Failed to insert batch {batch_number} to staging: {e}"
                ) from e
            written += len(chunk)
            logger.debug(f"📥 Staged batch {batch_number}: {len(chunk)} rows")
        return written


class BatchPromoter:
    """Promote whatever is staged for the session's job and user."""

    def __init__(self, limit: int = 1000):
        self.limit = limit

    def promote(self, staging: StagingSession, staged_count: int = 0) -> PromoteResult:
        # promotion clears the whole staging area, so the limit must cover it
        limit = max(self.limit, staged_count)
        try:
            result = promote_batch(staging.db, staging.job_id, staging.user_id, 0, limit)
        except SQLAlchemyError as e:
            staging.db.rollback()
            logger.error(f"❌ Promotion failed for job {staging.job_id}: {e}")
            raise PromotionError(f"Failed to promote batch: {e}") from e
        logger.info(
            f"✅ Promoted {result.processed_count} rows "
            f"({result.rejected_count} rejected) for job {staging.job_id}"
        )
        return result
