"""Queue processor: drives one shareholder import job per invocation.

State machine for the queue item and its job:

    pending -> processing -> completed           (source exhausted)
    pending -> processing -> failed / error      (any fatal error)
    processing -> processing                     (time budget ran out, resumes later)

An invocation first claims its queue item with a conditional update, so two
triggers firing at once never work on the same item. The claim and the
staging lease are refreshed with every promoted batch; an invocation that has
been silent longer than the claim timeout is presumed dead and its item can be
claimed again.

Every promoted batch commits the job's counters and the resume checkpoint in
the same transaction as the promotion itself.
"""
import enum
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterator, List, Optional, Tuple

import httpx
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from registry_import.config import Settings, get_settings
from registry_import.database import utcnow
from registry_import.exceptions import StagingConflictError, UnsupportedFormatError
from registry_import.models.import_job import JOB_COMPLETED, JOB_ERROR, JOB_PROCESSING, ImportJob
from registry_import.models.queue_item import (
    QUEUE_COMPLETED,
    QUEUE_FAILED,
    QUEUE_PENDING,
    QUEUE_PROCESSING,
    ShareholderImportQueueItem,
)
from registry_import.schemas.imports import ImportRunResult
from registry_import.services.column_mapper import CanonicalRecord, ColumnMapper, ResolvedMapping
from registry_import.services.decoders import (
    Checkpoint,
    DelimitedTextDecoder,
    RawRow,
    RowBatch,
    SpreadsheetDecoder,
)
from registry_import.services.governor import BudgetSignal, ResourceGovernor
from registry_import.services.progress import publish_progress
from registry_import.services.staging import BatchPromoter, StagingSession, StagingWriter
from registry_import.services.storage import ChunkedDownloader, SupabaseStorage

logger = logging.getLogger(__name__)

DELIMITED_EXTENSIONS = ("csv", "txt", "tsv")
SPREADSHEET_EXTENSIONS = ("xlsx", "xlsm", "xls")
LEGACY_SPREADSHEET_EXTENSIONS = ("xls",)
MAX_LOGGED_FIELD_ERRORS = 5
CLAIM_CANDIDATES = 10


class RunOutcome(str, enum.Enum):
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"


@dataclass
class _Progress:
    outcome: RunOutcome = RunOutcome.COMPLETED
    accepted: int = 0


def _extension(path: str) -> str:
    return path.rsplit(".", 1)[-1].lower() if "." in path else ""


def source_format(path: str) -> str:
    extension = _extension(path)
    if extension in DELIMITED_EXTENSIONS:
        return "delimited"
    if extension in SPREADSHEET_EXTENSIONS:
        return "spreadsheet"
    raise UnsupportedFormatError(f"Unsupported file type '.{extension}' for {path}")


class ImportQueueProcessor:
    """Process the next shareholder import queue item within one time budget."""

    def __init__(
        self,
        db: Session,
        downloader: ChunkedDownloader,
        governor: ResourceGovernor,
        mapper: Optional[ColumnMapper] = None,
        writer: Optional[StagingWriter] = None,
        promoter: Optional[BatchPromoter] = None,
        batch_size: int = 200,
        default_year: Optional[int] = None,
        on_progress: Callable[..., None] = publish_progress,
        claim_timeout_seconds: float = 120.0,
    ):
        self.db = db
        self.downloader = downloader
        self.governor = governor
        self.mapper = mapper or ColumnMapper()
        self.writer = writer or StagingWriter()
        self.promoter = promoter or BatchPromoter()
        self.batch_size = batch_size
        self.default_year = default_year or datetime.now().year
        self.on_progress = on_progress
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self.claim_token = uuid.uuid4().hex

    def next_queue_item(self) -> Optional[ShareholderImportQueueItem]:
        """
        Claim the next item: parked ones first so a user's staging area is
        never contended, then pending ones, oldest first.

        Returns None when every waiting item is claimed by a live invocation.
        """
        Item = ShareholderImportQueueItem
        for status in (QUEUE_PROCESSING, QUEUE_PENDING):
            claimable = or_(Item.claim_token.is_(None), Item.claimed_at < utcnow() - self.claim_timeout)
            candidates = self.db.scalars(
                select(Item.id)
                .where(Item.status == status, claimable)
                .order_by(Item.created_at, Item.id)
                .limit(CLAIM_CANDIDATES)
            ).all()
            for item_id in candidates:
                # the WHERE clause is re-checked under the row lock, so only one claimant wins
                result = self.db.execute(
                    update(Item)
                    .where(Item.id == item_id, Item.status == status, claimable)
                    .values(claim_token=self.claim_token, claimed_at=utcnow())
                )
                self.db.commit()
                if result.rowcount == 1:
                    logger.info(f"🎫 Claimed queue item {item_id}")
                    return self.db.get(Item, item_id)
        return None

    def _release_claim(self, item: ShareholderImportQueueItem) -> None:
        self.db.execute(
            update(ShareholderImportQueueItem)
            .where(
                ShareholderImportQueueItem.id == item.id,
                ShareholderImportQueueItem.claim_token == self.claim_token,
            )
            .values(claim_token=None)
        )
        self.db.commit()

    def run(self) -> ImportRunResult:
        logger.info("🔍 Checking for pending shareholder import jobs...")
        item = self.next_queue_item()
        if item is None:
            logger.info("📭 No pending or processing jobs in queue")
            return ImportRunResult(success=True, message="No pending or processing jobs in queue")

        job = self.db.get(ImportJob, item.job_id)
        if job is None:
            raise ValueError(f"Job {item.job_id} not found for queue item {item.id}")

        logger.info(f"🚀 Processing queue item {item.id} for job {job.id} (user {item.user_id})")
        try:
            staging = StagingSession.open(
                self.db, job.id, item.user_id, self.claim_token, self.claim_timeout
            )
        except StagingConflictError as e:
            logger.warning(f"⏳ Job {job.id} waits for the staging area: {e}")
            self._release_claim(item)
            return ImportRunResult(success=True, message=str(e))

        try:
            self._mark_processing(item, job)
            progress = self._process(item, job, staging)
        except StagingConflictError as e:
            # lease taken over by a newer invocation; batches committed so far stand
            self.db.rollback()
            logger.warning(f"⚠️ Job {job.id} lost its staging lease: {e}")
            self._release_claim(item)
            return ImportRunResult(success=True, message=str(e), partial=True)
        except Exception as e:
            logger.error(f"💥 Import job {job.id} failed: {e}", exc_info=True)
            self._mark_failed(item, job, staging, e)
            return ImportRunResult(success=False, message=str(e))

        if progress.outcome is RunOutcome.INTERRUPTED:
            self._mark_parked(item, staging)
            message = (
                f"Partial import completed ({progress.accepted} rows this run, "
                f"{job.processed_rows} total), will continue automatically"
            )
            logger.info(f"⏰ Job {job.id} paused due to time budget - will resume later")
            self.on_progress(job.id, job.processed_rows, job.total_rows, "partial")
            return ImportRunResult(success=True, message=message, partial=True, processed=progress.accepted)

        self._mark_completed(item, job, staging)
        message = f"Successfully processed {job.processed_rows} rows"
        logger.info(f"🎉 Job {job.id} completed: {message}")
        return ImportRunResult(success=True, message=message, partial=False, processed=progress.accepted)

    def _mark_processing(self, item: ShareholderImportQueueItem, job: ImportJob) -> None:
        item.status = QUEUE_PROCESSING
        item.processed_at = utcnow()
        job.status = JOB_PROCESSING
        self.db.commit()
        logger.info(f"📊 Job {job.id} marked as processing")

    def _mark_parked(self, item: ShareholderImportQueueItem, staging: StagingSession) -> None:
        item.claim_token = None
        self.db.commit()
        staging.park()

    def _mark_completed(self, item, job, staging: StagingSession) -> None:
        now = utcnow()
        item.status = QUEUE_COMPLETED
        item.processed_at = now
        item.claim_token = None
        job.status = JOB_COMPLETED
        job.completed_at = now
        self.db.commit()
        staging.release()
        self.on_progress(job.id, job.processed_rows, job.total_rows, "completed")

    def _mark_failed(self, item, job, staging: StagingSession, error: Exception) -> None:
        self.db.rollback()
        now = utcnow()
        item.status = QUEUE_FAILED
        item.error_message = str(error)
        item.processed_at = now
        item.claim_token = None
        job.status = JOB_ERROR
        job.error_message = str(error)
        job.completed_at = now
        self.db.commit()
        staging.release()
        logger.info(f"📊 Job {job.id} marked as error")
        self.on_progress(job.id, job.processed_rows, job.total_rows, "failed", str(error))

    def _open_source(
        self,
        item: ShareholderImportQueueItem,
        checkpoint: Checkpoint,
        should_stop: Callable[[], bool],
    ) -> Tuple[object, Iterator[RowBatch]]:
        fmt = source_format(item.path)
        if fmt == "spreadsheet":
            decoder = SpreadsheetDecoder(
                batch_size=self.batch_size,
                legacy=_extension(item.path) in LEGACY_SPREADSHEET_EXTENSIONS,
            )
            self.governor.check_memory()
            content = self.downloader.download_all(item.bucket, item.path)
            self.governor.check_memory()
            return decoder, decoder.batches(content, checkpoint)

        decoder = DelimitedTextDecoder(
            batch_size=self.batch_size,
            columns=item.source_columns,
            delimiter=item.source_delimiter,
        )
        segments = self.downloader.segments(
            item.bucket, item.path, checkpoint.byte_offset, should_stop=should_stop
        )
        return decoder, decoder.batches(segments, checkpoint)

    def _process(self, item: ShareholderImportQueueItem, job: ImportJob, staging: StagingSession) -> _Progress:
        self.governor.start()
        checkpoint = Checkpoint(item.resume_byte_offset or 0, item.resume_row_skip or 0)
        fresh = checkpoint == Checkpoint()
        if not fresh:
            logger.info(f"↩️ Resuming job {job.id} at byte {checkpoint.byte_offset}, skipping {checkpoint.row_skip} rows")

        progress = _Progress()

        def out_of_budget() -> bool:
            # windows that complete no batch still count against the budget
            if self.governor.check() is BudgetSignal.INTERRUPTED:
                progress.outcome = RunOutcome.INTERRUPTED
            return progress.outcome is RunOutcome.INTERRUPTED

        decoder, batches = self._open_source(item, checkpoint, out_of_budget)
        resolved: Optional[ResolvedMapping] = None

        try:
            for batch in batches:
                if out_of_budget():
                    return progress

                rows = batch.rows
                if resolved is None:
                    resolved, rows = self._bind_source(item, decoder, fresh, rows)

                progress.accepted += self._stage_and_promote(
                    item, job, staging, resolved, rows, batch.checkpoint
                )
                self.governor.check_memory()
                self.governor.relax()
        finally:
            batches.close()

        if progress.outcome is RunOutcome.INTERRUPTED:
            return progress

        if resolved is None and decoder.columns:
            # Header-only file: the "header" may be the single data row.
            resolved, rows = self._bind_source(item, decoder, fresh, [])
            if rows:
                end = Checkpoint(item.resume_byte_offset or 0, item.resume_row_skip or 0)
                progress.accepted += self._stage_and_promote(item, job, staging, resolved, rows, end)

        return progress

    def _bind_source(self, item, decoder, fresh: bool, rows: List[RawRow]) -> Tuple[ResolvedMapping, List[RawRow]]:
        columns = list(decoder.columns or ())
        resolved = self.mapper.resolve(columns, item.mapping or {})
        item.source_columns = columns
        item.source_delimiter = decoder.delimiter
        if resolved.positional and fresh:
            # The mistaken header row is the file's first data row.
            header_row = RawRow(values=tuple(columns), columns=tuple(columns), line_number=1)
            rows = [header_row] + list(rows)
        return resolved, rows

    def _stage_and_promote(
        self,
        item: ShareholderImportQueueItem,
        job: ImportJob,
        staging: StagingSession,
        resolved: ResolvedMapping,
        rows: List[RawRow],
        checkpoint: Checkpoint,
    ) -> int:
        staging.touch()
        records = self._map_rows(rows, resolved, item, job)
        accepted = 0
        if records:
            self.writer.write(staging, records)
            accepted = self.promoter.promote(staging, len(records)).processed_count

        job.processed_rows += accepted
        job.total_rows += len(records)
        item.resume_byte_offset = checkpoint.byte_offset
        item.resume_row_skip = checkpoint.row_skip
        item.claimed_at = utcnow()
        self.db.commit()

        logger.info(f"📊 Job {job.id} progress: {job.processed_rows} promoted, {job.total_rows} read")
        self.on_progress(job.id, job.processed_rows, job.total_rows, "processing")
        return accepted

    def _map_rows(self, rows, resolved, item, job) -> List[CanonicalRecord]:
        records = []
        field_errors = 0
        for row in rows:
            mapped = self.mapper.map(row, resolved, item.user_id, job.id, self.default_year)
            for error in mapped.errors:
                field_errors += 1
                if field_errors <= MAX_LOGGED_FIELD_ERRORS:
                    logger.warning(
                        f"⚠️ Line {row.line_number}: {error.field}={error.value!r} {error.reason}, using default"
                    )
            records.append(mapped.record)
        if field_errors > MAX_LOGGED_FIELD_ERRORS:
            logger.warning(f"⚠️ {field_errors} field conversion failures in batch")
        return records


@contextmanager
def queue_processor(db: Session, settings: Optional[Settings] = None) -> Iterator[ImportQueueProcessor]:
    """Build a processor wired from settings; the HTTP client lives for one invocation."""
    settings = settings or get_settings()
    with httpx.Client(timeout=httpx.Timeout(30.0, connect=10.0)) as http:
        storage = SupabaseStorage(settings.supabase_url, settings.supabase_service_role_key, http)
        downloader = ChunkedDownloader(
            storage,
            window_bytes=settings.download_window_bytes,
            max_attempts=settings.storage_max_attempts,
            initial_delay=settings.storage_retry_initial_delay,
            backoff_multiplier=settings.storage_retry_multiplier,
            signed_url_ttl=settings.signed_url_ttl_seconds,
            settle_seconds=settings.storage_settle_seconds,
            fallback_encoding=settings.source_fallback_encoding,
        )
        governor = ResourceGovernor(
            time_budget_seconds=settings.import_time_budget_seconds,
            memory_ceiling_bytes=settings.import_memory_ceiling_mb * 1024 * 1024,
            pause_seconds=settings.batch_pause_seconds,
        )
        yield ImportQueueProcessor(
            db,
            downloader,
            governor,
            mapper=ColumnMapper(home_country_code=settings.home_country_code),
            writer=StagingWriter(batch_size=settings.staging_batch_size),
            promoter=BatchPromoter(limit=settings.promote_limit),
            batch_size=settings.processing_batch_size,
            claim_timeout_seconds=settings.claim_timeout_seconds,
        )
