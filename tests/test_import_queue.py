"""End-to-end tests for the queue processor against the fake object store."""
import io
from dataclasses import replace
from datetime import timedelta

from openpyxl import Workbook
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from conftest import STANDARD_HEADER, STANDARD_MAPPING, registry_csv, xls_row
from registry_import.database import utcnow
from registry_import.models.import_job import JOB_COMPLETED, JOB_ERROR, JOB_PROCESSING
from registry_import.models.queue_item import (
    QUEUE_COMPLETED,
    QUEUE_FAILED,
    QUEUE_PENDING,
    QUEUE_PROCESSING,
)
from registry_import.models.shareholding import Shareholding
from registry_import.models.staging import StagingLease, StagingRow
from registry_import.services import staging as staging_service
from registry_import.services.governor import ResourceGovernor
from registry_import.services.import_queue import ImportQueueProcessor, source_format
from registry_import.services.staging import StagingWriter

HEADERLESS_ROWS = (
    "385;1979;3965;827053392;UNI MICRO HOLDING ANSATT AS;Ordinære aksjer;MAGRIT JOFRID GILJARHUS;5130 NYBORG;NOR\n"
    "1200;1985;77;912345678;FJORD INVEST AS;Ordinære aksjer;KARI NORDMANN;0150 OSLO;NOR\n"
    "50;923456789;12;934567890;POLAR KRAFT ASA;B-aksjer;KYST HOLDING AS;9008 TROMSØ;SWE\n"
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class Harness:
    """Processor wiring with a controllable clock and recorded progress events."""

    def __init__(
        self, db, object_store, window_bytes=100, memory_probe=lambda: 0, advance_per_batch=0.0, **options
    ):
        self.db = db
        self.clock = FakeClock()
        self.events = []
        self.advance_per_batch = advance_per_batch
        self.processor = ImportQueueProcessor(
            db,
            object_store.downloader(window_bytes=window_bytes),
            ResourceGovernor(
                time_budget_seconds=45,
                clock=self.clock,
                memory_probe=memory_probe,
                pause_seconds=0,
                sleep=lambda seconds: None,
            ),
            batch_size=2,
            default_year=2024,
            on_progress=self.record,
            **options,
        )

    def record(self, job_id, processed, total, status, error=None):
        self.events.append((status, processed, total))
        if status == "processing":
            self.clock.now += self.advance_per_batch

    def run(self):
        return self.processor.run()


def _count(db, model):
    return db.scalar(select(func.count()).select_from(model))


def test_source_format():
    assert source_format("imports/a.CSV") == "delimited"
    assert source_format("imports/a.txt") == "delimited"
    assert source_format("imports/a.xlsx") == "spreadsheet"
    assert source_format("imports/a.XLS") == "spreadsheet"


def test_empty_queue_is_a_no_op(db, object_store):
    result = Harness(db, object_store).run()

    assert result.success is True
    assert result.message == "No pending or processing jobs in queue"
    assert result.partial is None
    assert result.processed is None


def test_full_import_completes(db, object_store, queue_import):
    job, item = queue_import(registry_csv(5))
    harness = Harness(db, object_store)

    result = harness.run()

    assert result.success is True
    assert result.partial is False
    assert result.processed == 5
    db.refresh(job)
    db.refresh(item)
    assert job.status == JOB_COMPLETED
    assert job.processed_rows == 5
    assert job.total_rows == 5
    assert job.completed_at is not None
    assert item.status == QUEUE_COMPLETED
    assert _count(db, Shareholding) == 5
    assert _count(db, StagingRow) == 0
    assert _count(db, StagingLease) == 0
    assert harness.events[-1] == ("completed", 5, 5)


def test_processed_rows_count_only_promoted_rows(db, object_store, queue_import):
    content = (
        STANDARD_HEADER + "\n"
        "912345678;FJORD AS;Ordinære aksjer;KARI NORDMANN;1980;0150 OSLO;NOR;100\n"
        "123;UGYLDIG AS;Ordinære aksjer;OLA NORDMANN;1970;0150 OSLO;NOR;10\n"
        "12345678;NULL AS;Ordinære aksjer;PER HANSEN;1960;0150 OSLO;NOR;5\n"
    )
    job, _ = queue_import(content)

    result = Harness(db, object_store).run()

    assert result.processed == 2
    db.refresh(job)
    assert job.processed_rows == 2
    assert job.total_rows == 3
    orgnrs = sorted(db.scalars(select(Shareholding.orgnr)).all())
    assert orgnrs == ["012345678", "912345678"]


def test_interrupted_import_resumes_without_duplicates(db, object_store, queue_import):
    job, item = queue_import(registry_csv(10))
    # the first window holds the header and two rows, the second five more rows
    first = Harness(db, object_store, window_bytes=300, advance_per_batch=30)

    result = first.run()

    assert result.success is True
    assert result.partial is True
    assert result.processed == 4
    db.refresh(job)
    db.refresh(item)
    assert job.status == JOB_PROCESSING
    assert item.status == QUEUE_PROCESSING
    assert job.processed_rows == 4
    assert item.resume_byte_offset > 0
    assert item.resume_row_skip == 2
    assert item.source_columns == STANDARD_HEADER.split(";")
    assert item.source_delimiter == ";"
    assert _count(db, StagingRow) == 0
    assert first.events[-1][0] == "partial"

    # differently sized windows put segment boundaries elsewhere
    second = Harness(db, object_store, window_bytes=37)
    result = second.run()

    assert result.partial is False
    assert result.processed == 6
    db.refresh(job)
    assert job.status == JOB_COMPLETED
    assert job.processed_rows == 10
    assert job.total_rows == 10
    holders = db.scalars(select(Shareholding.holder_name)).all()
    assert sorted(holders) == sorted(f"HOLDER {i}" for i in range(10))


def test_headerless_file_is_imported_positionally(db, object_store, queue_import):
    job, _ = queue_import(HEADERLESS_ROWS, mapping=dict(STANDARD_MAPPING))

    result = Harness(db, object_store).run()

    assert result.success is True
    db.refresh(job)
    assert job.processed_rows == 3
    first = db.scalars(select(Shareholding).where(Shareholding.orgnr == "827053392")).one()
    assert first.shares == 385
    assert first.company_name == "UNI MICRO HOLDING ANSATT AS"
    assert first.holder_name == "MAGRIT JOFRID GILJARHUS"
    assert first.holder_birth_year_or_orgnr == "1979"
    assert first.country_code == "NOR"
    swedish = db.scalars(select(Shareholding).where(Shareholding.orgnr == "934567890")).one()
    assert swedish.country_code == "SWE"


def test_single_headerless_line_is_imported(db, object_store, queue_import):
    job, _ = queue_import(HEADERLESS_ROWS.splitlines()[0])

    Harness(db, object_store).run()

    db.refresh(job)
    assert job.status == JOB_COMPLETED
    assert job.processed_rows == 1


def test_header_only_file_completes_empty(db, object_store, queue_import):
    job, _ = queue_import(STANDARD_HEADER + "\n")

    result = Harness(db, object_store).run()

    assert result.success is True
    db.refresh(job)
    assert job.status == JOB_COMPLETED
    assert job.processed_rows == 0


def test_signed_url_exhaustion_fails_job(db, object_store, queue_import):
    job, item = queue_import(registry_csv(3))
    object_store.sign_failures = 5
    harness = Harness(db, object_store)

    result = harness.run()

    assert result.success is False
    assert "shareholders/imports/aksjeeierbok.csv" in result.message
    db.refresh(job)
    db.refresh(item)
    assert job.status == JOB_ERROR
    assert item.status == QUEUE_FAILED
    assert "shareholders/imports/aksjeeierbok.csv" in job.error_message
    assert _count(db, StagingLease) == 0
    assert harness.events[-1][0] == "failed"


def test_memory_ceiling_aborts_job(db, object_store, queue_import):
    job, item = queue_import(registry_csv(6))
    readings = []

    def memory_probe():
        readings.append(1)
        return 0 if len(readings) < 3 else 10 * 1024 * 1024 * 1024

    result = Harness(db, object_store, memory_probe=memory_probe).run()

    assert result.success is False
    assert "Memory usage too high" in result.message
    db.refresh(job)
    db.refresh(item)
    assert job.status == JOB_ERROR
    assert item.status == QUEUE_FAILED
    assert len(readings) == 3
    # only the batch before the breaker tripped reached the permanent store
    assert 0 < job.processed_rows < 6
    assert _count(db, Shareholding) == job.processed_rows
    assert _count(db, StagingRow) == 0


def test_spreadsheet_import(db, object_store, queue_import):
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(STANDARD_HEADER.split(";"))
    sheet.append([912345678, "FJORD AS", "Ordinære aksjer", "KARI NORDMANN", 1980, "0150 OSLO", "NOR", 100])
    sheet.append([923456789, "KYST ASA", "A-aksjer", "OLA NORDMANN", 1975, "5003 BERGEN", "NOR", 2500])
    sheet.append([None, None, None, None, None, None, None, None])
    sheet.append([934567890, "POLAR AS", "B-aksjer", "PER HANSEN", 1990, "9008 TROMSØ", "DNK", 7])
    buffer = io.BytesIO()
    workbook.save(buffer)
    job, _ = queue_import(buffer.getvalue(), path="imports/aksjeeierbok.xlsx")

    result = Harness(db, object_store).run()

    assert result.success is True
    db.refresh(job)
    assert job.status == JOB_COMPLETED
    assert job.processed_rows == 3
    shares = sorted(db.scalars(select(Shareholding.shares)).all())
    assert shares == [7, 100, 2500]


def test_unsupported_file_type_fails_job(db, object_store, queue_import):
    job, _ = queue_import(b"%PDF-1.7", path="imports/aksjeeierbok.pdf")

    result = Harness(db, object_store).run()

    assert result.success is False
    assert ".pdf" in result.message
    db.refresh(job)
    assert job.status == JOB_ERROR


def test_parked_job_is_picked_before_pending(db, object_store, queue_import):
    _, older = queue_import(registry_csv(1), path="imports/a.csv", user_id="user-1")
    _, parked = queue_import(registry_csv(1), path="imports/b.csv", user_id="user-2")
    parked.status = QUEUE_PROCESSING
    db.commit()

    processor = Harness(db, object_store).processor

    assert processor.next_queue_item().id == parked.id
    parked.status = QUEUE_COMPLETED
    db.commit()
    assert processor.next_queue_item().id == older.id
    assert older.status == QUEUE_PENDING


def test_claimed_item_is_skipped_by_a_concurrent_invocation(db, object_store, queue_import):
    _, item = queue_import(registry_csv(1))
    first = Harness(db, object_store).processor
    second = Harness(db, object_store).processor

    assert first.next_queue_item().id == item.id
    assert second.next_queue_item() is None
    db.refresh(item)
    assert item.claim_token == first.claim_token
    assert item.claimed_at is not None


def test_concurrent_run_leaves_claimed_job_alone(db, object_store, queue_import):
    job, _ = queue_import(registry_csv(3))
    Harness(db, object_store).processor.next_queue_item()

    result = Harness(db, object_store).run()

    assert result.message == "No pending or processing jobs in queue"
    db.refresh(job)
    assert job.processed_rows == 0
    assert _count(db, Shareholding) == 0


def test_silent_claim_can_be_reclaimed(db, object_store, queue_import):
    _, item = queue_import(registry_csv(1))
    first = Harness(db, object_store).processor
    first.next_queue_item()
    item.claimed_at = utcnow() - timedelta(minutes=10)
    db.commit()

    second = Harness(db, object_store).processor

    assert second.next_queue_item().id == item.id
    db.refresh(item)
    assert item.claim_token == second.claim_token


def test_finished_run_releases_claim(db, object_store, queue_import):
    _, item = queue_import(registry_csv(10))

    Harness(db, object_store, window_bytes=300, advance_per_batch=30).run()

    db.refresh(item)
    assert item.status == QUEUE_PROCESSING
    assert item.claim_token is None
    lease = db.get(StagingLease, "user-1")
    assert lease.claim_token is None


def test_lost_staging_lease_stops_run_without_failing_job(db, object_store, queue_import):
    job, item = queue_import(registry_csv(6))
    harness = Harness(db, object_store, window_bytes=300)

    def take_over_lease(job_id, processed, total, status, error=None):
        harness.record(job_id, processed, total, status, error)
        if status == "processing":
            lease = db.get(StagingLease, "user-1")
            lease.claim_token = "newer-run"
            lease.heartbeat_at = utcnow()
            db.commit()

    harness.processor.on_progress = take_over_lease

    result = harness.run()

    assert result.success is True
    assert result.partial is True
    db.refresh(job)
    db.refresh(item)
    assert job.status == JOB_PROCESSING
    assert job.processed_rows == 2
    assert item.status == QUEUE_PROCESSING
    assert item.claim_token is None
    assert _count(db, Shareholding) == 2
    assert db.get(StagingLease, "user-1").claim_token == "newer-run"


class BrokenRecordWriter(StagingWriter):
    """Stages one record per insert and drops the year of a record in the chosen call."""

    def __init__(self, broken_call):
        super().__init__(batch_size=1)
        self.broken_call = broken_call
        self.calls = 0

    def write(self, staging, records):
        self.calls += 1
        if self.calls == self.broken_call:
            records = [records[0], replace(records[1], year=None)] + list(records[2:])
        return super().write(staging, records)


def test_staging_insert_failure_fails_job(db, object_store, queue_import):
    job, item = queue_import(registry_csv(6))
    harness = Harness(db, object_store, window_bytes=300, writer=BrokenRecordWriter(broken_call=2))

    result = harness.run()

    assert result.success is False
    assert "Failed to insert batch 2 to staging" in result.message
    db.refresh(job)
    db.refresh(item)
    assert job.status == JOB_ERROR
    assert item.status == QUEUE_FAILED
    assert "Failed to insert batch" in job.error_message
    # the batch promoted before the failure stays
    assert job.processed_rows == 2
    assert _count(db, Shareholding) == 2
    assert _count(db, StagingRow) == 0
    assert _count(db, StagingLease) == 0
    assert harness.events[-1][0] == "failed"


def test_promotion_failure_fails_job(db, object_store, queue_import, monkeypatch):
    job, item = queue_import(registry_csv(4))

    def locked(*args, **kwargs):
        raise OperationalError("INSERT INTO shareholdings", {}, Exception("database is locked"))

    monkeypatch.setattr(staging_service, "promote_batch", locked)

    result = Harness(db, object_store).run()

    assert result.success is False
    assert "Failed to promote batch" in result.message
    db.refresh(job)
    db.refresh(item)
    assert job.status == JOB_ERROR
    assert item.status == QUEUE_FAILED
    assert job.processed_rows == 0
    assert _count(db, Shareholding) == 0
    assert _count(db, StagingRow) == 0
    assert _count(db, StagingLease) == 0


def test_legacy_spreadsheet_import(db, object_store, queue_import, xls_workbook):
    book = xls_workbook(
        [
            xls_row(*STANDARD_HEADER.split(";")),
            xls_row(912345678, "FJORD AS", "Ordinære aksjer", "KARI NORDMANN", 1980, "0150 OSLO", "NOR", 100),
            xls_row(None, None, None, None, None, None, None, None),
            xls_row(923456789, "KYST ASA", "A-aksjer", "OLA NORDMANN", 1975, "5003 BERGEN", "NOR", 2500),
            xls_row(934567890, "POLAR AS", "B-aksjer", "PER HANSEN", 1990, "9008 TROMSØ", "DNK", 7),
        ]
    )
    job, _ = queue_import(b"\xd0\xcf\x11\xe0", path="imports/aksjeeierbok.xls")

    result = Harness(db, object_store).run()

    assert result.success is True
    db.refresh(job)
    assert job.status == JOB_COMPLETED
    assert job.processed_rows == 3
    kyst = db.scalars(select(Shareholding).where(Shareholding.orgnr == "923456789")).one()
    assert kyst.shares == 2500
    assert kyst.holder_birth_year_or_orgnr == "1975"
    assert book.released is True


def test_budget_is_checked_while_a_long_row_downloads(db, object_store, queue_import):
    content = STANDARD_HEADER + "\n" + "912345678;" + "X" * 2000 + "\n" + registry_csv(2, header=False)
    job, item = queue_import(content)
    harness = None

    def slow_window():
        harness.clock.now += 10
        return 0

    harness = Harness(db, object_store, window_bytes=37, memory_probe=slow_window)

    result = harness.run()

    assert result.success is True
    assert result.partial is True
    assert result.processed == 0
    # three windows reach the header's end; the budget runs out two windows into the long row
    assert len(object_store.range_requests) == 5
    db.refresh(job)
    db.refresh(item)
    assert job.status == JOB_PROCESSING
    assert item.resume_byte_offset == 0
