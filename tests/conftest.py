"""Pytest configuration and fixtures."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SUPABASE_URL", "https://storage.test")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "service-role-test-key")

import httpx
import pytest
import xlrd
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from xlrd.sheet import Cell

from registry_import import models  # noqa: F401 - Import to register models
from registry_import.database import Base
from registry_import.models.import_job import ImportJob
from registry_import.models.queue_item import ShareholderImportQueueItem
from registry_import.services.storage import ChunkedDownloader, SupabaseStorage

STORAGE_URL = "https://storage.test"


class FakeObjectStore:
    """In-memory Supabase Storage answering sign and range requests."""

    def __init__(self):
        self.objects = {}
        self.sign_failures = 0
        self.sign_calls = 0
        self.range_failures = 0
        self.ignore_range = False
        self.range_requests = []

    def put(self, key: str, content) -> None:
        if isinstance(content, str):
            content = content.encode("utf-8")
        self.objects[key] = content

    def handle(self, request: httpx.Request) -> httpx.Response:
        key = request.url.path.split("/object/sign/", 1)[1]
        if request.method == "POST":
            self.sign_calls += 1
            if self.sign_calls <= self.sign_failures:
                return httpx.Response(500, json={"error": "storage unavailable"})
            if key not in self.objects:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, json={"signedURL": f"/object/sign/{key}?token=signed"})

        data = self.objects[key]
        header = request.headers.get("Range")
        if header is None or self.ignore_range:
            return httpx.Response(200, content=data)

        if self.range_failures:
            self.range_failures -= 1
            return httpx.Response(503)

        start, end = (int(part) for part in header.removeprefix("bytes=").split("-"))
        self.range_requests.append((start, end))
        if start >= len(data):
            return httpx.Response(416)
        return httpx.Response(206, content=data[start : end + 1])

    def downloader(self, window_bytes: int = 64, sleeps=None, **kwargs) -> ChunkedDownloader:
        http = httpx.Client(transport=httpx.MockTransport(self.handle))
        storage = SupabaseStorage(STORAGE_URL, "service-role-test-key", http)
        recorded = sleeps if sleeps is not None else []
        return ChunkedDownloader(
            storage,
            window_bytes=window_bytes,
            settle_seconds=0,
            sleep=recorded.append,
            **kwargs,
        )


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def test_engine():
    """Create a test database for testing."""
    # Use in-memory SQLite shared across sessions
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(test_engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def queue_import(db, object_store):
    """Upload ``content`` to the fake store and queue an import for it."""

    def _queue(content, path="imports/aksjeeierbok.csv", user_id="user-1", mapping=None, bucket="shareholders"):
        object_store.put(f"{bucket}/{path}", content)
        job = ImportJob(user_id=user_id, bucket=bucket, path=path, file_name=path.rsplit("/", 1)[-1])
        db.add(job)
        db.flush()
        item = ShareholderImportQueueItem(
            job_id=job.id,
            user_id=user_id,
            bucket=bucket,
            path=path,
            mapping=mapping if mapping is not None else dict(STANDARD_MAPPING),
        )
        db.add(item)
        db.commit()
        return job, item

    return _queue


STANDARD_MAPPING = {
    "Orgnr": "orgnr",
    "Selskap": "selskap",
    "Aksjeklasse": "aksjeklasse",
    "Navn aksjonær": "navn_aksjonaer",
    "Fødselsår/orgnr": "fodselsaar_orgnr",
    "Postnr/sted": "ignored",
    "Landkode": "landkode",
    "Antall aksjer": "antall_aksjer",
}

STANDARD_HEADER = "Orgnr;Selskap;Aksjeklasse;Navn aksjonær;Fødselsår/orgnr;Postnr/sted;Landkode;Antall aksjer"


def registry_csv(rows: int, start: int = 0, header: bool = True) -> str:
    """Semicolon-delimited registry export with one unique holder per row."""
    lines = [STANDARD_HEADER] if header else []
    for i in range(start, start + rows):
        lines.append(
            f"9{i:08d};SELSKAP {i} AS;Ordinære aksjer;HOLDER {i};{1950 + i % 50};0150 OSLO;NOR;{(i + 1) * 10}"
        )
    return "\n".join(lines) + "\n"


class FakeXlsBook:
    """Single-sheet stand-in for an ``xlrd`` workbook."""

    datemode = 0

    def __init__(self, rows):
        self.rows = rows
        self.nrows = len(rows)
        self.released = False

    def sheet_by_index(self, index):
        return self

    def row(self, index):
        return self.rows[index]

    def release_resources(self):
        self.released = True


def xls_row(*values):
    cells = []
    for value in values:
        if value is None:
            cells.append(Cell(xlrd.XL_CELL_EMPTY, ""))
        elif isinstance(value, str):
            cells.append(Cell(xlrd.XL_CELL_TEXT, value))
        else:
            cells.append(Cell(xlrd.XL_CELL_NUMBER, float(value)))
    return cells


@pytest.fixture
def xls_workbook(monkeypatch):
    """Serve ``rows`` from ``xlrd.open_workbook`` whatever bytes are passed in."""

    def _install(rows):
        book = FakeXlsBook(rows)
        monkeypatch.setattr(xlrd, "open_workbook", lambda file_contents=None, **kwargs: book)
        return book

    return _install
