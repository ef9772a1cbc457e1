"""Turn downloaded registry files into batches of raw rows.

Two strategies share one shape: ``batches()`` yields ``RowBatch`` values, each
carrying the checkpoint a later invocation resumes from once the batch has been
promoted. Delimited text is decoded incrementally from range-request segments.
Spreadsheets cannot be decoded incrementally, so the whole workbook is loaded
and walked in windows of the same size; callers must run the memory breaker
around every window.
"""
import csv
import io
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

import xlrd
from openpyxl import load_workbook
from xlrd.xldate import xldate_as_datetime

from registry_import.services.storage import Segment

logger = logging.getLogger(__name__)

CANDIDATE_DELIMITERS = (";", ",", "\t", "|")


@dataclass(frozen=True)
class RawRow:
    """Cell values of one source row plus the column labels bound for the file."""

    values: Tuple[str, ...]
    columns: Tuple[str, ...]
    line_number: Optional[int] = None

    def by_name(self, column: str) -> Optional[str]:
        try:
            index = self.columns.index(column)
        except ValueError:
            return None
        return self.by_position(index)

    def by_position(self, index: int) -> Optional[str]:
        if 0 <= index < len(self.values):
            return self.values[index]
        return None


@dataclass(frozen=True)
class Checkpoint:
    """Where to resume: byte offset of a segment start, and records to skip in it."""

    byte_offset: int = 0
    row_skip: int = 0


@dataclass(frozen=True)
class RowBatch:
    rows: List[RawRow]
    checkpoint: Checkpoint


def detect_delimiter(header_line: str) -> str:
    """Pick the candidate delimiter occurring most often in the header line."""
    counts = {candidate: header_line.count(candidate) for candidate in CANDIDATE_DELIMITERS}
    best = max(counts, key=counts.get)
    return best if counts[best] > 0 else ","


class DelimitedTextDecoder:
    """
    Incremental CSV decoder over line-aligned segments.

    The first parsed record of the object binds the header. When resuming from
    a non-zero offset the header and delimiter persisted by the earlier run
    must be supplied.
    """

    def __init__(
        self,
        batch_size: int = 200,
        columns: Optional[Sequence[str]] = None,
        delimiter: Optional[str] = None,
    ):
        self.batch_size = batch_size
        self.columns: Optional[Tuple[str, ...]] = tuple(columns) if columns else None
        self.delimiter = delimiter
        self.dropped_lines = 0

    def batches(self, segments: Iterable[Segment], checkpoint: Checkpoint = Checkpoint()) -> Iterator[RowBatch]:
        if checkpoint.byte_offset > 0 and (self.columns is None or self.delimiter is None):
            raise ValueError("Resuming mid-file requires the persisted header and delimiter")
        if checkpoint.byte_offset == 0:
            self.columns = None

        skip = checkpoint.row_skip
        for segment in segments:
            records = self._parse_segment(segment)
            if self.columns is None:
                if not records:
                    continue
                _, header = records.pop(0)
                self.columns = tuple(value.strip() for value in header)
                logger.info(f"📋 CSV headers detected: {list(self.columns)}")

            # window alignment may differ from the run that wrote the checkpoint
            start = min(skip, len(records))
            skip -= start
            if not records or start == len(records):
                continue

            for i in range(start, len(records), self.batch_size):
                window = records[i : i + self.batch_size]
                rows = [
                    RawRow(values=tuple(values), columns=self.columns, line_number=line_number)
                    for line_number, values in window
                    if any(value.strip() for value in values)
                ]
                consumed = i + len(window)
                if consumed >= len(records):
                    resume_at = Checkpoint(segment.end, 0)
                else:
                    resume_at = Checkpoint(segment.start, consumed)
                yield RowBatch(rows=rows, checkpoint=resume_at)

    def _parse_segment(self, segment: Segment) -> List[Tuple[int, List[str]]]:
        """Parse each line on its own so one malformed line cannot poison the rest."""
        records = []
        for line_number, line in enumerate(segment.text.splitlines(), start=1):
            if not line.strip():
                continue
            if self.delimiter is None:
                self.delimiter = detect_delimiter(line)
                logger.info(f"🔍 Detected delimiter {self.delimiter!r}")
            try:
                values = next(csv.reader(io.StringIO(line), delimiter=self.delimiter, strict=True))
            except (csv.Error, StopIteration) as e:
                self.dropped_lines += 1
                logger.warning(f"⚠️ Dropping malformed line {line_number} in segment at byte {segment.start}: {e}")
                continue
            records.append((line_number, values))
        return records


def _cell_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value).strip()


def _xls_cell_value(cell, datemode: int):
    if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK, xlrd.XL_CELL_ERROR):
        return None
    if cell.ctype == xlrd.XL_CELL_DATE:
        return xldate_as_datetime(cell.value, datemode)
    if cell.ctype == xlrd.XL_CELL_BOOLEAN:
        return bool(cell.value)
    return cell.value


class SpreadsheetDecoder:
    """
    Window-by-window replay over a workbook held in memory.

    ``.xlsx`` is read with openpyxl, legacy ``.xls`` with xlrd. Only the first
    worksheet is imported. Peak memory is the size of the workbook; there is
    no incremental mode.
    """

    def __init__(self, batch_size: int = 200, legacy: bool = False):
        self.batch_size = batch_size
        self.legacy = legacy
        self.columns: Optional[Tuple[str, ...]] = None
        self.delimiter = None

    def _sheet_rows(self, content: bytes) -> Iterator[tuple]:
        if self.legacy:
            book = xlrd.open_workbook(file_contents=content, on_demand=True)
            try:
                sheet = book.sheet_by_index(0)
                for index in range(sheet.nrows):
                    yield tuple(_xls_cell_value(cell, book.datemode) for cell in sheet.row(index))
            finally:
                book.release_resources()
            return

        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
        try:
            yield from workbook.worksheets[0].iter_rows(values_only=True)
        finally:
            workbook.close()

    def batches(self, content: bytes, checkpoint: Checkpoint = Checkpoint()) -> Iterator[RowBatch]:
        rows = self._sheet_rows(content)
        try:
            header = next(rows, None)
            if header is None:
                logger.info("📭 Workbook has no rows")
                return
            self.columns = tuple(
                _cell_text(value) or f"Column_{index}" for index, value in enumerate(header)
            )
            logger.info(f"📋 Excel headers: {list(self.columns)}")

            consumed = 0
            window: List[RawRow] = []
            for row_number, values in enumerate(rows, start=2):
                consumed += 1
                if consumed <= checkpoint.row_skip:
                    continue
                cells = tuple(_cell_text(value) for value in values)
                if any(cells):
                    window.append(RawRow(values=cells, columns=self.columns, line_number=row_number))
                if consumed % self.batch_size == 0:
                    yield RowBatch(rows=window, checkpoint=Checkpoint(0, consumed))
                    window = []
            if window or consumed % self.batch_size:
                yield RowBatch(rows=window, checkpoint=Checkpoint(0, consumed))
        finally:
            rows.close()
