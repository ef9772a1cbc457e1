"""Map raw registry rows onto the canonical shareholder record."""
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from registry_import.services.decoders import RawRow

logger = logging.getLogger(__name__)

CANONICAL_FIELDS = (
    "orgnr",
    "selskap",
    "aksjeklasse",
    "navn_aksjonaer",
    "fodselsaar_orgnr",
    "landkode",
    "antall_aksjer",
    "year",
)

# Column layout of registry exports that arrive without a header row.
POSITIONAL_MAPPING: Dict[int, str] = {
    0: "antall_aksjer",
    1: "fodselsaar_orgnr",
    3: "orgnr",
    4: "selskap",
    5: "aksjeklasse",
    6: "navn_aksjonaer",
    8: "landkode",
}

NUMERIC_LABEL = re.compile(r"^\d+$")
ORGNR_SHAPED = re.compile(r"(?<!\d)\d{9}(?!\d)")
POSTAL_LOCATION = re.compile(r"^\d{4}\s+\S")
COMPANY_SUFFIX = re.compile(r"\b(AS|ASA|ANS|DA|SA|BA|KS|NUF|HOLDING)\b", re.IGNORECASE)
COUNTRY_CODE = re.compile(r"^(NOR|SWE|DNK|FIN|ISL|GBR|USA|DEU|NLD)$")

DATA_LIKE_THRESHOLD = 2


@dataclass
class CanonicalRecord:
    user_id: str
    job_id: int
    year: int
    orgnr: Optional[str] = None
    selskap: Optional[str] = None
    aksjeklasse: Optional[str] = None
    navn_aksjonaer: Optional[str] = None
    fodselsaar_orgnr: Optional[str] = None
    landkode: Optional[str] = None
    antall_aksjer: int = 0

    def as_staging_values(self) -> dict:
        return {
            "job_id": self.job_id,
            "user_id": self.user_id,
            "orgnr": self.orgnr,
            "selskap": self.selskap,
            "aksjeklasse": self.aksjeklasse,
            "navn_aksjonaer": self.navn_aksjonaer,
            "fodselsaar_orgnr": self.fodselsaar_orgnr,
            "landkode": self.landkode,
            "antall_aksjer": self.antall_aksjer,
            "year": self.year,
        }


@dataclass(frozen=True)
class FieldError:
    field: str
    value: str
    reason: str


@dataclass
class MappedRow:
    record: CanonicalRecord
    errors: List[FieldError] = field(default_factory=list)


@dataclass(frozen=True)
class ResolvedMapping:
    """Either column-name keyed (``by_name``) or column-index keyed (``by_position``)."""

    by_name: Optional[Dict[str, str]] = None
    by_position: Optional[Dict[int, str]] = None

    @property
    def positional(self) -> bool:
        return self.by_position is not None


def looks_like_data(label: str) -> bool:
    """True when a column label is really a cell value from a data row."""
    label = label.strip()
    if not label:
        return False
    return bool(
        NUMERIC_LABEL.match(label)
        or ORGNR_SHAPED.search(label)
        or POSTAL_LOCATION.match(label)
        or COMPANY_SUFFIX.search(label)
        or COUNTRY_CODE.match(label)
    )


def headers_look_like_data(columns: Sequence[str]) -> bool:
    return sum(1 for column in columns if looks_like_data(column)) >= DATA_LIKE_THRESHOLD


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value)


class ColumnMapper:
    """
    Build canonical records from raw rows.

    ``resolve`` is called once per file with the observed column labels. When
    those labels look like data values the supplied mapping is replaced with
    the fixed positional layout.
    """

    def __init__(self, home_country_code: str = "NOR"):
        self.home_country_code = home_country_code

    def resolve(self, columns: Sequence[str], mapping: Mapping[str, str]) -> ResolvedMapping:
        if headers_look_like_data(columns):
            logger.warning(
                f"⚠️ Column labels look like data values, using positional mapping instead of "
                f"the supplied one: {list(columns)}"
            )
            return ResolvedMapping(by_position=dict(POSITIONAL_MAPPING))

        named = {source: target for source, target in mapping.items() if target in CANONICAL_FIELDS}
        missing = [source for source in named if source not in columns]
        if missing:
            logger.warning(f"⚠️ Mapped columns not present in source: {missing}")
        return ResolvedMapping(by_name=named)

    def map(
        self,
        row: RawRow,
        resolved: ResolvedMapping,
        user_id: str,
        job_id: int,
        default_year: int,
    ) -> MappedRow:
        """
        Map one raw row.

        Args:
            row: Parsed source row
            resolved: Mapping returned by ``resolve``
            user_id: Owning user
            job_id: Owning import job
            default_year: Reporting year used when the row has none

        Returns:
            The record and any per-field conversion failures
        """
        result = MappedRow(record=CanonicalRecord(user_id=user_id, job_id=job_id, year=default_year))
        if resolved.positional:
            pairs = [(row.by_position(index), target) for index, target in resolved.by_position.items()]
        else:
            pairs = [(row.by_name(source), target) for source, target in resolved.by_name.items()]

        for raw, target in pairs:
            if raw is None or not raw.strip():
                continue
            self._assign(result, target, raw.strip(), default_year)

        record = result.record
        record.landkode = record.landkode or self.home_country_code
        return result

    def _assign(self, result: MappedRow, target: str, value: str, default_year: int) -> None:
        record = result.record
        if target == "antall_aksjer":
            digits = _digits(value)
            if digits:
                record.antall_aksjer = int(digits)
            else:
                record.antall_aksjer = 0
                result.errors.append(FieldError(target, value, "no digits"))
        elif target == "year":
            try:
                record.year = int(value)
            except ValueError:
                record.year = default_year
                result.errors.append(FieldError(target, value, "not an integer"))
        elif target == "landkode":
            record.landkode = value.upper()
        else:
            setattr(record, target, value)
