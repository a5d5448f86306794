"""CMetrics — Ingestion Models (in-flight, not persisted)."""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from cmetrics.core.metric_registry import SourceType

RawRow = Dict[str, Any]


# ─────────────────────────────────────────────
# SHEETS — What the reader hands to transformers
# ─────────────────────────────────────────────


@dataclass
class SheetSource:
    """Raw cell grid of a file's first sheet, before a header row is chosen."""

    filename: str
    cells: List[List[Any]]
    source_hint: Optional[SourceType] = None


@dataclass
class ParsedSheet:
    """First sheet of a file as labeled rows.

    header_row is the 0-based index of the header inside the raw grid, so a
    data row's spreadsheet row number is header_row + index + 2 unless the
    reader recorded explicit numbers (blank rows dropped).
    """

    filename: str
    headers: List[str]
    rows: List[RawRow] = field(default_factory=list)
    header_row: int = 0
    row_numbers: List[int] = field(default_factory=list)

    def row_number(self, index: int) -> int:
        if index < len(self.row_numbers):
            return self.row_numbers[index]
        return self.header_row + index + 2


# ─────────────────────────────────────────────
# HEADER MAPPING
# ─────────────────────────────────────────────


class ColumnMapping(BaseModel):
    """Inferred column → field assignment for one file."""

    mapping: Dict[str, str] = {}
    detected_fields: List[str] = []
    unmapped_required_fields: List[str] = []

    def value(self, row: RawRow, field_name: str) -> Any:
        """Read a canonical field from a raw row, None if unmapped."""
        column = self.mapping.get(field_name)
        if column is None:
            return None
        return row.get(column)

    def has(self, field_name: str) -> bool:
        return field_name in self.mapping


# ─────────────────────────────────────────────
# CANONICAL ROWS — One source's contribution
# ─────────────────────────────────────────────


class MetricFields(BaseModel):
    """Every metric a mentor record can carry. All optional."""

    # Core metrics
    cc_pct: Optional[float] = None
    sc_pct: Optional[float] = None
    up_pct: Optional[float] = None
    fixed_pct: Optional[float] = None

    # Referral funnel
    referral_leads: Optional[int] = None
    referral_showups: Optional[int] = None
    referral_paid: Optional[int] = None
    referral_achievement_pct: Optional[float] = None

    # Lead recovery
    total_leads: Optional[int] = None
    recovered_leads: Optional[int] = None
    unrecovered_leads: Optional[int] = None
    conversion_pct: Optional[float] = None
    notes: Optional[List[str]] = None


class CanonicalRow(MetricFields):
    """One source file's contribution for one mentor/period."""

    model_config = ConfigDict(frozen=True)

    mentor_name: str
    team_name: Optional[str] = None
    period_date: date
    week_of_month: int
    checksum: str
    source_type: SourceType


class RowRejection(BaseModel):
    row: int
    reason: str
    data: Optional[Dict[str, Any]] = None


class TransformResult(BaseModel):
    """Outcome of transforming one file."""

    source: SourceType
    file: str
    received: int = 0
    accepted: List[CanonicalRow] = []
    rejected: List[RowRejection] = []
    columns_detected: List[str] = []
    columns_mapped: Dict[str, str] = {}


# ─────────────────────────────────────────────
# MERGE / VALIDATE / PERSIST
# ─────────────────────────────────────────────


class MergedMetric(MetricFields):
    """The single authoritative record for a mentor in a period."""

    mentor_name: str
    team_name: Optional[str] = None
    period_date: date
    week_of_month: int
    checksum: str
    sources: List[SourceType] = []


class MergeResult(BaseModel):
    merged: List[MergedMetric] = []
    coverage: Dict[str, int] = {}
    mentor_count: int = 0
    team_mapping: Dict[str, str] = {}


class InvalidRecord(BaseModel):
    mentor: str
    reason: str


class ValidationResult(BaseModel):
    valid: List[MergedMetric] = []
    invalid: List[InvalidRecord] = []


class PersistenceError(BaseModel):
    mentor: str
    reason: str


class RecordOutcome(BaseModel):
    """What the persister did with one merged record."""

    mentor: str
    period_date: date
    action: str  # "created" | "updated" | "skipped" | "error"
    sources: List[SourceType] = []


class PersistenceResult(BaseModel):
    created: int = 0
    updated: int = 0
    skipped_duplicate: int = 0
    errors: List[PersistenceError] = []
    outcomes: List[RecordOutcome] = []


# ─────────────────────────────────────────────
# INGESTION REPORT — camelCase on the wire
# ─────────────────────────────────────────────


class ReportModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReportRejection(ReportModel):
    file: str
    row: int
    reason: str


class SourceReport(ReportModel):
    source: SourceType
    files: List[str] = []
    received: int = 0
    accepted: int = 0
    updated: int = 0
    skipped_duplicate: int = 0
    rejected: List[ReportRejection] = []
    columns_detected: List[str] = []
    columns_mapped: Dict[str, str] = {}


class ReportTotals(ReportModel):
    files_processed: int = 0
    received: int = 0
    accepted: int = 0
    updated: int = 0
    created: int = 0
    skipped_duplicate: int = 0
    rejected: int = 0


class IngestionReport(ReportModel):
    """Summary returned to whoever invoked an ingestion run."""

    timestamp: str = ""
    run_id: Optional[int] = None
    sources: List[SourceReport] = []
    totals: ReportTotals = ReportTotals()
    coverage: Dict[str, int] = {}
    mentor_count: int = 0
    team_count: int = 0
    errors: List[str] = []
    duration: int = 0  # ms
