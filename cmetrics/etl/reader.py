"""CMetrics — Spreadsheet Reader.

Loads the first sheet of an .xlsx/.xlsm workbook (openpyxl) or a .csv file
into a raw cell grid, then locates the header row and builds labeled rows.
"""

import csv
import io
from pathlib import Path
from typing import Any, List, Optional, Sequence
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from cmetrics.core.metric_registry import SourceType
from cmetrics.etl.header_mapping import auto_map, detect_source_type
from cmetrics.models.etl_models import ParsedSheet, SheetSource
from cmetrics.core.logging import get_logger

logger = get_logger("etl.reader")

WORKBOOK_EXTENSIONS = (".xlsx", ".xlsm")
CSV_EXTENSIONS = (".csv",)
SUPPORTED_EXTENSIONS = WORKBOOK_EXTENSIONS + CSV_EXTENSIONS


class SheetReadError(Exception):
    """A file could not be parsed into a cell grid."""


class UnsupportedFileError(SheetReadError):
    """The file extension is not a spreadsheet format we read."""


def is_supported(filename: str) -> bool:
    return Path(filename).suffix.lower() in SUPPORTED_EXTENSIONS


# ── Loading ──


def _read_workbook(content: bytes, filename: str) -> List[List[Any]]:
    try:
        wb = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, BadZipFile, KeyError, OSError) as e:
        raise SheetReadError(f"{filename}: cannot open workbook ({e})") from e
    try:
        if not wb.worksheets:
            return []
        sheet = wb.worksheets[0]
        return [list(row) for row in sheet.iter_rows(values_only=True)]
    finally:
        wb.close()


def _read_csv(content: bytes, filename: str) -> List[List[Any]]:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = content.decode("latin-1")
    try:
        return [list(row) for row in csv.reader(io.StringIO(text))]
    except csv.Error as e:
        raise SheetReadError(f"{filename}: malformed CSV ({e})") from e


def read_bytes(
    filename: str,
    content: bytes,
    source_hint: Optional[SourceType] = None,
) -> SheetSource:
    """Read an uploaded file's first sheet into a SheetSource."""
    suffix = Path(filename).suffix.lower()
    if suffix in WORKBOOK_EXTENSIONS:
        cells = _read_workbook(content, filename)
    elif suffix in CSV_EXTENSIONS:
        cells = _read_csv(content, filename)
    else:
        raise UnsupportedFileError(f"{filename}: unsupported file type '{suffix}'")

    logger.debug(f"Read {len(cells)} raw rows from {filename}", extra={"file": filename})
    return SheetSource(filename=filename, cells=cells, source_hint=source_hint)


def read_path(path: Path, source_hint: Optional[SourceType] = None) -> SheetSource:
    """Read a spreadsheet from disk."""
    path = Path(path)
    if not is_supported(path.name):
        raise UnsupportedFileError(f"{path.name}: unsupported file type '{path.suffix}'")
    try:
        content = path.read_bytes()
    except OSError as e:
        raise SheetReadError(f"{path.name}: {e}") from e
    return read_bytes(path.name, content, source_hint)


# ── Header row & labeled rows ──


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _labels(row: Sequence[Any]) -> List[str]:
    return ["" if _is_blank(v) else str(v).strip() for v in row]


def locate_header_row(
    cells: List[List[Any]],
    scan_rows: int = 10,
    source_hint: Optional[SourceType] = None,
) -> int:
    """Find the header row among the first scan_rows rows.

    Exports often carry a title or a merged banner above the real header. The
    first row that maps a mentor column (and, without a hint, matches a source
    signature) is the header; failing that, the first row that maps a mentor
    column; failing that, row 0.
    """
    candidates = cells[:scan_rows]
    mentor_rows = []
    for index, row in enumerate(candidates):
        labels = [label for label in _labels(row) if label]
        if not labels:
            continue
        mapping = auto_map(labels, source_hint)
        if not mapping.has("mentor_name"):
            continue
        if source_hint is not None or detect_source_type(labels) is not None:
            return index
        mentor_rows.append(index)
    return mentor_rows[0] if mentor_rows else 0


def _unique_headers(labels: List[str]) -> List[str]:
    headers: List[str] = []
    seen: dict = {}
    for i, label in enumerate(labels):
        name = label or f"__EMPTY_{i}"
        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        else:
            seen[name] = 0
        headers.append(name)
    return headers


def build_sheet(source: SheetSource, header_row: int = 0) -> ParsedSheet:
    """Label every row below header_row; fully blank rows are dropped."""
    if not source.cells or header_row >= len(source.cells):
        return ParsedSheet(filename=source.filename, headers=[], header_row=header_row)

    headers = _unique_headers(_labels(source.cells[header_row]))
    rows = []
    numbers = []
    for offset, raw in enumerate(source.cells[header_row + 1:]):
        values = list(raw) + [None] * (len(headers) - len(raw))
        if all(_is_blank(v) for v in values):
            continue
        rows.append(dict(zip(headers, values)))
        numbers.append(header_row + offset + 2)

    return ParsedSheet(
        filename=source.filename,
        headers=headers,
        rows=rows,
        header_row=header_row,
        row_numbers=numbers,
    )
