"""CMetrics — Cell Cleaning & Normalization.

Turns raw spreadsheet cell values into typed, comparable values. Source files
mix "0.8", "80" and "80%" for the same percentage, carry comparison symbols
("> 85", "≥ 90%"), thousands separators and spreadsheet serial dates.
"""

import hashlib
import math
import re
from datetime import date, datetime, timedelta
from typing import Any, List, Optional

from dateutil import parser as dateparser

_NOISE = re.compile(r"[><≥≤%\s,]")
_LEADING_NUMBER = re.compile(r"^[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?")
_NAME_STRIP = re.compile(r"[^\w\s-]|_")
_WHITESPACE = re.compile(r"\s+")
_HEADER_SEPARATORS = re.compile(r"[\s_]+")
_HEADER_STRIP = re.compile(r"[^\w]", re.ASCII)

# Day 0 of the spreadsheet serial-date scheme. Counting from 1899-12-30
# instead of 1900-01-01 absorbs the phantom 1900-02-29.
SERIAL_EPOCH = date(1899, 12, 30)
SERIAL_MIN = 25000  # 1968-06-12
SERIAL_MAX = 60000  # 2064-04-08


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def clean_numeric(value: Any) -> Optional[float]:
    """Parse a loosely formatted number, returning None when unparseable.

    Accepts: 0.8, 80, "80%", "> 85", "≥ 90%", "1,234.56".
    """
    if _is_blank(value) or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else float(value)

    match = _LEADING_NUMBER.match(_NOISE.sub("", str(value)))
    if not match:
        return None
    return float(match.group(0))


def clean_int(value: Any) -> Optional[int]:
    """Parse a count, rounding fractional values."""
    cleaned = clean_numeric(value)
    return round(cleaned) if cleaned is not None else None


def _has_decimal_point(value: Any) -> bool:
    if isinstance(value, float):
        return not value.is_integer()
    return "." in str(value)


def clean_percent(value: Any) -> Optional[float]:
    """Parse a percentage onto the 0-100 scale.

    Values strictly between 0 and 1 are fractions (0.8 → 80). Values up to 2
    written with a decimal point and no "%" sign are fractions too
    ("1.5" → 150). Everything else is already on the 0-100 scale.
    """
    cleaned = clean_numeric(value)
    if cleaned is None:
        return None

    if 0 < cleaned < 1:
        return round(cleaned * 100, 6)

    if cleaned <= 2 and _has_decimal_point(value) and "%" not in str(value):
        return round(cleaned * 100, 6)

    return cleaned


def normalize_name(value: Any) -> str:
    """Normalize a mentor or team name into a stable identity key.

    Uppercases, keeps letters/digits/spaces/hyphens, collapses whitespace.
    """
    if _is_blank(value):
        return ""
    text = _NAME_STRIP.sub("", str(value).upper())
    return _WHITESPACE.sub(" ", text).strip()


def normalize_header(value: Any) -> str:
    """Normalize a column label for matching ("Leads Ach%" → "leads_ach")."""
    if value is None:
        return ""
    text = _HEADER_SEPARATORS.sub("_", str(value).lower().strip())
    return _HEADER_STRIP.sub("", text)


def parse_date(value: Any) -> Optional[date]:
    """Parse a date cell: native dates, serial numbers or date strings."""
    if _is_blank(value) or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        return _from_serial(value)

    text = str(value).strip()
    serial = clean_numeric(text) if _LEADING_NUMBER.fullmatch(text) else None
    if serial is not None:
        return _from_serial(serial)
    try:
        return dateparser.parse(text).date()
    except (ValueError, OverflowError):
        return None


def _from_serial(serial: float) -> Optional[date]:
    if math.isnan(serial) or not SERIAL_MIN < serial < SERIAL_MAX:
        return None
    return SERIAL_EPOCH + timedelta(days=math.floor(serial))


def week_of_month(period: date) -> int:
    """Bucket a date into week 1-4 of its month (days 29-31 fall in week 4)."""
    return min(math.ceil(period.day / 7), 4)


def parse_notes(value: Any) -> List[str]:
    """Split a pipe- or comma-delimited notes cell."""
    if _is_blank(value):
        return []
    text = str(value).strip()
    delimiter = "|" if "|" in text else ","
    return [note.strip() for note in text.split(delimiter) if note.strip()]


def checksum(mentor_name: str, period_date: date) -> str:
    """Deterministic fingerprint of (mentor, period) for re-upload detection."""
    content = f"{normalize_name(mentor_name)}:{period_date.isoformat()}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]
