"""Normalization functions for exam-problem spreadsheet ingestion.

All functions accept raw cell values (str, number, date or None) and return
the appropriate type or None.  Spreadsheet decoders hand us native values
(openpyxl) or strings (CSV, formatted Sheets values), so every helper
tolerates both.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime
from typing import Any

from openpyxl.utils.datetime import from_excel

QUESTION_MULTIPLE = "MULTIPLE"
QUESTION_SUBJECTIVE = "SUBJECTIVE"

TRUTHY_VALUES = frozenset({"y", "yes", "true", "1", "완료"})
FREE_RESPONSE_MARKERS = ("주관", "subjective")

_DATE_SEPARATORS = re.compile(r"[./]")

# Serials outside this window are almost certainly not dates.
_MIN_DATE_SERIAL = 1
_MAX_DATE_SERIAL = 2958465


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: Any) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None.

    Non-string values are rendered first; integral floats lose their '.0'
    so that a numeric answer cell 3.0 reads back as '3'.
    """
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: Any) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: parse_numeric
# ---------------------------------------------------------------------------

def parse_numeric(value: Any) -> float | None:
    """Parse a number from a cell, returning None on failure.

    Booleans are not numbers here even though Python treats them as ints.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        num = float(value)
    else:
        v = trim(value)
        if v is None:
            return None
        try:
            num = float(v.replace(",", ""))
        except ValueError:
            return None
    if math.isnan(num) or math.isinf(num):
        return None
    return num


def parse_int(value: Any) -> int | None:
    """Parse an integral number; 12.0 and '12' are fine, 12.5 is not."""
    num = parse_numeric(value)
    if num is None or not num.is_integer():
        return None
    return int(num)


# ---------------------------------------------------------------------------
# Rule 4: parse_bool
# ---------------------------------------------------------------------------

def parse_bool(value: Any) -> bool:
    """Case-insensitive y/yes/true/1 (and the sheet's '완료') → True."""
    if isinstance(value, bool):
        return value
    v = trim(value)
    if v is None:
        return False
    return v.lower() in TRUTHY_VALUES


# ---------------------------------------------------------------------------
# Rule 5: parse_percent
# ---------------------------------------------------------------------------

def parse_percent(value: Any) -> float | None:
    """Return a 0-100 percentage.

    Values <= 1 are read as fractions and scaled by 100 (rounded to two
    decimals); anything larger is already a percentage.  A value of exactly
    1 therefore becomes 100.
    """
    num = parse_numeric(value)
    if num is None:
        return None
    if num <= 1:
        return round(num * 100, 2)
    return num


# ---------------------------------------------------------------------------
# Rule 6: parse_date
# ---------------------------------------------------------------------------

def parse_date(value: Any) -> date | None:
    """Parse a native date, a spreadsheet serial number or a date string.

    Accepted strings: YYYY-MM-DD, YYYY.MM.DD, YYYY/MM/DD and ISO datetimes.
    Anything else yields None rather than an error.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        if not _MIN_DATE_SERIAL <= value <= _MAX_DATE_SERIAL:
            return None
        try:
            converted = from_excel(value)
        except (ValueError, OverflowError, TypeError):
            return None
        return converted.date() if isinstance(converted, datetime) else converted
    v = trim(value)
    if v is None:
        return None
    candidate = _DATE_SEPARATORS.sub("-", v.rstrip("."))
    try:
        return datetime.fromisoformat(candidate).date()
    except ValueError:
        pass
    parts = candidate.split("-")
    if len(parts) == 3 and all(p.strip().isdigit() for p in parts):
        try:
            return date(int(parts[0]), int(parts[1]), int(parts[2]))
        except ValueError:
            return None
    return None


# ---------------------------------------------------------------------------
# Rule 7: parse_question_kind
# ---------------------------------------------------------------------------

def parse_question_kind(value: Any) -> str:
    """MULTIPLE unless the text carries a free-response marker."""
    v = trim(value)
    if v is None:
        return QUESTION_MULTIPLE
    lowered = v.lower()
    if any(marker in lowered for marker in FREE_RESPONSE_MARKERS):
        return QUESTION_SUBJECTIVE
    return QUESTION_MULTIPLE


def is_blank(value: str | None) -> bool:
    return value is None or not value.strip()
