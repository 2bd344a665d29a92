"""
Cell value coercion for spreadsheet imports.

Real-world cost spreadsheets mix native numbers, currency strings
("$50,000.00"), accounting blanks (" $-   ") and stray text. Everything here
is best-effort: malformed cells become 0 instead of aborting an import.
"""

import math
import re
from datetime import date, datetime
from typing import Any, Optional

# Longest leading float, the way JavaScript's parseFloat reads a string
_LEADING_FLOAT = re.compile(r"^\s*[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")
_NON_NUMERIC = re.compile(r"[^0-9.\-]")
_CURRENCY_NOISE = re.compile(r"[$,\s]")
_TRAILING_DASHES = re.compile(r"-+$")


def is_blank(value: Any) -> bool:
    """True for None, NaN and strings that are empty after trimming."""
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _lenient_float(text: str) -> Optional[float]:
    match = _LEADING_FLOAT.match(text)
    if not match:
        return None
    try:
        return float(match.group(0))
    except ValueError:
        return None


def parse_numeric_value(value: Any) -> float:
    """Coerce a cell to a number. Never raises; unparseable input gives 0."""
    if _is_number(value):
        return 0.0 if math.isnan(value) else float(value)
    if is_blank(value):
        return 0.0

    cleaned = _NON_NUMERIC.sub("", str(value))
    parsed = _lenient_float(cleaned)
    return parsed if parsed is not None else 0.0


def parse_currency_cell(value: Any) -> float:
    """
    Parse a value cell from a BUDGETS sheet.

    Strips "$", commas and whitespace, then turns a trailing run of dashes
    into "0" so the accounting blank " $-   " reads as zero.
    """
    if _is_number(value):
        return 0.0 if math.isnan(value) else float(value)
    if is_blank(value):
        return 0.0

    cleaned = _CURRENCY_NOISE.sub("", str(value))
    cleaned = _TRAILING_DASHES.sub("0", cleaned)
    parsed = _lenient_float(cleaned)
    return parsed if parsed is not None else 0.0


def parse_manhours_cell(value: Any) -> Optional[float]:
    """Manhours are optional: blank cells stay None, anything else is parsed."""
    if is_blank(value):
        return None
    return parse_currency_cell(value)


def parse_string_value(value: Any) -> str:
    """Trimmed string form of a cell ("" for blanks). Whole floats drop the .0."""
    if is_blank(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value).strip()
