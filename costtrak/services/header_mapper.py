"""
Header detection and column mapping for header-based imports.

Two vocabularies live here:

- EMPLOYEE_HEADER_RULES: ordered (field, predicate) rules applied to each
  header cell of an employee roster. The first rule that matches a cell
  wins, so exact phrases ("legal first name", "payroll name") sit ahead of
  the generic substring checks that would otherwise swallow them.
- BUDGET_COLUMN_ALIASES: accepted spellings for budget breakdown columns,
  compared after normalizing "Cost Type" / "cost-type" / "COST_TYPE" alike.
"""

import logging
import re
from typing import Any, Callable, Iterable, Optional

from .workbook import HEADER_SCAN_ROWS, ImportFileError

logger = logging.getLogger(__name__)

ColumnMap = dict[str, int]
HeaderRule = tuple[str, Callable[[str], bool]]


class HeaderNotFoundError(ImportFileError):
    pass


def _has(*parts: str) -> Callable[[str], bool]:
    """Predicate: header contains every one of `parts`."""
    return lambda h: all(p in h for p in parts)


def _any(*parts: str) -> Callable[[str], bool]:
    """Predicate: header contains at least one of `parts`."""
    return lambda h: any(p in h for p in parts)


def _is(*phrases: str) -> Callable[[str], bool]:
    return lambda h: h in phrases


def _either(*preds: Callable[[str], bool]) -> Callable[[str], bool]:
    return lambda h: any(p(h) for p in preds)


EMPLOYEE_HEADER_RULES: list[HeaderRule] = [
    ("employeeNumber", _either(
        lambda h: "employee" in h and _any("number", "#", "id")(h),
        _is("employee_number"),
    )),
    ("firstName", _either(_is("legal first name"), _has("first", "name"))),
    ("lastName", _either(_is("legal last name"), _has("last", "name"))),
    ("payrollName", _is("payroll name")),
    ("middleName", _either(_is("legal middle name"), _any("middle"))),
    ("fullName", _either(_is("name"), _any("employee name", "full name"))),
    ("craft", _any("craft", "trade", "classification")),
    ("rate", _either(_is("base_rate"), _any("rate", "wage", "hourly"))),
    ("category", _either(_is("category"), _any("type", "direct", "indirect"))),
    ("class", _either(_is("pay grade code"), _any("grade", "class"))),
    ("jobTitle", _either(_is("job title description"), _any("job title", "title"))),
    ("locationCode", _is("location code")),
    ("locationDescription", _is("location description")),
]


def normalize_header(cell: Any) -> str:
    if cell is None:
        return ""
    return str(cell).lower().strip()


def match_header(header: str, rules: Iterable[HeaderRule]) -> Optional[str]:
    """Return the field for the first rule matching `header`, if any."""
    if not header:
        return None
    for field_name, predicate in rules:
        if predicate(header):
            return field_name
    return None


def map_header_row(
    rows: list[list[Any]],
    rules: Iterable[HeaderRule] = EMPLOYEE_HEADER_RULES,
    scan_rows: int = HEADER_SCAN_ROWS,
) -> tuple[ColumnMap, int]:
    """
    Find the header row within the first `scan_rows` rows and map its columns.

    The first row producing at least one mapped column is the header row.
    When two cells map to the same field the right-most one wins.
    Raises HeaderNotFoundError if no row in the window maps anything.
    """
    rules = list(rules)
    for i, row in enumerate(rows[:scan_rows]):
        if not row:
            continue
        column_map: ColumnMap = {}
        for index, cell in enumerate(row):
            field_name = match_header(normalize_header(cell), rules)
            if field_name:
                column_map[field_name] = index
        if column_map:
            logger.info(f"Found headers at row {i + 1}, column mapping: {column_map}")
            return column_map, i

    raise HeaderNotFoundError(
        "Could not find valid headers in Excel file. "
        "Expected columns for employee number, name, craft, and rate."
    )


# ── Budget breakdown columns ──

BUDGET_COLUMN_ALIASES: dict[str, list[str]] = {
    "discipline": ["discipline", "work_discipline", "category", "work_category"],
    "costType": ["cost_type", "costtype", "type", "cost_category", "costcategory"],
    "manhours": ["manhours", "man_hours", "hours", "mh", "estimated_hours"],
    "value": ["value", "amount", "cost", "total", "budget", "dollars"],
    "description": ["description", "desc", "notes", "comments"],
}


def normalize_column_name(name: Any) -> str:
    """'Cost Type' / 'cost-type' / ' COST_TYPE ' -> 'cost_type'."""
    text = str(name or "").lower().strip()
    text = re.sub(r"[\s_-]+", "_", text)
    return re.sub(r"[^a-z0-9_]", "", text)


def map_budget_columns(header: list[Any]) -> ColumnMap:
    """Map budget fields to column indexes; the left-most matching column wins."""
    normalized = [normalize_column_name(h) for h in header]
    column_map: ColumnMap = {}
    for field_name, aliases in BUDGET_COLUMN_ALIASES.items():
        for index, name in enumerate(normalized):
            if name in aliases:
                column_map[field_name] = index
                break
    return column_map
