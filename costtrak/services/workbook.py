"""
Workbook loading and sheet selection for uploaded import files.

Uploads arrive as raw bytes. Excel files (.xlsx via openpyxl, .xls via xlrd)
are read through pandas; CSV exports go through the csv module because ICS
logs have ragged metadata rows that trip up pandas' column inference.

Every sheet is flattened to a plain grid (list of rows, each a list of
native Python values with blanks as None) so the importers never have to
care where the data came from.
"""

import csv
import io
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import pandas as pd

from .value_parser import is_blank

logger = logging.getLogger(__name__)

BUDGETS_SHEET = "BUDGETS"
HEADER_SCAN_ROWS = 10
EMPLOYEE_SHEET_KEYWORDS = ("employee", "name", "id", "number", "craft", "rate")

EXCEL_EXTENSIONS = (".xlsx", ".xlsm", ".xls")
CSV_EXTENSIONS = (".csv",)


class ImportFileError(Exception):
    """A file-structure problem that aborts an import before any row is read."""


class WorkbookReadError(ImportFileError):
    pass


class SheetNotFoundError(ImportFileError):
    pass


@dataclass
class Sheet:
    name: str
    rows: list[list[Any]] = field(default_factory=list)


@dataclass
class SheetSelection:
    sheet: Sheet
    positional: bool = False  # True for the fixed-column BUDGETS layout


def _clean_cell(value: Any) -> Any:
    """Convert pandas/numpy cell values to plain Python, blanks to None."""
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, pd.Timestamp):
        return None if pd.isna(value) else value.to_pydatetime()
    if hasattr(value, "item") and not isinstance(value, (str, bytes)):
        # numpy scalar (int64, float64, bool_)
        value = value.item()
        if isinstance(value, float) and math.isnan(value):
            return None
    return value


def _frame_to_rows(df: pd.DataFrame) -> list[list[Any]]:
    """Grid rows starting at the first non-blank row, like the sheet's used range."""
    return _drop_leading_blank_rows(
        [_clean_cell(v) for v in record] for record in df.itertuples(index=False, name=None)
    )


def _drop_leading_blank_rows(rows) -> list[list[Any]]:
    kept = []
    for row in rows:
        if not kept and all(is_blank(v) for v in row):
            continue
        kept.append(row)
    return kept


def _read_excel(content: bytes) -> list[Sheet]:
    frames = pd.read_excel(io.BytesIO(content), sheet_name=None, header=None, dtype=object)
    return [Sheet(name=str(name), rows=_frame_to_rows(df)) for name, df in frames.items()]


def _read_csv(content: bytes, name: str) -> list[Sheet]:
    text = content.decode("utf-8-sig", errors="replace")
    reader = csv.reader(io.StringIO(text))
    rows = _drop_leading_blank_rows([cell if cell != "" else None for cell in row] for row in reader)
    return [Sheet(name=name, rows=rows)]


def read_workbook(content: bytes, filename: Optional[str] = None) -> list[Sheet]:
    """
    Load an uploaded file into an ordered list of sheets.

    Raises WorkbookReadError if the bytes cannot be read as a workbook/CSV.
    """
    name = (filename or "").lower()
    if not content:
        raise WorkbookReadError("Uploaded file is empty")

    try:
        if name.endswith(CSV_EXTENSIONS):
            sheets = _read_csv(content, name=filename or "csv")
        else:
            sheets = _read_excel(content)
    except Exception as e:
        logger.warning(f"Could not read workbook {filename!r}: {e}")
        raise WorkbookReadError(
            "Failed to parse file. Please ensure it is a valid .xlsx, .xls or .csv file."
        ) from e

    if not sheets:
        raise WorkbookReadError("Workbook contains no sheets")

    logger.debug(f"Read {filename!r}: sheets={[s.name for s in sheets]}")
    return sheets


def row_mentions(row: Iterable[Any], keywords: Iterable[str]) -> bool:
    """True if any non-blank cell's lower-cased text contains one of the keywords."""
    for cell in row:
        if cell is None:
            continue
        text = str(cell).lower()
        if any(k in text for k in keywords):
            return True
    return False


def locate_sheet(
    sheets: list[Sheet],
    keywords: Optional[Iterable[str]] = None,
    scan_rows: int = HEADER_SCAN_ROWS,
) -> SheetSelection:
    """
    Pick the sheet to parse.

    1. A sheet literally named BUDGETS wins and switches to positional parsing.
    2. With keywords, the first sheet whose first `scan_rows` rows mention
       one of them is used; no match raises SheetNotFoundError.
    3. Otherwise the first sheet is used.
    """
    if not sheets:
        raise SheetNotFoundError("Workbook contains no sheets")

    for sheet in sheets:
        if sheet.name == BUDGETS_SHEET:
            logger.info(f"Using sheet '{BUDGETS_SHEET}' (positional layout)")
            return SheetSelection(sheet=sheet, positional=True)

    if keywords is None:
        return SheetSelection(sheet=sheets[0])

    keywords = tuple(k.lower() for k in keywords)
    for sheet in sheets:
        for i, row in enumerate(sheet.rows[:scan_rows]):
            if row and row_mentions(row, keywords):
                logger.info(f"Found header-bearing data in sheet '{sheet.name}' at row {i + 1}")
                return SheetSelection(sheet=sheet)

    raise SheetNotFoundError(
        "No employee data found in Excel file. Please check the file format."
    )
