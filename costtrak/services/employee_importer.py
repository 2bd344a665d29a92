"""
Employee Roster Importer

Reads a payroll/HR roster export, finds the sheet and header row that look
like employee data, and creates or updates employees.

Modes:
- "update" (default): new employees are created; existing ones get their
  base rate, category and craft type refreshed and blank optional fields
  filled in. Nothing that already has a value is overwritten.
- "create-only": existing employees are reported as row errors.

Pay grade codes found in the craft column become craft types automatically,
so a roster can introduce new crafts without a separate setup step.
"""

import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import CraftType, Employee
from .audit import record_audit
from .header_mapper import EMPLOYEE_HEADER_RULES, ColumnMap, map_header_row
from .import_result import EmployeeImportResult, PersistenceError
from .value_parser import parse_numeric_value, parse_string_value
from .workbook import EMPLOYEE_SHEET_KEYWORDS, SheetNotFoundError, locate_sheet, read_workbook

logger = logging.getLogger(__name__)

IMPORT_MODES = ("update", "create-only")
EMPLOYEE_CATEGORIES = ("Direct", "Indirect", "Staff")

DEFAULT_CRAFT_TYPES = {
    "direct": ("DIRECT", "Direct Labor"),
    "indirect": ("INDIRECT", "Indirect Labor"),
    "staff": ("STAFF", "Staff Labor"),
}
DEFAULT_CRAFT_CODES = {code for code, _ in DEFAULT_CRAFT_TYPES.values()}

# Optional fields only filled in on update when the stored value is blank
FILL_IF_BLANK = {
    "payroll_name": "payroll_name",
    "legal_middle_name": "middle_name",
    "class_code": "class_code",
    "job_title_description": "job_title",
    "location_code": "location_code",
    "location_description": "location_description",
}


def _row_has_data(row: list[Any]) -> bool:
    return bool(row) and any(parse_string_value(cell) for cell in row)


def _col(row: list[Any], column_map: ColumnMap, field: str) -> str:
    index = column_map.get(field)
    if index is None or index >= len(row):
        return ""
    return parse_string_value(row[index])


def split_full_name(full_name: str) -> tuple[str, str]:
    """'Smith, John' or 'John Smith' -> (first, last)."""
    if "," in full_name:
        parts = [p.strip() for p in full_name.split(",")]
        return (parts[1] if len(parts) > 1 else ""), parts[0]
    parts = full_name.split()
    return (parts[0] if parts else ""), " ".join(parts[1:])


def format_employee_number(number: str) -> str:
    """Employee numbers are stored with a leading 'T'."""
    return number if number.startswith("T") else f"T{number}"


def parse_employee_row(row: list[Any], column_map: ColumnMap) -> dict:
    """Extract employee fields from one roster row using the header mapping."""
    first_name, last_name = "", ""
    if "firstName" in column_map and "lastName" in column_map:
        first_name = _col(row, column_map, "firstName")
        last_name = _col(row, column_map, "lastName")
    elif "fullName" in column_map:
        first_name, last_name = split_full_name(_col(row, column_map, "fullName"))

    base_rate = 0.0
    if "rate" in column_map and column_map["rate"] < len(row):
        base_rate = parse_numeric_value(row[column_map["rate"]])

    category = "Direct"
    if "category" in column_map:
        value = _col(row, column_map, "category")
        if value in EMPLOYEE_CATEGORIES:
            category = value

    return {
        "employee_number": _col(row, column_map, "employeeNumber"),
        "first_name": first_name,
        "last_name": last_name,
        "payroll_name": _col(row, column_map, "payrollName"),
        "middle_name": _col(row, column_map, "middleName"),
        "craft_code": _col(row, column_map, "craft"),
        "base_rate": base_rate,
        "category": category,
        "is_direct": category == "Direct",
        "class_code": _col(row, column_map, "class"),
        "job_title": _col(row, column_map, "jobTitle"),
        "location_code": _col(row, column_map, "locationCode"),
        "location_description": _col(row, column_map, "locationDescription"),
    }


def ensure_default_craft_types(db: Session) -> dict[str, CraftType]:
    """Make sure DIRECT / INDIRECT / STAFF exist. Returns them by category."""
    defaults = {}
    for category, (code, name) in DEFAULT_CRAFT_TYPES.items():
        craft = (
            db.query(CraftType)
            .filter(CraftType.code == code, CraftType.category == category, CraftType.is_active.is_(True))
            .first()
        )
        if not craft:
            craft = CraftType(code=code, name=name, category=category, is_active=True)
            db.add(craft)
            db.flush()
            logger.info(f"Created default craft type {code}")
        defaults[category] = craft
    return defaults


def create_craft_types_from_file(
    db: Session,
    rows: list[list[Any]],
    header_row: int,
    column_map: ColumnMap,
) -> dict:
    """Create craft types for pay grade codes that appear in the roster."""
    summary = {"created": 0, "errors": []}
    if "craft" not in column_map:
        return summary

    codes = []
    for row in rows[header_row + 1:]:
        if not _row_has_data(row):
            continue
        code = _col(row, column_map, "craft").upper()
        if code and code not in DEFAULT_CRAFT_CODES and code not in codes:
            codes.append(code)

    existing = {c for (c,) in db.query(CraftType.code).filter(CraftType.code.in_(codes))} if codes else set()
    for code in codes:
        if code in existing:
            continue
        try:
            with db.begin_nested():
                db.add(CraftType(code=code, name=code, category="direct", is_active=True))
            summary["created"] += 1
        except SQLAlchemyError as e:
            logger.warning(f"Failed to create craft type {code}: {e}")
            summary["errors"].append({"craft": code, "error": "Failed to create craft type"})
    return summary


def import_employees(
    db: Session,
    user_id: int,
    content: bytes,
    filename: Optional[str] = None,
    mode: str = "update",
) -> EmployeeImportResult:
    """
    Import an employee roster and commit.

    Raises ImportFileError subclasses for unreadable files or missing headers,
    PersistenceError if the batch insert of new employees fails.
    """
    if mode not in IMPORT_MODES:
        raise ValueError(f"Unknown import mode: {mode}")

    sheets = read_workbook(content, filename)
    sheet = locate_sheet(sheets, keywords=EMPLOYEE_SHEET_KEYWORDS).sheet
    rows = sheet.rows
    if len(rows) < 2:
        raise SheetNotFoundError("No employee data found in Excel file. Please check the file format.")

    column_map, header_row = map_header_row(rows, EMPLOYEE_HEADER_RULES)
    logger.info(f"Importing employees from {filename!r}, sheet '{sheet.name}', mode={mode}")

    craft_defaults = ensure_default_craft_types(db)
    craft_summary = create_craft_types_from_file(db, rows, header_row, column_map)
    craft_by_code = {
        c.code.upper(): c
        for c in db.query(CraftType).filter(CraftType.is_active.is_(True)).all()
    }

    result = EmployeeImportResult(mode=mode)
    to_create: list[dict] = []
    to_update: list[tuple[Employee, dict, int]] = []
    seen_numbers = set()

    for i in range(header_row + 1, len(rows)):
        row = rows[i]
        row_number = i + 1
        if not _row_has_data(row):
            continue
        result.total += 1

        fields = parse_employee_row(row, column_map)
        raw_number = fields["employee_number"]
        if not raw_number or not fields["first_name"] or not fields["last_name"]:
            result.add_error(
                row_number,
                "Missing required fields (employee number, first name, or last name)",
                {"employee_number": raw_number or "unknown"},
            )
            continue

        number = format_employee_number(raw_number)
        if number in seen_numbers:
            result.add_error(row_number, "Duplicate employee number in file", {"employee_number": number})
            continue
        seen_numbers.add(number)

        existing = db.query(Employee).filter(Employee.employee_number == number).first()
        if existing and mode == "create-only":
            result.add_error(row_number, "Employee already exists", {"employee_number": number})
            continue

        craft = craft_by_code.get(fields["craft_code"].upper()) if fields["craft_code"] else None
        if craft is None:
            craft = craft_defaults.get(fields["category"].lower())
        if craft is None:
            result.add_error(
                row_number,
                f"Unable to determine craft type for category: {fields['category']}",
                {"employee_number": number},
            )
            continue

        if existing:
            updates = {
                "base_rate": fields["base_rate"] or existing.base_rate,
                "category": fields["category"],
                "is_direct": fields["is_direct"],
                "craft_type_id": craft.id,
            }
            for column, key in FILL_IF_BLANK.items():
                if not getattr(existing, column) and fields[key]:
                    updates[column] = fields[key]
            to_update.append((existing, updates, row_number))
        else:
            to_create.append({
                "employee_number": number,
                "first_name": fields["first_name"],
                "last_name": fields["last_name"],
                "payroll_name": fields["payroll_name"] or None,
                "legal_middle_name": fields["middle_name"] or None,
                "craft_type_id": craft.id,
                "base_rate": fields["base_rate"] or 0,
                "category": fields["category"],
                "class_code": fields["class_code"] or None,
                "job_title_description": fields["job_title"] or None,
                "location_code": fields["location_code"] or None,
                "location_description": fields["location_description"] or None,
                "is_direct": fields["is_direct"],
                "is_active": True,
            })

    # Batch create: all or nothing
    if to_create:
        try:
            db.add_all([Employee(**values) for values in to_create])
            db.flush()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Batch create of {len(to_create)} employees failed: {e}")
            raise PersistenceError(f"Failed to create employees: {getattr(e, 'orig', None) or e}") from e
        result.imported = len(to_create)
        record_audit(
            db,
            user_id=user_id,
            action="import",
            entity_type="employees",
            entity_id=user_id,
            changes={
                "filename": filename,
                "mode": mode,
                "imported": result.imported,
                "skipped": result.skipped,
                "total": result.total,
            },
        )

    # Updates one at a time so a bad row doesn't sink the rest
    for employee, updates, row_number in to_update:
        try:
            with db.begin_nested():
                for column, value in updates.items():
                    setattr(employee, column, value)
                db.flush()
        except SQLAlchemyError as e:
            logger.warning(f"Failed to update employee {employee.employee_number}: {e}")
            result.add_error(
                0, "Failed to update employee", {"employee_number": employee.employee_number}, skipped=False
            )
            continue
        result.updated += 1
        record_audit(
            db,
            user_id=user_id,
            action="update",
            entity_type="employee",
            entity_id=employee.id,
            changes={"employee_number": employee.employee_number, "updates": updates},
        )

    db.commit()

    if craft_summary["created"] or craft_summary["errors"]:
        result.craft_types = craft_summary
    result.success = (result.imported + result.updated) > 0

    logger.info(
        f"Employee import complete: {result.imported} created, {result.updated} updated, "
        f"{result.skipped} skipped of {result.total}"
    )
    return result
