"""
ICS PO Log Importer

The ICS purchasing system exports a CSV with two metadata rows, a header
row, then one row per PO line (a PO with three invoices appears three
times). Rows are grouped back into purchase orders:

- PO header fields come from the first row of the group
- every row with an Invoice/Ticket becomes a line item
- invoiced_amount / total_amount = sum of the line items

Existing POs (same project + PO number) are updated in place and their
line items rebuilt, so re-importing the latest log is always safe.
"""

import logging
import re
from datetime import date, datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import POLineItem, Project, PurchaseOrder
from .audit import record_audit, record_data_import
from .import_result import POImportResult, ProjectNotFoundError
from .value_parser import parse_numeric_value, parse_string_value
from .workbook import ImportFileError, read_workbook

logger = logging.getLogger(__name__)

METADATA_ROWS = 2  # header is on row 3
FIRST_DATA_ROW = METADATA_ROWS + 2  # 1-based sheet row of the first data row

COST_CENTER_CATEGORIES = {
    "2000": "EQUIPMENT",
    "3000": "MATERIALS",
    "4000": "SUBCONTRACTS",
    "5000": "SMALL TOOLS & CONSUMABLES",
}

STATUS_MAP = {
    "active": "approved",
    "cancelled": "cancelled",
    "completed": "completed",
}


class ICSRow(BaseModel):
    """One line of the ICS PO log. Aliases are the exact CSV column names."""

    job_no: str = Field(..., min_length=1, alias="Job No.")
    po_number: str = Field(..., min_length=1, alias="PO Number")
    generation_date: Optional[str] = Field(None, alias="Generation Date")
    requestor: str = Field("", alias="Requestor")
    sub_cost_code: str = Field("", alias="Sub Cost Code")
    def_contract_extra: str = Field("", alias="Def. Contr./Extra")
    vendor: str = Field(..., min_length=1, alias="Vendor")
    wo_pmo: str = Field("", alias="WO/PMO")
    cost_center: str = Field("", alias="Cost Center")
    sub_cc: str = Field("", alias="Sub CC")
    subsub_cc: str = Field("", alias="SubSub CC")
    est_po_value: Union[float, str] = Field(..., alias="Est. PO Value")
    po_status: str = Field("Active", alias="PO Status")
    po_comments: str = Field("", alias=" PO Comments")
    invoice_ticket: str = Field("", alias="Invoice/Ticket")
    invoice_date: Optional[str] = Field(None, alias="Inv. Date")
    contract_extra: str = Field("", alias="Contract/Extra")
    line_item_value: Union[float, str] = Field(..., alias="Line Item Value")
    fto_sent_date: Optional[str] = Field(None, alias="FTO Sent Date")
    fto_return_date: Optional[str] = Field(None, alias="FTO Ret. Date")
    bb_date: Optional[str] = Field(None, alias=" BB Date")
    material_description: str = Field("", alias="Material Description")
    comments: str = Field("", alias="Comments")


def clean_po_number(po_number: str) -> str:
    """'PO-1001 (Active)' -> 'PO-1001'."""
    return re.sub(r"\s*\([^)]*\)\s*$", "", po_number).strip()


def map_status(ics_status: str) -> str:
    return STATUS_MAP.get((ics_status or "").strip().lower(), "approved")


def parse_ics_date(value: Optional[str]) -> Optional[date]:
    """ICS dates are YYYY-MM-DD; blanks and 0000-00-00 mean 'not set'."""
    if not value or not value.strip() or value.strip() == "0000-00-00":
        return None
    text = value.strip()[:10]
    try:
        return datetime.strptime(text, "%Y-%m-%d").date()
    except ValueError:
        return None


def _row_to_record(headers: list[str], row: list[Any]) -> dict[str, Any]:
    """Pair header names with cell values, blanks as ''."""
    record = {}
    for index, header in enumerate(headers):
        if not header:
            continue
        value = row[index] if index < len(row) else None
        if isinstance(value, (int, float)) and not isinstance(value, bool) and header not in (
            "Est. PO Value", "Line Item Value"
        ):
            value = parse_string_value(value)
        elif isinstance(value, (datetime, date)):
            value = value.strftime("%Y-%m-%d")
        record[header] = "" if value is None else value
    return record


def group_rows(
    records: list[tuple[int, dict]],
    result: POImportResult,
) -> dict[str, list[ICSRow]]:
    """Validate each row and group valid ones by job number + cleaned PO number."""
    groups: dict[str, list[ICSRow]] = {}
    for row_number, record in records:
        try:
            row = ICSRow.model_validate(record)
        except ValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            field = ".".join(str(p) for p in first.get("loc", ()))
            result.add_error(row_number, f"Validation error: {field} {first.get('msg', '')}".strip(), record)
            continue
        key = f"{row.job_no.strip()}-{clean_po_number(row.po_number)}"
        groups.setdefault(key, []).append(row)
    return groups


def _po_values(first: ICSRow, project_id: int, po_number: str, user_id: int) -> dict:
    po_value = parse_numeric_value(first.est_po_value)
    cost_center = first.cost_center.strip()
    return {
        "project_id": project_id,
        "po_number": po_number,
        "vendor_name": first.vendor.strip(),
        "description": first.po_comments.strip() or None,
        "po_value": po_value,
        "committed_amount": po_value,  # starts at the PO value, edited later
        "status": map_status(first.po_status),
        "generation_date": parse_ics_date(first.generation_date),
        "requestor": first.requestor or None,
        "sub_cost_code": first.sub_cost_code or None,
        "contract_extra_type": first.def_contract_extra or None,
        "wo_pmo": first.wo_pmo or None,
        "cost_center": cost_center or None,
        "budget_category": COST_CENTER_CATEGORIES.get(cost_center),
        "sub_cc": first.sub_cc or None,
        "subsub_cc": first.subsub_cc or None,
        "fto_sent_date": parse_ics_date(first.fto_sent_date),
        "fto_return_date": parse_ics_date(first.fto_return_date),
        "bb_date": parse_ics_date(first.bb_date),
        "created_by": user_id,
    }


def build_line_items(rows: list[ICSRow]) -> tuple[list[dict], float]:
    """Line items for rows carrying an invoice/ticket, plus their total."""
    items = []
    total = 0.0
    for i, row in enumerate(rows):
        ticket = row.invoice_ticket.strip()
        if not ticket:
            continue
        amount = parse_numeric_value(row.line_item_value)
        total += amount
        items.append({
            "line_number": i + 1,
            "description": row.material_description or f"Invoice {ticket}",
            "total_amount": amount,
            "invoice_ticket": ticket,
            "invoice_date": parse_ics_date(row.invoice_date),
            "contract_extra_type": row.contract_extra or None,
            "material_description": row.material_description or None,
            "category": row.contract_extra or "Contract",
        })
    return items, total


def _upsert_purchase_order(db: Session, values: dict, rows: list[ICSRow]) -> tuple[PurchaseOrder, bool, int]:
    """Create or update one PO and rebuild its line items. Returns (po, created, line item count)."""
    po = (
        db.query(PurchaseOrder)
        .filter(
            PurchaseOrder.project_id == values["project_id"],
            PurchaseOrder.po_number == values["po_number"],
        )
        .first()
    )
    created = po is None
    if created:
        po = PurchaseOrder(**values)
        db.add(po)
    else:
        for column, value in values.items():
            if column != "created_by":
                setattr(po, column, value)
        po.line_items.clear()
    db.flush()

    items, invoiced = build_line_items(rows)
    for item in items:
        po.line_items.append(POLineItem(**item))
    if items:
        po.invoiced_amount = invoiced
        po.total_amount = invoiced
    db.flush()
    return po, created, len(items)


def import_purchase_orders(
    db: Session,
    user_id: int,
    content: bytes,
    filename: Optional[str] = None,
    project_id_override: Optional[int] = None,
) -> POImportResult:
    """Import an ICS PO log and commit. Raises ImportFileError for unusable files."""
    sheets = read_workbook(content, filename)
    rows = sheets[0].rows
    if len(rows) < METADATA_ROWS + 1:
        raise ImportFileError("Invalid ICS PO Log format. File must have header metadata and data rows.")

    # Not stripped: ICS puts a leading space on some column names (" PO Comments")
    headers = [str(h) if h is not None else "" for h in rows[METADATA_ROWS]]

    records = []
    for i, row in enumerate(rows[METADATA_ROWS + 1:]):
        record = _row_to_record(headers, row or [])
        if record.get("Job No.") and record.get("PO Number"):
            records.append((i + FIRST_DATA_ROW, record))

    if not records:
        raise ImportFileError("No valid data rows found in file")

    result = POImportResult(total_rows=len(records))
    groups = group_rows(records, result)
    result.total_pos = len(groups)
    logger.info(f"Importing ICS PO log {filename!r}: {len(records)} rows, {len(groups)} POs")

    project_ids = {p.job_number: p.id for p in db.query(Project.job_number, Project.id)}
    if project_id_override is not None and db.get(Project, project_id_override) is None:
        raise ProjectNotFoundError(f"Project {project_id_override} not found")

    projects_in_import: list[int] = []
    for key, group in groups.items():
        first = group[0]
        job_no = first.job_no.strip()
        po_number = clean_po_number(first.po_number)

        project_id = project_id_override or project_ids.get(job_no)
        if project_id is None:
            result.add_error(0, f"Project with job number '{job_no}' not found", {"group": key, "job_no": job_no})
            continue
        if project_id not in projects_in_import:
            projects_in_import.append(project_id)

        try:
            with db.begin_nested():
                _, created, items = _upsert_purchase_order(
                    db, _po_values(first, project_id, po_number, user_id), group
                )
        except SQLAlchemyError as e:
            logger.warning(f"Failed to import PO {po_number} ({key}): {e}")
            result.add_error(0, f"Failed to import PO {po_number}: {getattr(e, 'orig', None) or e}", {"group": key})
            continue

        result.line_items_created += items
        if created:
            result.imported += 1
        else:
            result.updated += 1

    result.success = not result.errors or (result.imported + result.updated) > 0
    status = "success" if not result.errors else (
        "completed_with_errors" if (result.imported + result.updated) > 0 else "failed"
    )

    for project_id in projects_in_import:
        record = record_data_import(
            db,
            project_id=project_id,
            import_type="po",
            status=status,
            user_id=user_id,
            file_name=filename,
            content=content,
            records_processed=result.imported + result.updated,
            records_failed=result.skipped,
            errors=[e.model_dump() for e in result.errors],
            metadata={
                "import_source": "ics_po_log",
                "file_size": len(content),
                "total_rows": result.total_rows,
                "total_pos": result.total_pos,
                "imported": result.imported,
                "updated": result.updated,
                "line_items_created": result.line_items_created,
                "project_override": project_id_override is not None,
            },
        )
        result.import_ids.append(record.id)

    record_audit(
        db,
        user_id=user_id,
        action="import_ics",
        entity_type="purchase_orders",
        entity_id=user_id,
        changes={
            "filename": filename,
            "total_rows": result.total_rows,
            "total_pos": result.total_pos,
            "imported": result.imported,
            "updated": result.updated,
            "skipped": result.skipped,
            "line_items_created": result.line_items_created,
            "errors": len(result.errors),
            "import_record_ids": result.import_ids,
            "projects_affected": projects_in_import,
        },
    )
    db.commit()

    logger.info(
        f"PO import complete: {result.imported} created, {result.updated} updated, "
        f"{result.line_items_created} line items, {len(result.errors)} errors"
    )
    return result
