"""
Project Budget Breakdown Importer

Turns an estimating workbook into project_budget_breakdowns rows, one per
(project, discipline, cost type).

Two sheet layouts are supported:
- BUDGETS sheet (positional): discipline in column B, cost type description
  in column D, manhours in E, value in F. A discipline heading applies to
  every row below it until the next heading, so rows are walked in order
  carrying the current discipline forward.
- Anything else (header-based): first row holds column names, matched
  against BUDGET_COLUMN_ALIASES; each row stands on its own and is validated.

Every data row is classified exactly once into a RowOutcome (emitted,
skipped, or error) and the ImportResult counts are derived from that list.

Pipeline:
    read_workbook -> locate_sheet -> walk_budgets_sheet | read_budget_rows
    -> aggregate_rows -> persist_breakdowns -> data_imports + audit_log
"""

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import config
from ..models import ProjectBudgetBreakdown
from .audit import record_audit, record_data_import
from .header_mapper import map_budget_columns
from .import_result import BudgetImportResult, PersistenceError, RowError
from .value_parser import (
    is_blank,
    parse_currency_cell,
    parse_manhours_cell,
    parse_numeric_value,
    parse_string_value,
)
from .workbook import ImportFileError, locate_sheet, read_workbook

logger = logging.getLogger(__name__)

IMPORT_SOURCE = "excel_import"
UPSERT_CHUNK_SIZE = 500

# BUDGETS sheet column positions (0-based)
DISCIPLINE_COL = 1
DESCRIPTION_COL = 3
MANHOURS_COL = 4
VALUE_COL = 5


class NoValidRowsError(ImportFileError):
    """Parsing finished but nothing survived validation; storage is untouched."""

    def __init__(self, message: str, result: BudgetImportResult):
        super().__init__(message)
        self.result = result


class NegativeValuePolicy(str, Enum):
    SKIP = "skip"  # drop silently
    REPORT = "report"  # drop and attach a row error

    @classmethod
    def from_config(cls) -> "NegativeValuePolicy":
        try:
            return cls(config.NEGATIVE_VALUE_POLICY)
        except ValueError:
            logger.warning(
                f"Unknown negative value policy {config.NEGATIVE_VALUE_POLICY!r}, using 'skip'"
            )
            return cls.SKIP


class OutcomeKind(str, Enum):
    EMITTED = "emitted"
    SKIPPED = "skipped"
    ERROR = "error"


class SkipReason(str, Enum):
    EMPTY_ROW = "empty_row"
    NO_DISCIPLINE = "no_discipline"
    TOTAL_LINE = "total_line"
    NEGATIVE_VALUE = "negative_value"
    VALIDATION_FAILED = "validation_failed"


@dataclass
class BudgetLine:
    discipline: str
    cost_type: str
    manhours: Optional[float]
    value: float
    description: Optional[str] = None


@dataclass
class RowOutcome:
    row: int  # 1-based sheet row
    kind: OutcomeKind
    line: Optional[BudgetLine] = None
    reason: Optional[SkipReason] = None
    message: Optional[str] = None
    data: Any = None

    @classmethod
    def emitted(cls, row: int, line: BudgetLine) -> "RowOutcome":
        return cls(row=row, kind=OutcomeKind.EMITTED, line=line)

    @classmethod
    def skipped(cls, row: int, reason: SkipReason) -> "RowOutcome":
        return cls(row=row, kind=OutcomeKind.SKIPPED, reason=reason)

    @classmethod
    def error(cls, row: int, reason: SkipReason, message: str, data: Any = None) -> "RowOutcome":
        return cls(row=row, kind=OutcomeKind.ERROR, reason=reason, message=message, data=data)


def is_total_line(description: str) -> bool:
    """Subtotal / grand total lines would double count if ingested."""
    upper = description.upper()
    return "TOTAL" in upper or upper == "ALL LABOR"


def _negative_outcome(row: int, value: float, policy: NegativeValuePolicy, data: Any = None) -> RowOutcome:
    if policy == NegativeValuePolicy.REPORT:
        return RowOutcome.error(
            row, SkipReason.NEGATIVE_VALUE, f"Negative value {value:g} not imported", data
        )
    return RowOutcome.skipped(row, SkipReason.NEGATIVE_VALUE)


def _cell(row: list[Any], index: int) -> Any:
    return row[index] if index < len(row) else None


# ── Positional walker (BUDGETS sheet) ──

def walk_budgets_sheet(
    rows: list[list[Any]],
    negative_policy: NegativeValuePolicy = NegativeValuePolicy.SKIP,
) -> list[RowOutcome]:
    """
    Walk a BUDGETS sheet top to bottom. Row 0 is the header and is not classified.

    The discipline cell only appears on the first row of each section, so the
    last non-empty discipline is carried forward onto the rows beneath it.
    """
    outcomes = []
    current_discipline = ""

    for i in range(1, len(rows)):
        row = rows[i] or []
        row_number = i + 1

        discipline = parse_string_value(_cell(row, DISCIPLINE_COL))
        if discipline:
            current_discipline = discipline.upper()
            logger.debug(f"Row {row_number}: found discipline {current_discipline!r}")

        description = parse_string_value(_cell(row, DESCRIPTION_COL))
        raw_value = _cell(row, VALUE_COL)

        if not description or is_blank(raw_value):
            outcomes.append(RowOutcome.skipped(row_number, SkipReason.EMPTY_ROW))
            continue

        if not current_discipline:
            outcomes.append(RowOutcome.skipped(row_number, SkipReason.NO_DISCIPLINE))
            continue

        if is_total_line(description):
            outcomes.append(RowOutcome.skipped(row_number, SkipReason.TOTAL_LINE))
            continue

        value = parse_currency_cell(raw_value)
        manhours = parse_manhours_cell(_cell(row, MANHOURS_COL))

        if value < 0:
            outcomes.append(_negative_outcome(row_number, value, negative_policy))
            continue

        outcomes.append(RowOutcome.emitted(row_number, BudgetLine(
            discipline=current_discipline,
            cost_type=description.upper(),
            manhours=manhours,
            value=value,
        )))

    return outcomes


# ── Header-based reader ──

class BudgetRowIn(BaseModel):
    discipline: str = Field(..., min_length=1)
    cost_type: str = Field(..., min_length=1, alias="costType")
    manhours: Optional[float] = None
    value: float
    description: Optional[str] = None


def _validation_message(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", ""))
    return "; ".join(parts) or "Validation error"


def read_budget_rows(
    rows: list[list[Any]],
    negative_policy: NegativeValuePolicy = NegativeValuePolicy.SKIP,
) -> list[RowOutcome]:
    """Classify the data rows of a header-based budget sheet independently of each other."""
    if not rows:
        return []

    header = rows[0]
    column_map = map_budget_columns(header)
    logger.info(f"Budget column mapping: {column_map}")
    header_names = [parse_string_value(h) or f"column_{i + 1}" for i, h in enumerate(header)]

    outcomes = []
    for i in range(1, len(rows)):
        row = rows[i] or []
        row_number = i + 1
        mapped = {name: _cell(row, index) for name, index in column_map.items()}

        if is_blank(mapped.get("discipline")) and is_blank(mapped.get("costType")):
            outcomes.append(RowOutcome.skipped(row_number, SkipReason.EMPTY_ROW))
            continue

        raw_manhours = mapped.get("manhours")
        raw_description = mapped.get("description")
        try:
            validated = BudgetRowIn(
                discipline=mapped.get("discipline"),
                costType=mapped.get("costType"),
                manhours=None if is_blank(raw_manhours) else parse_numeric_value(raw_manhours),
                value=parse_numeric_value(mapped.get("value")),
                description=None if is_blank(raw_description) else parse_string_value(raw_description),
            )
        except ValidationError as e:
            raw_data = {header_names[j]: v for j, v in enumerate(row) if j < len(header_names)}
            logger.warning(f"Row {row_number}: {_validation_message(e)}")
            outcomes.append(RowOutcome.error(
                row_number, SkipReason.VALIDATION_FAILED, _validation_message(e), raw_data
            ))
            continue

        if is_total_line(validated.cost_type.strip()):
            outcomes.append(RowOutcome.skipped(row_number, SkipReason.TOTAL_LINE))
            continue

        if validated.value < 0:
            outcomes.append(_negative_outcome(row_number, validated.value, negative_policy))
            continue

        outcomes.append(RowOutcome.emitted(row_number, BudgetLine(
            discipline=validated.discipline.strip().upper(),
            cost_type=validated.cost_type.strip().upper(),
            manhours=validated.manhours,
            value=validated.value,
            description=validated.description,
        )))

    return outcomes


def summarize_outcomes(outcomes: Iterable[RowOutcome]) -> tuple[int, list[RowError]]:
    """(skipped count, row errors). Error outcomes count as skipped too."""
    skipped = 0
    errors = []
    for outcome in outcomes:
        if outcome.kind == OutcomeKind.EMITTED:
            continue
        skipped += 1
        if outcome.kind == OutcomeKind.ERROR:
            errors.append(RowError(row=outcome.row, message=outcome.message or "", data=outcome.data))
    return skipped, errors


# ── Aggregation ──

def breakdown_key(project_id: Any, discipline: str, cost_type: str) -> str:
    return f"{project_id}|{discipline}|{cost_type}"


def _sum_manhours(a: Optional[float], b: Optional[float]) -> Optional[float]:
    if a is None and b is None:
        return None
    return (a or 0) + (b or 0)


def aggregate_rows(project_id: Any, lines: Iterable[BudgetLine]) -> dict[str, BudgetLine]:
    """
    Collapse lines sharing (project, discipline, cost type) into one.

    Values and manhours are summed (the same pairing can legitimately appear
    in several sections of a sheet); a missing description is filled from a
    later duplicate. Insertion order is preserved.
    """
    merged: dict[str, BudgetLine] = {}
    for line in lines:
        key = breakdown_key(project_id, line.discipline, line.cost_type)
        existing = merged.get(key)
        if existing is None:
            merged[key] = replace(line)
            continue
        logger.debug(f"Duplicate found for {line.discipline} - {line.cost_type}, summing values")
        existing.value += line.value
        existing.manhours = _sum_manhours(existing.manhours, line.manhours)
        if not existing.description and line.description:
            existing.description = line.description
    return merged


# ── Persistence ──

def _insert_for(db: Session):
    """Dialect-specific INSERT that supports ON CONFLICT DO UPDATE."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise PersistenceError(f"Upsert is not supported on {dialect}")
    return insert


def persist_breakdowns(
    db: Session,
    project_id: int,
    lines: Iterable[BudgetLine],
    clear_existing: bool,
    batch_id: str,
    user_id: Optional[int],
) -> tuple[int, int]:
    """
    Write aggregated lines for a project. Returns (imported, updated).

    With clear_existing every prior row of the project is deleted first.
    Otherwise rows sharing a key with an existing row replace its value
    (the incoming row wins; separate imports never accumulate).
    Runs inside the caller's transaction; nothing is committed here.
    """
    lines = list(lines)
    now = datetime.utcnow()
    records = [
        {
            "project_id": project_id,
            "discipline": line.discipline,
            "cost_type": line.cost_type,
            "manhours": line.manhours,
            "value": line.value,
            "description": line.description,
            "import_source": IMPORT_SOURCE,
            "import_batch_id": batch_id,
            "created_by": user_id,
            "created_at": now,
            "updated_at": now,
        }
        for line in lines
    ]

    try:
        if clear_existing:
            deleted = (
                db.query(ProjectBudgetBreakdown)
                .filter(ProjectBudgetBreakdown.project_id == project_id)
                .delete(synchronize_session=False)
            )
            logger.info(f"Cleared {deleted} existing budget rows for project {project_id}")
            existing_keys = set()
        else:
            existing_keys = {
                (d, c)
                for d, c in db.query(
                    ProjectBudgetBreakdown.discipline, ProjectBudgetBreakdown.cost_type
                ).filter(ProjectBudgetBreakdown.project_id == project_id)
            }

        if records:
            insert = _insert_for(db)
            for start in range(0, len(records), UPSERT_CHUNK_SIZE):
                stmt = insert(ProjectBudgetBreakdown).values(records[start:start + UPSERT_CHUNK_SIZE])
                stmt = stmt.on_conflict_do_update(
                    index_elements=["project_id", "discipline", "cost_type"],
                    set_={
                        "manhours": stmt.excluded.manhours,
                        "value": stmt.excluded.value,
                        "description": stmt.excluded.description,
                        "import_source": stmt.excluded.import_source,
                        "import_batch_id": stmt.excluded.import_batch_id,
                        "created_by": stmt.excluded.created_by,
                        "updated_at": stmt.excluded.updated_at,
                    },
                )
                db.execute(stmt)
        db.flush()
    except SQLAlchemyError as e:
        db.rollback()
        message = str(getattr(e, "orig", None) or e)
        logger.error(f"Error writing budget breakdowns for project {project_id}: {message}")
        raise PersistenceError(f"Database error: {message}") from e

    updated = sum(1 for line in lines if (line.discipline, line.cost_type) in existing_keys)
    return len(lines) - updated, updated


# ── Orchestration ──

def import_budget_breakdowns(
    db: Session,
    project_id: int,
    user_id: int,
    content: bytes,
    filename: Optional[str] = None,
    clear_existing: bool = False,
    negative_policy: Optional[NegativeValuePolicy] = None,
) -> BudgetImportResult:
    """
    Import a budget workbook for one project and commit.

    Raises ImportFileError subclasses for file-structure problems (nothing is
    written) and PersistenceError when the database rejects the write.
    """
    policy = negative_policy or NegativeValuePolicy.from_config()

    sheets = read_workbook(content, filename)
    selection = locate_sheet(sheets)
    sheet = selection.sheet
    logger.info(
        f"Importing budget for project {project_id} from {filename!r}, sheet '{sheet.name}' "
        f"({'positional' if selection.positional else 'header'} layout, {len(sheet.rows)} rows)"
    )

    if selection.positional:
        outcomes = walk_budgets_sheet(sheet.rows, policy)
    else:
        if len(sheet.rows) < 2:
            raise ImportFileError("No data found in Excel file")
        outcomes = read_budget_rows(sheet.rows, policy)

    skipped, errors = summarize_outcomes(outcomes)
    merged = aggregate_rows(project_id, (o.line for o in outcomes if o.kind == OutcomeKind.EMITTED))

    batch_id = str(uuid.uuid4())
    result = BudgetImportResult(
        skipped=skipped,
        errors=errors,
        import_batch_id=batch_id,
        positional=selection.positional,
        sheet=sheet.name,
    )

    if not merged:
        result.success = False
        raise NoValidRowsError("No valid budget breakdown data found", result)

    imported, updated = persist_breakdowns(
        db, project_id, merged.values(), clear_existing, batch_id, user_id
    )
    result.imported = imported
    result.updated = updated

    metadata = {
        "import_batch_id": batch_id,
        "sheet": sheet.name,
        "positional": selection.positional,
        "clear_existing": clear_existing,
        "rows_read": len(outcomes),
        "breakdowns_written": len(merged),
        "negative_value_policy": policy.value,
    }
    record_data_import(
        db,
        project_id=project_id,
        import_type="budget",
        status=result.status,
        user_id=user_id,
        file_name=filename,
        content=content,
        records_processed=imported + updated,
        records_failed=len(errors),
        errors=[e.model_dump() for e in errors],
        metadata=metadata,
    )
    record_audit(
        db,
        user_id=user_id,
        action="import",
        entity_type="project_budget_breakdowns",
        entity_id=project_id,
        changes={
            "filename": filename,
            "imported": imported,
            "updated": updated,
            "skipped": skipped,
            **metadata,
        },
    )
    db.commit()

    logger.info(
        f"Budget import complete for project {project_id}: {imported} imported, "
        f"{updated} updated, {skipped} skipped, {len(errors)} errors (batch {batch_id})"
    )
    return result


def undo_import_batch(db: Session, batch_id: str, user_id: int) -> int:
    """Delete the rows last written by an import batch. Returns the number removed."""
    rows = (
        db.query(ProjectBudgetBreakdown)
        .filter(ProjectBudgetBreakdown.import_batch_id == batch_id)
        .all()
    )
    if not rows:
        return 0
    project_ids = sorted({r.project_id for r in rows})
    for r in rows:
        db.delete(r)
    record_audit(
        db,
        user_id=user_id,
        action="undo_import",
        entity_type="project_budget_breakdowns",
        entity_id=batch_id,
        changes={"deleted": len(rows), "project_ids": project_ids},
    )
    db.commit()
    logger.info(f"Undid budget import batch {batch_id}: {len(rows)} rows removed")
    return len(rows)
