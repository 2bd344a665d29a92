"""
Audit trail and import-run tracking.

Every importer writes an audit_log entry for what it changed and a
data_imports row per affected project, which the project dashboards use
to flag stale data ("last PO import was 9 days ago").
"""

import hashlib
import logging
from datetime import datetime
from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import AuditLog, DataImport, Project

logger = logging.getLogger(__name__)

MAX_STORED_ERRORS = 100

# data_imports.import_type -> projects column stamped on success
LAST_IMPORT_COLUMNS = {
    "budget": "last_budget_import_at",
    "po": "last_po_import_at",
    "employee": "last_employee_import_at",
}


def file_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def record_audit(
    db: Session,
    user_id: Optional[int],
    action: str,
    entity_type: str,
    entity_id: Any = None,
    changes: Optional[dict] = None,
) -> AuditLog:
    """Append an audit entry (flushed, not committed)."""
    entry = AuditLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        changes=jsonable_encoder(changes) if changes is not None else None,
    )
    db.add(entry)
    db.flush()
    return entry


def record_data_import(
    db: Session,
    project_id: int,
    import_type: str,
    status: str,
    user_id: int,
    file_name: Optional[str] = None,
    content: Optional[bytes] = None,
    records_processed: int = 0,
    records_failed: int = 0,
    errors: Optional[list] = None,
    error_message: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> DataImport:
    """Record one import run for a project and stamp the project's freshness column."""
    error_details = None
    if errors:
        error_details = {
            "errors": jsonable_encoder(errors[:MAX_STORED_ERRORS]),
            "total_errors": len(errors),
        }

    record = DataImport(
        project_id=project_id,
        import_type=import_type,
        import_status=status,
        imported_by=user_id,
        file_name=file_name,
        file_hash=file_hash(content) if content else None,
        records_processed=records_processed,
        records_failed=records_failed,
        error_message=error_message,
        error_details=error_details,
        import_metadata=jsonable_encoder(metadata or {}),
    )
    db.add(record)

    column = LAST_IMPORT_COLUMNS.get(import_type)
    if column and status != "failed":
        project = db.get(Project, project_id)
        if project is not None:
            setattr(project, column, datetime.utcnow())

    db.flush()
    return record


def track_failed_import(
    db: Session,
    project_id: Optional[int],
    import_type: str,
    user_id: Optional[int],
    file_name: Optional[str],
    error_message: str,
    metadata: Optional[dict] = None,
) -> None:
    """
    Record a failed import and commit it on its own.

    Called after the import's own work was rolled back. Problems writing the
    record are logged rather than masking the original failure.
    """
    if not project_id or not user_id:
        return
    try:
        record_data_import(
            db,
            project_id=project_id,
            import_type=import_type,
            status="failed",
            user_id=user_id,
            file_name=file_name,
            error_message=error_message,
            metadata=metadata,
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error tracking failed {import_type} import for project {project_id}: {e}")
