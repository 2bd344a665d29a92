"""
Purchase order import endpoint (ICS PO log).
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy.orm import Session

from ..auth import require_roles
from ..config import IMPORT_ROLES
from ..database import get_db
from ..models import Profile
from ..services.audit import track_failed_import
from ..services.import_result import POImportResult, ProjectNotFoundError
from ..services.po_importer import import_purchase_orders
from ..services.workbook import CSV_EXTENSIONS, EXCEL_EXTENSIONS, ImportFileError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/import", response_model=POImportResult)
async def import_po_log(
    file: Optional[UploadFile] = File(None),
    project_id: Optional[str] = Form(None),
    user: Profile = Depends(require_roles(*IMPORT_ROLES["po"])),
    db: Session = Depends(get_db),
):
    """Import an ICS PO log. project_id forces every PO onto one project."""
    if file is None:
        raise HTTPException(status_code=400, detail="No file provided")

    filename = file.filename or ""
    if not filename.lower().endswith(CSV_EXTENSIONS + EXCEL_EXTENSIONS):
        raise HTTPException(status_code=400, detail="Invalid file type. Please upload a CSV or Excel file.")

    override = None
    if project_id and project_id.strip():
        try:
            override = int(project_id.strip())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid project_id: {project_id}")

    content = await file.read()
    logger.info(f"User {user.id} importing ICS PO log {filename} ({len(content)} bytes)")

    try:
        return import_purchase_orders(
            db, user_id=user.id, content=content, filename=filename, project_id_override=override
        )
    except ProjectNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ImportFileError as e:
        track_failed_import(db, override, "po", user.id, filename, str(e))
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception(f"PO import failed: {e}")
        db.rollback()
        track_failed_import(db, override, "po", user.id, filename, "Internal server error")
        raise HTTPException(status_code=500, detail="Internal server error")
