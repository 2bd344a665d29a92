"""
Employee roster import endpoint.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy.orm import Session

from ..auth import require_roles
from ..config import IMPORT_ROLES
from ..database import get_db
from ..models import Profile
from ..services.employee_importer import IMPORT_MODES, import_employees
from ..services.import_result import EmployeeImportResult, PersistenceError
from ..services.workbook import ImportFileError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/import", response_model=EmployeeImportResult)
async def import_employee_roster(
    file: Optional[UploadFile] = File(None),
    mode: str = Form("update"),
    user: Profile = Depends(require_roles(*IMPORT_ROLES["employee"])),
    db: Session = Depends(get_db),
):
    """Create or update employees from a payroll roster workbook."""
    if file is None:
        raise HTTPException(status_code=400, detail="No file provided")
    if mode not in IMPORT_MODES:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown mode: {mode}. Must be one of: {', '.join(IMPORT_MODES)}",
        )

    content = await file.read()
    logger.info(f"User {user.id} importing employees from {file.filename} ({len(content)} bytes)")

    try:
        return import_employees(db, user_id=user.id, content=content, filename=file.filename, mode=mode)
    except ImportFileError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except Exception as e:
        logger.exception(f"Employee import failed: {e}")
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal server error")
