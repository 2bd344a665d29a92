"""
Project budget breakdown endpoints.
Excel budget import, per-project listing, and undo of an import batch.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_roles
from ..config import IMPORT_ROLES, UNDO_ROLES
from ..database import get_db
from ..models import Profile, Project, ProjectBudgetBreakdown
from ..services.audit import track_failed_import
from ..services.budget_importer import NoValidRowsError, import_budget_breakdowns, undo_import_batch
from ..services.import_result import BudgetImportResult, PersistenceError
from ..services.workbook import ImportFileError

logger = logging.getLogger(__name__)

router = APIRouter()


class BreakdownOut(BaseModel):
    id: int
    project_id: int
    discipline: str
    cost_type: str
    manhours: Optional[float] = None
    value: float
    description: Optional[str] = None
    import_source: Optional[str] = None
    import_batch_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DisciplineTotal(BaseModel):
    discipline: str
    value: float
    manhours: float
    lines: int


class BreakdownList(BaseModel):
    project_id: int
    breakdowns: list[BreakdownOut]
    disciplines: list[DisciplineTotal]
    total_value: float
    total_manhours: float


def _parse_project_id(project_id: Optional[str]) -> Optional[int]:
    if project_id is None or not str(project_id).strip():
        return None
    try:
        return int(str(project_id).strip())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid projectId: {project_id}")


@router.post("/import", response_model=BudgetImportResult)
async def import_budget(
    file: Optional[UploadFile] = File(None),
    projectId: Optional[str] = Form(None),
    clearExisting: Optional[str] = Form(None),
    user: Profile = Depends(require_roles(*IMPORT_ROLES["budget"])),
    db: Session = Depends(get_db),
):
    """Import a budget workbook into a project's breakdown rows."""
    project_id = _parse_project_id(projectId)
    if file is None or project_id is None:
        raise HTTPException(status_code=400, detail="Missing file or projectId")

    project = db.get(Project, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")

    clear_existing = clearExisting == "true"
    content = await file.read()
    logger.info(
        f"User {user.id} importing budget for {project.job_number} from {file.filename} "
        f"({len(content)} bytes, clear_existing={clear_existing})"
    )

    try:
        return import_budget_breakdowns(
            db,
            project_id=project.id,
            user_id=user.id,
            content=content,
            filename=file.filename,
            clear_existing=clear_existing,
        )
    except (ImportFileError, PersistenceError) as e:
        track_failed_import(db, project.id, "budget", user.id, file.filename, str(e))
        if isinstance(e, NoValidRowsError):
            raise HTTPException(status_code=400, detail={"message": str(e), "result": e.result.model_dump()})
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception(f"Budget import failed for project {project.id}: {e}")
        db.rollback()
        track_failed_import(db, project.id, "budget", user.id, file.filename, "Internal server error")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("", response_model=BreakdownList)
def list_breakdowns(
    project_id: int = Query(..., description="Project to list budget lines for"),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """A project's budget lines with per-discipline totals."""
    if not db.get(Project, project_id):
        raise HTTPException(status_code=404, detail="Project not found")

    rows = (
        db.query(ProjectBudgetBreakdown)
        .filter(ProjectBudgetBreakdown.project_id == project_id)
        .order_by(ProjectBudgetBreakdown.discipline, ProjectBudgetBreakdown.cost_type)
        .all()
    )

    totals: dict[str, DisciplineTotal] = {}
    for r in rows:
        t = totals.setdefault(r.discipline, DisciplineTotal(discipline=r.discipline, value=0, manhours=0, lines=0))
        t.value += r.value or 0
        t.manhours += r.manhours or 0
        t.lines += 1

    return BreakdownList(
        project_id=project_id,
        breakdowns=[BreakdownOut.model_validate(r) for r in rows],
        disciplines=list(totals.values()),
        total_value=round(sum(t.value for t in totals.values()), 2),
        total_manhours=round(sum(t.manhours for t in totals.values()), 2),
    )


@router.delete("/import/{batch_id}")
def undo_import(
    batch_id: str,
    user: Profile = Depends(require_roles(*UNDO_ROLES)),
    db: Session = Depends(get_db),
):
    """Remove the rows last written by an import batch."""
    deleted = undo_import_batch(db, batch_id, user.id)
    if deleted == 0:
        raise HTTPException(status_code=404, detail="No budget rows found for this import batch")
    return {"success": True, "import_batch_id": batch_id, "deleted": deleted}
