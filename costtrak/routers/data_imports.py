"""
Import history per project.
"""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..models import DataImport, Profile, Project

router = APIRouter()


class DataImportOut(BaseModel):
    id: int
    project_id: int
    import_type: str
    import_status: str
    imported_at: datetime
    imported_by: int
    file_name: Optional[str] = None
    records_processed: int = 0
    records_failed: int = 0
    error_message: Optional[str] = None
    error_details: Optional[Any] = None
    metadata: Optional[dict] = Field(None, validation_alias="import_metadata")

    class Config:
        from_attributes = True


@router.get("/{project_id}", response_model=list[DataImportOut])
def list_data_imports(
    project_id: int,
    import_type: Optional[str] = Query(None, description="budget, employee or po"),
    limit: int = Query(50, ge=1, le=500),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Most recent import runs for a project, newest first."""
    if not db.get(Project, project_id):
        raise HTTPException(status_code=404, detail="Project not found")

    query = db.query(DataImport).filter(DataImport.project_id == project_id)
    if import_type:
        query = query.filter(DataImport.import_type == import_type)

    records = query.order_by(DataImport.imported_at.desc(), DataImport.id.desc()).limit(limit).all()
    return [DataImportOut.model_validate(r) for r in records]
