"""
Result payload shared by every importer.
"""

from typing import Any, Optional
from pydantic import BaseModel, Field


class PersistenceError(Exception):
    """The database rejected an import write; the transaction was rolled back."""


class ProjectNotFoundError(LookupError):
    """The target project does not exist."""


class RowError(BaseModel):
    row: int  # 1-based spreadsheet row; 0 for errors not tied to a single row
    message: str
    data: Optional[Any] = None


class ImportResult(BaseModel):
    success: bool = True
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[RowError] = Field(default_factory=list)

    def add_error(self, row: int, message: str, data: Any = None, skipped: bool = True):
        self.errors.append(RowError(row=row, message=message, data=data))
        if skipped:
            self.skipped += 1

    @property
    def status(self) -> str:
        """Import status as stored in data_imports."""
        if not self.success:
            return "failed"
        return "completed_with_errors" if self.errors else "success"


class BudgetImportResult(ImportResult):
    import_batch_id: Optional[str] = None
    positional: bool = False
    sheet: Optional[str] = None


class EmployeeImportResult(ImportResult):
    total: int = 0
    mode: str = "update"
    craft_types: Optional[dict] = None


class POImportResult(ImportResult):
    line_items_created: int = 0
    total_rows: int = 0
    total_pos: int = 0
    import_ids: list[int] = Field(default_factory=list)
