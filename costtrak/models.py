"""
SQLAlchemy models for CostTrak.

Tables:
- profiles: Application users and their role (controller, ops_manager, ...)
- projects: Construction projects, keyed by job number
- project_budget_breakdowns: Budget lines per discipline/cost type (Excel import)
- craft_types: Labor craft codes (DIRECT / INDIRECT / STAFF + pay grades)
- employees: Craft employees with base rates (Excel import)
- purchase_orders / po_line_items: ICS PO log import
- data_imports: One row per import run per project (freshness / history)
- audit_log: Who did what, with a JSON change payload
"""

from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Float, Boolean, Date, DateTime,
    ForeignKey, Text, JSON, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import relationship
from .database import Base


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False)
    full_name = Column(String(200), nullable=True)
    role = Column(String(30), nullable=False, default="viewer")
    division_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<Profile {self.email} ({self.role})>"


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_number = Column(String(20), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    project_manager_id = Column(Integer, ForeignKey("profiles.id"), nullable=True)
    last_budget_import_at = Column(DateTime, nullable=True)
    last_po_import_at = Column(DateTime, nullable=True)
    last_employee_import_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    budget_breakdowns = relationship(
        "ProjectBudgetBreakdown", back_populates="project", cascade="all, delete-orphan"
    )
    purchase_orders = relationship("PurchaseOrder", back_populates="project")

    def __repr__(self):
        return f"<Project {self.job_number} {self.name}>"


class ProjectBudgetBreakdown(Base):
    __tablename__ = "project_budget_breakdowns"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    discipline = Column(String(100), nullable=False)  # Upper-cased, e.g. "PIPING"
    cost_type = Column(String(100), nullable=False)  # Upper-cased, e.g. "DIRECT LABOR"
    manhours = Column(Float, nullable=True)
    value = Column(Float, nullable=False, default=0)
    description = Column(Text, nullable=True)
    import_source = Column(String(50), default="manual")  # "manual", "excel_import"
    import_batch_id = Column(String(36), nullable=True)  # Groups rows written by one import
    created_by = Column(Integer, ForeignKey("profiles.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("project_id", "discipline", "cost_type", name="uq_budget_breakdown_key"),
        CheckConstraint("value >= 0", name="ck_budget_breakdown_positive_value"),
        Index("idx_budget_breakdowns_batch", "import_batch_id"),
    )

    # Relationships
    project = relationship("Project", back_populates="budget_breakdowns")

    def __repr__(self):
        return f"<ProjectBudgetBreakdown {self.discipline}/{self.cost_type} ${self.value}>"


class CraftType(Base):
    __tablename__ = "craft_types"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(50), unique=True, nullable=False)
    name = Column(String(100), nullable=False)
    category = Column(String(20), nullable=False)  # "direct", "indirect", "staff"
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<CraftType {self.code} ({self.category})>"


class Employee(Base):
    __tablename__ = "employees"

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_number = Column(String(50), unique=True, nullable=False, index=True)  # "T12345"
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    payroll_name = Column(String(200), nullable=True)
    legal_middle_name = Column(String(100), nullable=True)
    craft_type_id = Column(Integer, ForeignKey("craft_types.id"), nullable=False)
    base_rate = Column(Float, nullable=False, default=0)
    category = Column(String(20), nullable=False, default="Direct")  # "Direct", "Indirect", "Staff"
    class_code = Column("class", String(50), nullable=True)
    job_title_description = Column(String(200), nullable=True)
    location_code = Column(String(50), nullable=True)
    location_description = Column(String(200), nullable=True)
    is_direct = Column(Boolean, default=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    craft_type = relationship("CraftType")

    def __repr__(self):
        return f"<Employee {self.employee_number} {self.last_name}, {self.first_name}>"


class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    po_number = Column(String(50), nullable=False)
    vendor_name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    po_value = Column(Float, default=0)  # Value from the ICS log
    committed_amount = Column(Float, default=0)
    invoiced_amount = Column(Float, default=0)
    total_amount = Column(Float, default=0)
    status = Column(String(20), default="approved", nullable=False)  # draft/approved/cancelled/completed
    generation_date = Column(Date, nullable=True)
    requestor = Column(String(100), nullable=True)
    sub_cost_code = Column(String(50), nullable=True)
    contract_extra_type = Column(String(50), nullable=True)
    wo_pmo = Column(String(50), nullable=True)
    cost_center = Column(String(20), nullable=True)
    budget_category = Column(String(50), nullable=True)
    sub_cc = Column(String(20), nullable=True)
    subsub_cc = Column(String(20), nullable=True)
    fto_sent_date = Column(Date, nullable=True)
    fto_return_date = Column(Date, nullable=True)
    bb_date = Column(Date, nullable=True)
    created_by = Column(Integer, ForeignKey("profiles.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("project_id", "po_number", name="uq_purchase_order_number"),
    )

    # Relationships
    project = relationship("Project", back_populates="purchase_orders")
    line_items = relationship("POLineItem", back_populates="purchase_order", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<PurchaseOrder {self.po_number} {self.vendor_name} ${self.po_value}>"


class POLineItem(Base):
    __tablename__ = "po_line_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    purchase_order_id = Column(Integer, ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False)
    line_number = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    total_amount = Column(Float, default=0)
    invoice_ticket = Column(String(100), nullable=True)
    invoice_date = Column(Date, nullable=True)
    contract_extra_type = Column(String(50), nullable=True)
    material_description = Column(Text, nullable=True)
    category = Column(String(50), nullable=True)

    # Relationships
    purchase_order = relationship("PurchaseOrder", back_populates="line_items")

    def __repr__(self):
        return f"<POLineItem {self.invoice_ticket} ${self.total_amount}>"


class DataImport(Base):
    __tablename__ = "data_imports"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    import_type = Column(String(20), nullable=False)  # "budget", "employee", "po"
    import_status = Column(String(30), nullable=False)  # "success", "completed_with_errors", "failed"
    imported_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    imported_by = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    file_name = Column(String(255), nullable=True)
    file_hash = Column(String(64), nullable=True)  # SHA-256 of the upload
    records_processed = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)
    import_metadata = Column("metadata", JSON, nullable=True)

    __table_args__ = (
        Index("idx_data_imports_project", "project_id", "imported_at"),
    )

    def __repr__(self):
        return f"<DataImport {self.import_type} project={self.project_id} {self.import_status}>"


class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=True)
    action = Column(String(50), nullable=False)  # "import", "update", "undo_import", ...
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=True)
    changes = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<AuditLog {self.action} {self.entity_type}:{self.entity_id}>"
