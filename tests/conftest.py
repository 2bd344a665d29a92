"""
Shared fixtures: an in-memory SQLite database per test, seeded users and a
project, a TestClient wired to the same session, and helpers that build
upload files in memory.
"""

import csv
import io
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("COSTTRAK_NEGATIVE_VALUE_POLICY", "skip")

import pytest
from fastapi.testclient import TestClient
from openpyxl import Workbook
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from costtrak.database import Base, configure_sqlite, get_db, init_db
from costtrak.main import app
from costtrak.models import Profile, Project


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite(test_engine, wal=False)
    init_db(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def users(db):
    """One profile per role, keyed by role."""
    roles = ["controller", "ops_manager", "accounting", "project_manager", "viewer"]
    profiles = {}
    for role in roles:
        profile = Profile(email=f"{role}@ics.test", full_name=role.replace("_", " ").title(), role=role)
        db.add(profile)
        profiles[role] = profile
    db.commit()
    return profiles


@pytest.fixture
def project(db, users):
    p = Project(job_number="5800", name="Refinery Turnaround", project_manager_id=users["project_manager"].id)
    db.add(p)
    db.commit()
    return p


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    """Headers identifying a profile to the API."""
    def _headers(profile):
        return {"X-User-Id": str(profile.id)}
    return _headers


def build_xlsx(sheets: dict) -> bytes:
    """{sheet name: [row, ...]} -> .xlsx bytes. Rows are lists of cell values."""
    wb = Workbook()
    wb.remove(wb.active)
    for name, rows in sheets.items():
        ws = wb.create_sheet(title=name)
        for row in rows:
            ws.append(list(row))
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def build_csv(rows: list) -> bytes:
    buf = io.StringIO()
    writer = csv.writer(buf)
    for row in rows:
        writer.writerow(["" if v is None else v for v in row])
    return buf.getvalue().encode("utf-8")


@pytest.fixture
def make_xlsx():
    return build_xlsx


@pytest.fixture
def make_csv():
    return build_csv
