"""
Database setup and session management.

Production points DATABASE_URL at the hosted Postgres instance; local
development falls back to a SQLite file at ~/CostTrak/costtrak.db.
Both dialects support INSERT ... ON CONFLICT, which the importers rely on.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base

from .config import DATABASE_URL

_is_sqlite = DATABASE_URL.startswith("sqlite")

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if _is_sqlite else {},  # Required for SQLite + FastAPI
    pool_pre_ping=not _is_sqlite,
    echo=False,
)


def configure_sqlite(sqlite_engine, wal: bool = True):
    """
    Enable foreign keys (and WAL for file databases) and let SQLAlchemy
    emit BEGIN itself. pysqlite's own transaction handling breaks SAVEPOINT,
    which the employee and PO importers use for per-row recovery.
    """
    @event.listens_for(sqlite_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        if wal:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(sqlite_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


if _is_sqlite:
    configure_sqlite(engine, wal=DATABASE_URL not in ("sqlite://", "sqlite:///:memory:"))


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency that provides a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Create all tables if they don't exist."""
    from . import models  # noqa: F401, registers models
    Base.metadata.create_all(bind=bind or engine)
