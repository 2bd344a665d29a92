"""
Application configuration.

All values come from environment variables (optionally loaded from .env by
main.py before this module is imported). Defaults are tuned for local
development: a SQLite database under ~/CostTrak and permissive CORS for the
Next.js dev server.
"""

import os
from pathlib import Path

# Data directory: ~/CostTrak (holds the dev SQLite database and .env)
DATA_DIR = Path(os.getenv("COSTTRAK_DATA_DIR", str(Path.home() / "CostTrak")))


def _default_database_url() -> str:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{DATA_DIR / 'costtrak.db'}"


DATABASE_URL = os.getenv("DATABASE_URL") or _default_database_url()

# Postgres providers sometimes hand out postgres:// URLs, which SQLAlchemy rejects
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

LOG_LEVEL = os.getenv("COSTTRAK_LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("COSTTRAK_PORT", "8000"))

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "COSTTRAK_CORS_ORIGINS", "http://localhost:3000,http://localhost:5173"
    ).split(",")
    if origin.strip()
]

# What to do with budget rows whose value parses negative:
#   "skip"   -> drop silently (counted as skipped)
#   "report" -> drop, but attach a row error so credits/adjustments are visible
NEGATIVE_VALUE_POLICY = os.getenv("COSTTRAK_NEGATIVE_VALUE_POLICY", "skip").strip().lower()

# Roles allowed to run each importer
IMPORT_ROLES = {
    "budget": ("controller", "ops_manager"),
    "employee": ("controller", "ops_manager"),
    "po": ("controller", "accounting", "ops_manager", "project_manager"),
}

# Only controllers may roll back a budget import batch
UNDO_ROLES = ("controller",)

# Header used by the upstream auth proxy to pass the authenticated user id
USER_ID_HEADER = "X-User-Id"
