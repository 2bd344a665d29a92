"""
CostTrak: FastAPI Backend
Main entry point. Registers the import routers and initializes the database.
"""

import logging
from pathlib import Path
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Load .env from ~/CostTrak/.env first (shared machine config),
# then fall back to CWD/.env (works during development).
# Second call is a no-op for vars already set by the first.
load_dotenv(dotenv_path=Path.home() / "CostTrak" / ".env")
load_dotenv()

from .config import CORS_ORIGINS
from .database import init_db
from .routers import budget_breakdowns, employees, purchase_orders, data_imports

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run on startup: create tables."""
    init_db()
    logger.info("CostTrak API ready")
    yield


app = FastAPI(
    title="CostTrak",
    description="Construction cost tracking: budget, employee and PO imports",
    version=VERSION,
    lifespan=lifespan,
)

# CORS: allow the Next.js frontend to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(
    budget_breakdowns.router, prefix="/api/project-budget-breakdowns", tags=["Budget Breakdowns"]
)
app.include_router(employees.router, prefix="/api/employees", tags=["Employees"])
app.include_router(purchase_orders.router, prefix="/api/purchase-orders", tags=["Purchase Orders"])
app.include_router(data_imports.router, prefix="/api/data-imports", tags=["Import History"])


@app.get("/health")
def health_check():
    """Health check endpoint used by the load balancer."""
    return {"status": "ok", "version": VERSION}
