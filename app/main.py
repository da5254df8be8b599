"""
FastAPI application entry point for the legacy migrator.

Startup validates the legacy catalog and creates the migration tables; the
``/legacy-imports`` router carries the whole migration workflow.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routers import legacy_imports
from .core.config import settings
from .core.logging_config import configure_logging
from .domain.legacy.catalog import get_catalog

configure_logging(settings.log_level, settings.legacy_import_log_level or None)

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Raises on an invalid catalog, aborting startup
    catalog = get_catalog()
    logger.info("Using legacy catalog %s", catalog.version)

    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping creation of migration tables")
        yield
        return

    from .db.session import init_db

    try:
        init_db()
        logger.info("Migration tables ready")
    except Exception:
        logger.exception("Failed to create migration tables; the application cannot start")
        raise

    yield


app = FastAPI(
    title="Legacy Migrator API",
    version=API_VERSION,
    description="Analyses legacy ERP CSV exports and imports them into a tenant's tables",
    lifespan=lifespan,
)

allowed_origins = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(legacy_imports.router)


@app.get("/")
async def root():
    return {"message": "Legacy Migrator API", "version": API_VERSION}


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "legacy-migrator-api",
        "catalog_version": get_catalog().version,
    }
