"""
Shared dependencies and helpers for the API routers.
"""
from typing import NoReturn, Optional

from fastapi import Header, HTTPException

from app.core.config import settings
from app.domain.legacy.errors import (
    ArchiveReadError,
    InvalidProgressTransition,
    InvalidSessionTransition,
    LegacyImportError,
    SessionNotFoundError,
)

MAX_UPLOAD_BYTES = settings.upload_max_file_size_mb * 1024 * 1024


def get_tenant_id(x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID")) -> str:
    """
    Resolve the tenant for a request from the ``X-Tenant-ID`` header.

    Raises:
    - HTTPException 400: If the header is missing or blank
    """
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    return tenant_id


def ensure_within_size_limit(file_size: int, file_name: str) -> None:
    """Raise an HTTPException if a file exceeds the configured upload limit."""
    if file_size > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=(
                f"{file_name} is too large. "
                f"Maximum allowed upload size is {settings.upload_max_file_size_mb}MB."
            ),
        )


def raise_for_import_error(exc: Exception) -> NoReturn:
    """Translate a legacy-import failure into the matching HTTP error."""
    if isinstance(exc, SessionNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ArchiveReadError):
        raise HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, (InvalidSessionTransition, InvalidProgressTransition)):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (ValueError, LegacyImportError)):
        raise HTTPException(status_code=400, detail=str(exc))
    raise exc
