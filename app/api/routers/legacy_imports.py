"""
Endpoints for migrating legacy ERP exports.

A migration is a session: upload the zip archive, analyze it, review the
per-file suggestions, then import everything at once or file by file.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from app.api.dependencies import ensure_within_size_limit, get_tenant_id, raise_for_import_error
from app.api.schemas.legacy_import import (
    AnalyzeArchiveResponse,
    FileDecisionRequest,
    ImportArchiveRequest,
    ImportArchiveResponse,
    ImportFileRequest,
    ImportSessionResponse,
    ProgressListResponse,
)
from app.domain.legacy import pipeline, sessions
from app.domain.legacy.errors import LegacyImportError
from app.integrations.storage import StorageError, store_archive

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/legacy-imports", tags=["legacy-imports"])


@router.post("/upload", response_model=ImportSessionResponse)
async def upload_archive_endpoint(
    file: UploadFile = File(...),
    tenant_id: str = Depends(get_tenant_id),
):
    """
    Store a legacy export archive and open an import session for it.

    Returns:
    - The new session in status ``uploading``
    """
    filename = file.filename or "archive.zip"
    if not filename.lower().endswith(".zip"):
        raise HTTPException(status_code=400, detail="Legacy exports must be uploaded as a .zip archive")

    content = await file.read()
    ensure_within_size_limit(len(content), filename)

    try:
        stored = store_archive(tenant_id, filename, content)
    except StorageError as exc:
        logger.error("Archive upload for tenant %s failed: %s", tenant_id, exc)
        raise HTTPException(status_code=502, detail=f"Archive upload failed: {exc}")

    session = sessions.create_session(
        tenant_id=tenant_id,
        archive_name=filename,
        storage_path=stored["storage_path"],
    )
    return ImportSessionResponse(success=True, session=session)


@router.post("/{session_id}/analyze", response_model=AnalyzeArchiveResponse)
def analyze_archive_endpoint(session_id: str, tenant_id: str = Depends(get_tenant_id)):
    try:
        files = pipeline.run_analysis(session_id, tenant_id)
    except LegacyImportError as exc:
        raise_for_import_error(exc)
    return AnalyzeArchiveResponse(success=True, session_id=session_id, files=files)


@router.patch("/{session_id}/files/{filename:path}", response_model=ImportSessionResponse)
def update_file_decision_endpoint(
    session_id: str,
    filename: str,
    request: FileDecisionRequest,
    tenant_id: str = Depends(get_tenant_id),
):
    """Accept or reject one analysed file, optionally overriding its target table."""
    try:
        session = sessions.update_file_decision(
            session_id,
            tenant_id,
            filename,
            accepted=request.accepted,
            override_target=request.override_target,
        )
    except (LegacyImportError, ValueError) as exc:
        raise_for_import_error(exc)
    return ImportSessionResponse(success=True, session=session)


@router.post("/{session_id}/import", response_model=ImportArchiveResponse)
def import_archive_endpoint(
    session_id: str,
    request: Optional[ImportArchiveRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
):
    """
    Import a session's archive.

    Without a ``confirmed_mapping`` in the body the files accepted during
    review are imported.
    """
    mappings = request.confirmed_mapping if request is not None else None
    try:
        results = pipeline.run_import(session_id, tenant_id, mappings)
    except LegacyImportError as exc:
        raise_for_import_error(exc)
    return ImportArchiveResponse(
        success=True,
        session_id=session_id,
        results=results,
        totals=pipeline.summarize_results(results),
    )


@router.post("/{session_id}/import-file", response_model=ImportArchiveResponse)
def import_file_endpoint(
    session_id: str,
    request: ImportFileRequest,
    tenant_id: str = Depends(get_tenant_id),
):
    try:
        result = pipeline.run_import_file(session_id, tenant_id, request.filename, request.target_table)
    except (LegacyImportError, ValueError) as exc:
        raise_for_import_error(exc)
    results = {request.filename: result}
    return ImportArchiveResponse(
        success=True,
        session_id=session_id,
        results=results,
        totals=pipeline.summarize_results(results),
    )


@router.get("/{session_id}", response_model=ImportSessionResponse)
def get_session_endpoint(session_id: str, tenant_id: str = Depends(get_tenant_id)):
    try:
        session = sessions.get_session(session_id, tenant_id)
    except LegacyImportError as exc:
        raise_for_import_error(exc)
    return ImportSessionResponse(success=True, session=session)


@router.get("/{session_id}/progress", response_model=ProgressListResponse)
def get_progress_endpoint(session_id: str, tenant_id: str = Depends(get_tenant_id)):
    try:
        sessions.get_session(session_id, tenant_id)
    except LegacyImportError as exc:
        raise_for_import_error(exc)
    return ProgressListResponse(
        success=True,
        session_id=session_id,
        entries=sessions.list_progress(session_id, tenant_id),
    )
