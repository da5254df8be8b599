"""
Persistent import sessions and per-file progress.

A session follows one uploaded archive from upload through analysis and
review to import. Status changes are validated against the allowed
transitions; progress entries only move forward.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, select
from sqlalchemy.engine import Engine

from app.api.schemas.legacy_import import (
    FileAnalysis,
    ImportResult,
    ImportSession,
    MappingEntry,
    ProgressEntry,
    ProgressStatus,
    SessionStatus,
)
from app.db.models import legacy_import_progress, legacy_import_sessions, new_id
from app.db.session import get_engine
from app.domain.legacy.catalog import SKIP_TARGET
from app.domain.legacy.errors import (
    InvalidProgressTransition,
    InvalidSessionTransition,
    SessionNotFoundError,
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {SessionStatus.DONE, SessionStatus.FAILED}

ALLOWED_TRANSITIONS = {
    SessionStatus.UPLOADING: {SessionStatus.ANALYZING, SessionStatus.FAILED},
    SessionStatus.ANALYZING: {SessionStatus.ANALYZING, SessionStatus.IMPORTING, SessionStatus.FAILED},
    SessionStatus.IMPORTING: {SessionStatus.IMPORTING, SessionStatus.DONE, SessionStatus.FAILED},
    SessionStatus.DONE: set(),
    SessionStatus.FAILED: set(),
}

PROGRESS_TRANSITIONS = {
    ProgressStatus.PENDING: {ProgressStatus.RUNNING, ProgressStatus.ERROR},
    ProgressStatus.RUNNING: {ProgressStatus.DONE, ProgressStatus.ERROR},
    ProgressStatus.DONE: set(),
    ProgressStatus.ERROR: set(),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dump_results(results: Dict[str, ImportResult]) -> Dict[str, Any]:
    return {filename: result.model_dump(mode="json") for filename, result in results.items()}


def _row_to_session(row: Any) -> ImportSession:
    return ImportSession(
        id=row["id"],
        tenant_id=row["tenant_id"],
        archive_name=row["archive_name"],
        storage_path=row["storage_path"],
        status=row["status"],
        analysis=row["analysis"],
        confirmed_mapping=row["confirmed_mapping"],
        import_results=row["import_results"],
        error_message=row["error_message"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_progress(row: Any) -> ProgressEntry:
    return ProgressEntry(
        session_id=row["session_id"],
        filename=row["filename"],
        target_table=row["target_table"],
        status=row["status"],
        result=row["result"],
        error_message=row["error_message"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
    )


# --------------------------------------------------------------------------- #
# Sessions
# --------------------------------------------------------------------------- #


def create_session(
    *,
    tenant_id: str,
    archive_name: str,
    storage_path: Optional[str] = None,
    engine: Optional[Engine] = None,
) -> ImportSession:
    engine = engine or get_engine()
    session_id = new_id()
    now = _now()
    with engine.begin() as conn:
        conn.execute(
            legacy_import_sessions.insert().values(
                id=session_id,
                tenant_id=tenant_id,
                archive_name=archive_name,
                storage_path=storage_path,
                status=SessionStatus.UPLOADING.value,
                created_at=now,
                updated_at=now,
            )
        )
    logger.info("Created legacy import session %s for tenant %s (%s)", session_id, tenant_id, archive_name)
    return get_session(session_id, tenant_id, engine=engine)


def get_session(session_id: str, tenant_id: str, engine: Optional[Engine] = None) -> ImportSession:
    engine = engine or get_engine()
    with engine.connect() as conn:
        row = conn.execute(
            select(legacy_import_sessions).where(
                and_(
                    legacy_import_sessions.c.id == session_id,
                    legacy_import_sessions.c.tenant_id == tenant_id,
                )
            )
        ).mappings().first()
    if row is None:
        raise SessionNotFoundError(f"Import session '{session_id}' not found")
    return _row_to_session(row)


def _update_session(session_id: str, tenant_id: str, engine: Engine, **values: Any) -> None:
    values["updated_at"] = _now()
    with engine.begin() as conn:
        updated = conn.execute(
            legacy_import_sessions.update()
            .where(
                and_(
                    legacy_import_sessions.c.id == session_id,
                    legacy_import_sessions.c.tenant_id == tenant_id,
                )
            )
            .values(**values)
        ).rowcount
    if not updated:
        raise SessionNotFoundError(f"Import session '{session_id}' not found")


def transition(
    session_id: str,
    tenant_id: str,
    status: SessionStatus,
    engine: Optional[Engine] = None,
    **fields: Any,
) -> ImportSession:
    """
    Move a session to ``status``, optionally storing extra columns.

    Raises:
        SessionNotFoundError: unknown session for this tenant.
        InvalidSessionTransition: the move is not allowed from the current status.
    """
    engine = engine or get_engine()
    status = SessionStatus(status)
    current = get_session(session_id, tenant_id, engine=engine).status
    if status not in ALLOWED_TRANSITIONS[current]:
        raise InvalidSessionTransition(current.value, status.value)

    if "import_results" in fields and fields["import_results"] is not None:
        fields["import_results"] = _dump_results(fields["import_results"])
    if "confirmed_mapping" in fields and fields["confirmed_mapping"] is not None:
        fields["confirmed_mapping"] = [entry.model_dump(mode="json") for entry in fields["confirmed_mapping"]]

    _update_session(session_id, tenant_id, engine, status=status.value, **fields)
    if current != status:
        logger.info("Legacy import session %s: %s -> %s", session_id, current.value, status.value)
    return get_session(session_id, tenant_id, engine=engine)


def fail_session(session_id: str, tenant_id: str, message: str, engine: Optional[Engine] = None) -> ImportSession:
    """Mark a session failed with one fatal message that replaces any results."""
    logger.error("Legacy import session %s failed: %s", session_id, message)
    return transition(
        session_id,
        tenant_id,
        SessionStatus.FAILED,
        engine=engine,
        error_message=message,
        import_results=None,
    )


def save_analysis(
    session_id: str, tenant_id: str, files: List[FileAnalysis], engine: Optional[Engine] = None
) -> ImportSession:
    return transition(
        session_id,
        tenant_id,
        SessionStatus.ANALYZING,
        engine=engine,
        analysis=[item.model_dump(mode="json") for item in files],
    )


def update_file_decision(
    session_id: str,
    tenant_id: str,
    filename: str,
    *,
    accepted: bool,
    override_target: Optional[str] = None,
    engine: Optional[Engine] = None,
) -> ImportSession:
    """
    Record the reviewer's accept/override decision for one analysed file.

    Raises:
        SessionNotFoundError: unknown session, or the file is not in its analysis.
        ValueError: the file would be accepted without any target table.
    """
    engine = engine or get_engine()
    session = get_session(session_id, tenant_id, engine=engine)
    if session.status in TERMINAL_STATUSES:
        raise InvalidSessionTransition(session.status.value, session.status.value)

    files = list(session.analysis or [])
    for position, item in enumerate(files):
        if item.filename == filename:
            payload = item.model_dump()
            payload.update(accepted=accepted, override_target=override_target or None)
            files[position] = FileAnalysis.model_validate(payload)
            break
    else:
        raise SessionNotFoundError(f"File '{filename}' is not part of session '{session_id}'")

    _update_session(
        session_id,
        tenant_id,
        engine,
        analysis=[item.model_dump(mode="json") for item in files],
    )
    return get_session(session_id, tenant_id, engine=engine)


def confirmed_mapping_from_analysis(session: ImportSession) -> List[MappingEntry]:
    """Accepted files with a real target, in analysis order."""
    mapping = []
    for item in session.analysis or []:
        target = item.effective_target
        if not item.accepted or not target or target == SKIP_TARGET:
            continue
        mapping.append(MappingEntry(filename=item.filename, full_path=item.full_path, target_table=target))
    return mapping


# --------------------------------------------------------------------------- #
# Progress
# --------------------------------------------------------------------------- #


def _progress_where(session_id: str, filename: str):
    return and_(
        legacy_import_progress.c.session_id == session_id,
        legacy_import_progress.c.filename == filename,
    )


def init_progress(
    session_id: str, tenant_id: str, mappings: Iterable[MappingEntry], engine: Optional[Engine] = None
) -> List[ProgressEntry]:
    """Replace the session's progress entries with one pending entry per file."""
    engine = engine or get_engine()
    now = _now()
    rows = [
        {
            "id": new_id(),
            "session_id": session_id,
            "tenant_id": tenant_id,
            "filename": mapping.filename,
            "target_table": mapping.target_table,
            "status": ProgressStatus.PENDING.value,
            "created_at": now,
        }
        for mapping in mappings
    ]
    with engine.begin() as conn:
        conn.execute(legacy_import_progress.delete().where(legacy_import_progress.c.session_id == session_id))
        if rows:
            conn.execute(legacy_import_progress.insert(), rows)
    return list_progress(session_id, tenant_id, engine=engine)


def _move_progress(
    session_id: str,
    filename: str,
    status: ProgressStatus,
    engine: Engine,
    **values: Any,
) -> None:
    with engine.begin() as conn:
        current = conn.execute(
            select(legacy_import_progress.c.status).where(_progress_where(session_id, filename))
        ).scalar()
        if current is None:
            raise SessionNotFoundError(f"No progress entry for '{filename}' in session '{session_id}'")
        current = ProgressStatus(current)
        if status not in PROGRESS_TRANSITIONS[current]:
            raise InvalidProgressTransition(filename, current.value, status.value)
        conn.execute(
            legacy_import_progress.update()
            .where(_progress_where(session_id, filename))
            .values(status=status.value, **values)
        )


def ensure_progress(
    session_id: str, tenant_id: str, mapping: MappingEntry, engine: Optional[Engine] = None
) -> None:
    """Create a pending entry for a single-file import when none is active."""
    engine = engine or get_engine()
    with engine.begin() as conn:
        current = conn.execute(
            select(legacy_import_progress.c.status).where(_progress_where(session_id, mapping.filename))
        ).scalar()
        if current == ProgressStatus.PENDING.value:
            return
        if current is not None:
            conn.execute(legacy_import_progress.delete().where(_progress_where(session_id, mapping.filename)))
        conn.execute(
            legacy_import_progress.insert().values(
                id=new_id(),
                session_id=session_id,
                tenant_id=tenant_id,
                filename=mapping.filename,
                target_table=mapping.target_table,
                status=ProgressStatus.PENDING.value,
                created_at=_now(),
            )
        )


def mark_running(session_id: str, filename: str, engine: Optional[Engine] = None) -> None:
    _move_progress(session_id, filename, ProgressStatus.RUNNING, engine or get_engine(), started_at=_now())


def mark_done(session_id: str, filename: str, result: ImportResult, engine: Optional[Engine] = None) -> None:
    _move_progress(
        session_id,
        filename,
        ProgressStatus.DONE,
        engine or get_engine(),
        result=result.model_dump(mode="json"),
        finished_at=_now(),
    )


def mark_error(session_id: str, filename: str, message: str, engine: Optional[Engine] = None) -> None:
    _move_progress(
        session_id,
        filename,
        ProgressStatus.ERROR,
        engine or get_engine(),
        error_message=message,
        finished_at=_now(),
    )


def list_progress(session_id: str, tenant_id: str, engine: Optional[Engine] = None) -> List[ProgressEntry]:
    engine = engine or get_engine()
    with engine.connect() as conn:
        rows = conn.execute(
            select(legacy_import_progress)
            .where(
                and_(
                    legacy_import_progress.c.session_id == session_id,
                    legacy_import_progress.c.tenant_id == tenant_id,
                )
            )
            .order_by(legacy_import_progress.c.created_at, legacy_import_progress.c.filename)
        ).mappings().all()
    return [_row_to_progress(row) for row in rows]
