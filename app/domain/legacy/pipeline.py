"""
Archive-level orchestration for legacy migrations.

``analyze_archive`` and ``import_archive`` work on raw archive bytes and are
free of session state. ``run_analysis``, ``run_import`` and
``run_import_file`` drive a stored session: they download the archive,
serialise work per tenant and keep the session status and per-file progress
up to date.
"""
import logging
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.engine import Engine

from app.api.schemas.legacy_import import (
    Confidence,
    FileAnalysis,
    ImportResult,
    MappingEntry,
    SessionStatus,
)
from app.core.config import settings
from app.db.session import get_engine
from app.domain.legacy import sessions
from app.domain.legacy.archive import LegacyArchive, build_city_lookup, display_names
from app.domain.legacy.catalog import SKIP_TARGET, LegacyCatalog, get_catalog
from app.domain.legacy.classifier import classify_file
from app.domain.legacy.csv_reader import parse_csv, raw_header_cells
from app.domain.legacy.errors import ArchiveReadError, DuplicateFileError
from app.domain.legacy.importers import ImportContext, SourceFile, import_source
from app.domain.legacy.legacy_ids import LegacyIdResolver
from app.integrations.storage import StorageError, fetch_archive
from app.utils.locks import TenantImportLock

logger = logging.getLogger(__name__)

EMPTY_FILE_REASON = "Empty file (0 data rows)"
MISSING_ENTRY_REASON = "File not found in archive"
AUTO_ACCEPT = {Confidence.EXACT, Confidence.HIGH}


# --------------------------------------------------------------------------- #
# Analysis
# --------------------------------------------------------------------------- #


def _analyze_entry(
    archive: LegacyArchive, info, name: str, catalog: LegacyCatalog, sample_rows: int
) -> FileAnalysis:
    text = archive.read_text(info)
    table_name, _ = catalog.source_table_name(info.filename)
    layout = catalog.source_table(table_name)
    parsed = parse_csv(
        text,
        has_header=layout.has_header if layout is not None else None,
        multiline=catalog.multiline_records(info.filename),
        record_start=catalog.record_start(),
    )
    classification = classify_file(
        info.filename,
        parsed.headers,
        parsed.row_count,
        raw_header_cells=raw_header_cells(text),
        catalog=catalog,
    )

    is_empty = parsed.row_count == 0
    auto_skip = classification.auto_skip or is_empty
    skip_reason = classification.skip_reason
    if is_empty and not classification.auto_skip:
        skip_reason = EMPTY_FILE_REASON

    return FileAnalysis(
        filename=name,
        full_path=info.filename,
        row_count=parsed.row_count,
        headers=parsed.headers,
        sample_rows=parsed.rows[:sample_rows],
        suggested_target=classification.target,
        confidence=classification.confidence,
        human_label=classification.human_label,
        is_empty=is_empty,
        auto_skip=auto_skip,
        skip_reason=skip_reason,
        dedup_field=classification.dedup_field,
        requires_parent=classification.requires_parent,
        accepted=(
            not auto_skip
            and classification.target is not None
            and classification.confidence in AUTO_ACCEPT
        ),
    )


def analyze_archive(
    archive_bytes: bytes,
    catalog: Optional[LegacyCatalog] = None,
    sample_rows: Optional[int] = None,
) -> List[FileAnalysis]:
    """
    Classify every CSV entry of an archive.

    Files to review come first, ordered by confidence and then by size;
    auto-skipped and empty files go last.

    Raises:
        ArchiveReadError: the archive cannot be opened or an entry cannot be read.
    """
    catalog = catalog or get_catalog()
    sample_rows = settings.legacy_import_sample_rows if sample_rows is None else sample_rows

    with LegacyArchive(archive_bytes) as archive:
        entries = archive.csv_entries()
        names = display_names(info.filename for info in entries)
        files = [_analyze_entry(archive, info, names[info.filename], catalog, sample_rows) for info in entries]

    files.sort(key=lambda item: (item.auto_skip or item.is_empty, item.confidence.rank, -item.row_count))
    logger.info(
        "Analyzed %d files (%d auto-skipped)",
        len(files),
        sum(1 for item in files if item.auto_skip),
    )
    return files


# --------------------------------------------------------------------------- #
# Import
# --------------------------------------------------------------------------- #


def sort_mappings(mappings: Iterable[MappingEntry], catalog: Optional[LegacyCatalog] = None) -> List[MappingEntry]:
    """Order mappings so referenced tables are imported before their dependents."""
    catalog = catalog or get_catalog()
    return sorted(mappings, key=lambda mapping: catalog.priority(mapping.target_table))


def importable_mappings(mappings: Iterable[MappingEntry]) -> List[MappingEntry]:
    """
    Drop skipped and untargeted mappings.

    Raises:
        DuplicateFileError: a file is mapped more than once.
    """
    kept = [m for m in mappings if m.target_table and m.target_table != SKIP_TARGET]
    counts = Counter(m.filename for m in kept)
    duplicated = [name for name, count in counts.items() if count > 1]
    if duplicated:
        raise DuplicateFileError(duplicated)
    return kept


def _build_context(
    archive: LegacyArchive, engine: Engine, tenant_id: str, catalog: LegacyCatalog
) -> ImportContext:
    return ImportContext(
        engine=engine,
        tenant_id=tenant_id,
        catalog=catalog,
        resolver=LegacyIdResolver(engine, tenant_id, catalog),
        city_lookup=build_city_lookup(archive, catalog),
    )


def _import_entry(
    ctx: ImportContext,
    archive: LegacyArchive,
    mapping: MappingEntry,
    session_id: Optional[str] = None,
) -> ImportResult:
    """Import one mapped file; only archive read failures propagate."""
    if session_id:
        sessions.mark_running(session_id, mapping.filename, engine=ctx.engine)

    info = archive.find(mapping.filename, mapping.full_path)
    if info is None:
        logger.warning("%s: not found in archive", mapping.filename)
        if session_id:
            sessions.mark_error(session_id, mapping.filename, MISSING_ENTRY_REASON, engine=ctx.engine)
        return ImportResult.failure(MISSING_ENTRY_REASON)

    table_name, _ = ctx.catalog.source_table_name(info.filename)
    source = SourceFile(
        filename=mapping.filename,
        full_path=info.filename,
        text=archive.read_text(info),
        table_name=table_name,
        layout=ctx.catalog.source_table(table_name),
    )

    logger.info("Importing %s into %s", mapping.filename, mapping.target_table)
    try:
        result = import_source(ctx, source, mapping.target_table)
        ctx.resolver.persist()
    except ArchiveReadError:
        raise
    except Exception as exc:
        logger.exception("Import of %s into %s failed", mapping.filename, mapping.target_table)
        message = f"Import failed: {exc}"
        if session_id:
            sessions.mark_error(session_id, mapping.filename, message, engine=ctx.engine)
        return ImportResult.failure(message)

    logger.info(
        "Finished %s: inserted=%d updated=%d skipped=%d errors=%d",
        mapping.filename,
        result.inserted,
        result.updated,
        result.skipped,
        len(result.errors),
    )
    if session_id:
        sessions.mark_done(session_id, mapping.filename, result, engine=ctx.engine)
    return result


def import_archive(
    archive_bytes: bytes,
    tenant_id: str,
    mappings: Iterable[MappingEntry],
    session_id: Optional[str] = None,
    engine: Optional[Engine] = None,
    catalog: Optional[LegacyCatalog] = None,
) -> Dict[str, ImportResult]:
    """
    Import the confirmed files of an archive in dependency order.

    One context is shared by all files so ids registered by earlier files
    resolve in later ones. A failing file is reported in its result and the
    archive continues.

    Raises:
        ArchiveReadError: the archive itself cannot be read.
    """
    engine = engine or get_engine()
    catalog = catalog or get_catalog()
    ordered = sort_mappings(importable_mappings(mappings), catalog)
    if session_id:
        sessions.init_progress(session_id, tenant_id, ordered, engine=engine)

    results: Dict[str, ImportResult] = {}
    with LegacyArchive(archive_bytes) as archive:
        ctx = _build_context(archive, engine, tenant_id, catalog)
        for mapping in ordered:
            results[mapping.filename] = _import_entry(ctx, archive, mapping, session_id)
        ctx.resolver.persist()
    return results


def import_file(
    archive_bytes: bytes,
    tenant_id: str,
    mapping: MappingEntry,
    session_id: Optional[str] = None,
    engine: Optional[Engine] = None,
    catalog: Optional[LegacyCatalog] = None,
) -> ImportResult:
    """Import a single confirmed file; references resolve through the persisted id map."""
    engine = engine or get_engine()
    catalog = catalog or get_catalog()
    if session_id:
        sessions.ensure_progress(session_id, tenant_id, mapping, engine=engine)

    with LegacyArchive(archive_bytes) as archive:
        ctx = _build_context(archive, engine, tenant_id, catalog)
        return _import_entry(ctx, archive, mapping, session_id)


def summarize_results(results: Dict[str, ImportResult]) -> Dict[str, Any]:
    return {
        "files": len(results),
        "inserted": sum(r.inserted for r in results.values()),
        "updated": sum(r.updated for r in results.values()),
        "skipped": sum(r.skipped for r in results.values()),
        "errors": sum(len(r.errors) + r.errors_truncated for r in results.values()),
    }


# --------------------------------------------------------------------------- #
# Session-driven operations
# --------------------------------------------------------------------------- #


def _download_archive(storage_path: Optional[str]) -> bytes:
    if not storage_path:
        raise ArchiveReadError("Session has no stored archive")
    try:
        return fetch_archive(storage_path)
    except StorageError as exc:
        raise ArchiveReadError(f"Could not download archive: {exc}") from exc


def run_analysis(session_id: str, tenant_id: str, engine: Optional[Engine] = None) -> List[FileAnalysis]:
    engine = engine or get_engine()
    session = sessions.transition(session_id, tenant_id, SessionStatus.ANALYZING, engine=engine)
    try:
        files = analyze_archive(_download_archive(session.storage_path))
    except ArchiveReadError as exc:
        sessions.fail_session(session_id, tenant_id, str(exc), engine=engine)
        raise
    sessions.save_analysis(session_id, tenant_id, files, engine=engine)
    return files


def run_import(
    session_id: str,
    tenant_id: str,
    mappings: Optional[List[MappingEntry]] = None,
    engine: Optional[Engine] = None,
) -> Dict[str, ImportResult]:
    """
    Import a session's archive.

    Without explicit ``mappings`` the accepted files of the stored analysis
    are imported.
    """
    engine = engine or get_engine()
    session = sessions.get_session(session_id, tenant_id, engine=engine)
    if mappings is None:
        mappings = sessions.confirmed_mapping_from_analysis(session)
    # Rejects duplicated files while the session can still be retried
    importable_mappings(mappings)

    with TenantImportLock.acquire(tenant_id):
        session = sessions.transition(
            session_id,
            tenant_id,
            SessionStatus.IMPORTING,
            engine=engine,
            confirmed_mapping=mappings,
            error_message=None,
        )
        try:
            results = import_archive(
                _download_archive(session.storage_path),
                tenant_id,
                mappings,
                session_id=session_id,
                engine=engine,
            )
        except ArchiveReadError as exc:
            sessions.fail_session(session_id, tenant_id, str(exc), engine=engine)
            raise

        sessions.transition(session_id, tenant_id, SessionStatus.DONE, engine=engine, import_results=results)
    logger.info("Legacy import session %s finished: %s", session_id, summarize_results(results))
    return results


def run_import_file(
    session_id: str,
    tenant_id: str,
    filename: str,
    target_table: Optional[str] = None,
    engine: Optional[Engine] = None,
) -> ImportResult:
    """
    Import one file of a session.

    The session is marked done once every accepted file has a result.

    Raises:
        ValueError: no target table is known for ``filename``.
    """
    engine = engine or get_engine()
    session = sessions.get_session(session_id, tenant_id, engine=engine)

    analysed = next((item for item in session.analysis or [] if item.filename == filename), None)
    target = target_table or (analysed.effective_target if analysed is not None else None)
    if not target or target == SKIP_TARGET:
        raise ValueError(f"No target table for '{filename}'")
    mapping = MappingEntry(
        filename=filename,
        full_path=analysed.full_path if analysed is not None else None,
        target_table=target,
    )

    with TenantImportLock.acquire(tenant_id):
        session = sessions.transition(session_id, tenant_id, SessionStatus.IMPORTING, engine=engine)
        try:
            result = import_file(
                _download_archive(session.storage_path),
                tenant_id,
                mapping,
                session_id=session_id,
                engine=engine,
            )
        except ArchiveReadError as exc:
            sessions.fail_session(session_id, tenant_id, str(exc), engine=engine)
            raise

        results = dict(session.import_results or {})
        results[filename] = result
        outstanding = {
            entry.filename for entry in sessions.confirmed_mapping_from_analysis(session)
        } - set(results)
        status = SessionStatus.IMPORTING if outstanding else SessionStatus.DONE
        sessions.transition(session_id, tenant_id, status, engine=engine, import_results=results)
    return result
