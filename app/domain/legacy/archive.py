"""
Read-only access to an uploaded legacy export archive.
"""
import io
import logging
import os
import zipfile
from collections import Counter
from typing import Dict, Iterable, List, Optional

from app.core.config import settings
from app.domain.legacy.catalog import LegacyCatalog, base_name
from app.domain.legacy.csv_reader import decode_bytes, sanitize_csv_text, split_physical_rows
from app.domain.legacy.errors import ArchiveReadError

logger = logging.getLogger(__name__)

CSV_SUFFIX = ".csv"


class LegacyArchive:
    """Zip archive of CSV exports. Directory and non-CSV entries are ignored."""

    def __init__(self, archive_bytes: bytes):
        try:
            self._zip = zipfile.ZipFile(io.BytesIO(archive_bytes))
        except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError) as exc:
            raise ArchiveReadError(f"Archive is corrupted or not a zip file: {exc}") from exc

    def __enter__(self) -> "LegacyArchive":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._zip.close()

    def csv_entries(self) -> List[zipfile.ZipInfo]:
        entries = []
        for info in self._zip.infolist():
            if info.is_dir():
                continue
            path = info.filename
            # Skip macOS resource forks
            if "__MACOSX" in path or os.path.basename(path).startswith("._"):
                continue
            if path.lower().endswith(CSV_SUFFIX):
                entries.append(info)
        return entries

    def find(self, filename: str, full_path: Optional[str] = None) -> Optional[zipfile.ZipInfo]:
        """Locate an entry by exact path, falling back to a path-suffix match."""
        entries = self.csv_entries()
        wanted = full_path or filename
        for info in entries:
            if info.filename == wanted:
                return info
        for info in entries:
            if info.filename.endswith(wanted) or info.filename.endswith(filename):
                return info
        return None

    def read_text(self, info: zipfile.ZipInfo) -> str:
        try:
            raw = self._zip.read(info)
        except (zipfile.BadZipFile, OSError, RuntimeError) as exc:
            raise ArchiveReadError(f"Could not read '{info.filename}' from archive: {exc}") from exc
        return decode_bytes(raw)


def display_names(paths: Iterable[str]) -> Dict[str, str]:
    """
    Name each archive entry by its base name, or by its full path when
    another entry in a different folder shares that base name.
    """
    paths = list(paths)
    counts = Counter(base_name(path) for path in paths)
    return {path: base_name(path) if counts[base_name(path)] == 1 else path for path in paths}


def build_city_lookup(
    archive: LegacyArchive, catalog: LegacyCatalog, cap: Optional[int] = None
) -> Dict[str, str]:
    """
    Map legacy city ids to names from the archive's City export, if present.

    Only the first two fields of each physical line are read; the file can be
    very large, so multi-line record reconstruction is not attempted.
    """
    cap = settings.legacy_import_city_lookup_cap if cap is None else cap
    lookup: Dict[str, str] = {}
    if not catalog.city_lookup_table:
        return lookup

    entry = None
    for info in archive.csv_entries():
        table, _ = catalog.source_table_name(base_name(info.filename))
        if table and table.lower() == catalog.city_lookup_table.lower():
            entry = info
            break
    if entry is None:
        logger.info("No %s export in archive; city ids will not be resolved", catalog.city_lookup_table)
        return lookup

    for line in split_physical_rows(sanitize_csv_text(archive.read_text(entry))):
        parts = line.split(",", 2)
        if len(parts) < 2:
            continue
        city_id = parts[0].strip()
        name = parts[1].strip().strip('"').strip()
        if city_id and name:
            lookup[city_id] = name
            if len(lookup) >= cap:
                break

    logger.info("Built city lookup with %d entries (cap %d)", len(lookup), cap)
    return lookup
