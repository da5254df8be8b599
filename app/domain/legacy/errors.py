"""
Exceptions raised by the legacy migration pipeline.
"""
from typing import Optional


class LegacyImportError(Exception):
    """Base class for legacy migration failures."""


class ArchiveReadError(LegacyImportError):
    """The archive could not be fetched or opened. Fatal for the whole operation."""


class RowParseError(LegacyImportError):
    """A single row could not be decoded into a typed record."""

    def __init__(self, message: str, row_index: Optional[int] = None):
        super().__init__(message)
        self.row_index = row_index


class BlankValueError(RowParseError):
    """A required value is empty. The row is skipped rather than reported."""


class WriteError(LegacyImportError):
    """A bulk write failed; wraps the underlying database error."""

    def __init__(self, message: str, original: Optional[Exception] = None):
        super().__init__(message)
        self.original = original


class DependencyResolutionMiss(LegacyImportError):
    """A referenced legacy id has no internal counterpart. The row is skipped, not failed."""

    def __init__(self, entity_type: str, legacy_id: str):
        super().__init__(f"unresolved {entity_type} reference {legacy_id!r}")
        self.entity_type = entity_type
        self.legacy_id = legacy_id


class UnknownTableError(LegacyImportError):
    """No importer exists for the requested target or source table."""


class SessionNotFoundError(LegacyImportError):
    pass


class InvalidSessionTransition(LegacyImportError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move import session from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class InvalidProgressTransition(LegacyImportError):
    def __init__(self, filename: str, current: str, requested: str):
        super().__init__(f"Progress for '{filename}' cannot move from '{current}' to '{requested}'")
        self.filename = filename
        self.current = current
        self.requested = requested


class DuplicateFileError(LegacyImportError):
    """Two confirmed mappings name the same file, so their results and progress would collide."""

    def __init__(self, filenames):
        names = ", ".join(sorted(filenames))
        super().__init__(f"Each file may be mapped once; duplicated: {names}")
        self.filenames = sorted(filenames)
