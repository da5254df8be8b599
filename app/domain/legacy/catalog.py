"""
Declarative catalog of known legacy table shapes.

The catalog is a versioned JSON document (see ``catalogs/uniprom_v1.json``)
describing how archive entries map to target tables: the exact table lookup,
filename and header keyword rules, per-source-table column layouts, the
dependency order for imports and the free-text tags older imports used to
remember legacy ids. It is loaded once and cached; nothing mutates it.
"""
from __future__ import annotations

import json
import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Pattern, Tuple

from pydantic import BaseModel, ConfigDict, Field

from app.api.schemas.legacy_import import Confidence
from app.core.config import settings

logger = logging.getLogger(__name__)

SKIP_TARGET = "skip"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class TableEntry(_Frozen):
    target: str
    label: str
    dedup_field: Optional[str] = None
    requires_parent: Optional[str] = None
    skip_reason: Optional[str] = None

    @property
    def is_skip(self) -> bool:
        return self.target == SKIP_TARGET


class FilenameRule(_Frozen):
    pattern: str
    target: str
    confidence: Confidence
    dedup_field: Optional[str] = None
    label: str


class HeaderRule(_Frozen):
    all_of: List[List[str]]
    target: str
    dedup_field: Optional[str] = None
    label: str

    def matches(self, normalized_headers: List[str]) -> bool:
        return all(
            any(term in header for term in group for header in normalized_headers)
            for group in self.all_of
        )


class SourceTable(_Frozen):
    """Column layout of one legacy export."""
    kind: str
    columns: Dict[str, int]
    has_header: Optional[bool] = None
    multiline_records: bool = True
    legacy_key: Optional[str] = None
    allowed_codes: Optional[List[str]] = None
    post_import: List[str] = Field(default_factory=list)


class LegacyTag(_Frozen):
    table: str
    column: str
    pattern: str


class DocumentSuffix(_Frozen):
    suffix: str
    target: str


class DocumentRouting(_Frozen):
    default: str
    suffixes: List[DocumentSuffix]


class LegacyCatalog(_Frozen):
    version: str
    namespace_pattern: str
    record_start_pattern: str
    small_table_row_limit: int = 5
    binary_header_ratio: float = 0.5
    tables: Dict[str, TableEntry]
    filename_rules: List[FilenameRule]
    header_rules: List[HeaderRule]
    source_tables: Dict[str, SourceTable]
    import_order: List[str]
    legacy_tags: Dict[str, LegacyTag] = Field(default_factory=dict)
    document_routing: DocumentRouting
    city_lookup_table: Optional[str] = None
    function_areas: List[str] = Field(default_factory=list)

    # ------------------------------------------------------------------ #
    # Lookups
    # ------------------------------------------------------------------ #

    def namespaced_table(self, filename: str) -> Optional[str]:
        """Return ``TableName`` for ``<namespace>.<TableName>.csv`` names."""
        match = _compiled(self.namespace_pattern, re.IGNORECASE).match(base_name(filename))
        return match.group(1) if match else None

    def source_table_name(self, filename: str) -> Tuple[Optional[str], bool]:
        """
        Resolve the catalog key for an archive entry.

        Returns ``(name, namespaced)``. Namespaced exports yield their table
        name; flat exports yield their stem when the catalog knows it.
        """
        table = self.namespaced_table(filename)
        if table is not None:
            return table, True
        stem = file_stem(filename)
        if stem in self.tables or stem in self.source_tables:
            return stem, False
        return None, False

    def table_entry(self, name: Optional[str]) -> Optional[TableEntry]:
        return self.tables.get(name) if name else None

    def source_table(self, name: Optional[str]) -> Optional[SourceTable]:
        return self.source_tables.get(name) if name else None

    def multiline_records(self, filename: str) -> bool:
        """Whether rows of ``filename`` may span physical lines; only id-keyed namespaced exports do by default."""
        table, namespaced = self.source_table_name(filename)
        layout = self.source_table(table)
        if layout is not None:
            return layout.multiline_records
        return namespaced

    def compiled_filename_rules(self) -> List[Tuple[Pattern[str], FilenameRule]]:
        return [(_compiled(rule.pattern, re.IGNORECASE), rule) for rule in self.filename_rules]

    def record_start(self) -> Pattern[str]:
        return _compiled(self.record_start_pattern)

    def priority(self, target: Optional[str]) -> int:
        try:
            return self.import_order.index(target)
        except ValueError:
            return len(self.import_order)

    def route_document(self, doc_number: str) -> str:
        """Pick the header table for a document number from its suffix."""
        upper = (doc_number or "").strip().upper()
        for rule in self.document_routing.suffixes:
            suffix = rule.suffix.upper()
            if upper.endswith(suffix) or _compiled(re.escape(suffix) + r"\b").search(upper):
                return rule.target
        return self.document_routing.default


def base_name(filename: str) -> str:
    return filename.replace("\\", "/").rsplit("/", 1)[-1]


def file_stem(filename: str) -> str:
    name = base_name(filename)
    return name[:-4] if name.lower().endswith(".csv") else name


@lru_cache(maxsize=None)
def _compiled(pattern: str, flags: int = 0) -> Pattern[str]:
    return re.compile(pattern, flags)


@lru_cache(maxsize=4)
def _load_catalog(path: str) -> LegacyCatalog:
    catalog_path = Path(path)
    with catalog_path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    catalog = LegacyCatalog.model_validate(payload)
    logger.info(
        "Loaded legacy catalog %s from %s (%d tables, %d layouts)",
        catalog.version,
        catalog_path.name,
        len(catalog.tables),
        len(catalog.source_tables),
    )
    return catalog


def get_catalog(path: Optional[str] = None) -> LegacyCatalog:
    """Return the cached catalog for ``path`` (defaults to the configured catalog)."""
    return _load_catalog(path or settings.legacy_catalog_path)
