"""
Rule-based classifier that proposes a target table for each archive entry.

Signals are tried from strongest to weakest: binary corruption, the exact
catalog table lookup, tiny unknown namespaced tables, filename keyword rules,
and finally header keyword rules.
"""
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from app.api.schemas.legacy_import import Confidence
from app.domain.legacy.catalog import LegacyCatalog, base_name, get_catalog

logger = logging.getLogger(__name__)

_HEADER_NORMALIZE = re.compile(r"[_\s-]+")


@dataclass(frozen=True)
class FileClassification:
    target: Optional[str]
    confidence: Confidence
    human_label: str
    dedup_field: Optional[str] = None
    requires_parent: Optional[str] = None
    auto_skip: bool = False
    skip_reason: Optional[str] = None


def normalize_header(value: str) -> str:
    return _HEADER_NORMALIZE.sub("", value.lower())


def binary_cell_ratio(raw_header_cells: Sequence[str]) -> float:
    if not raw_header_cells:
        return 0.0
    flagged = sum(1 for cell in raw_header_cells if "\x00" in cell)
    return flagged / len(raw_header_cells)


def classify_by_headers(headers: Sequence[str], catalog: Optional[LegacyCatalog] = None) -> Optional[FileClassification]:
    catalog = catalog or get_catalog()
    normalized = [normalize_header(h) for h in headers]
    for rule in catalog.header_rules:
        if rule.matches(normalized):
            return FileClassification(
                target=rule.target,
                confidence=Confidence.MEDIUM,
                human_label=rule.label,
                dedup_field=rule.dedup_field,
            )
    return None


def classify_file(
    filename: str,
    headers: List[str],
    row_count: int,
    raw_header_cells: Optional[Sequence[str]] = None,
    catalog: Optional[LegacyCatalog] = None,
) -> FileClassification:
    """
    Propose a target table for one file.

    Args:
        filename: Archive entry name (directories are ignored).
        headers: Parsed header row, or synthetic ``col_N`` names.
        row_count: Number of data rows.
        raw_header_cells: First physical line split on commas before NUL
            stripping; used to detect binary exports.
        catalog: Override the configured catalog (tests).
    """
    catalog = catalog or get_catalog()

    ratio = binary_cell_ratio(raw_header_cells if raw_header_cells is not None else headers)
    if ratio > catalog.binary_header_ratio:
        return FileClassification(
            target=None,
            confidence=Confidence.NONE,
            human_label="Binary/corrupt data detected (NUL bytes in CSV cells)",
            auto_skip=True,
            skip_reason="Binary data detected (blob columns exported as CSV are unreadable)",
        )

    table_name, namespaced = catalog.source_table_name(filename)
    entry = catalog.table_entry(table_name)
    if entry is not None:
        return FileClassification(
            target=None if entry.is_skip else entry.target,
            confidence=Confidence.EXACT,
            human_label=entry.label,
            dedup_field=entry.dedup_field or "id",
            requires_parent=entry.requires_parent,
            auto_skip=entry.is_skip,
            skip_reason=entry.skip_reason,
        )

    if namespaced and 0 <= row_count <= catalog.small_table_row_limit:
        return FileClassification(
            target=None,
            confidence=Confidence.NONE,
            human_label=f"Unrecognized table '{table_name}' with only {row_count} rows, likely a lookup table",
            auto_skip=True,
            skip_reason=f"Unrecognized table with <= {catalog.small_table_row_limit} rows (probable lookup/config table)",
        )

    for pattern, rule in catalog.compiled_filename_rules():
        if pattern.search(base_name(filename)):
            return FileClassification(
                target=rule.target,
                confidence=rule.confidence,
                human_label=rule.label,
                dedup_field=rule.dedup_field,
            )

    by_headers = classify_by_headers(headers, catalog)
    if by_headers is not None:
        return by_headers

    return FileClassification(
        target=None,
        confidence=Confidence.NONE,
        human_label="No matching pattern or header signal found",
    )
