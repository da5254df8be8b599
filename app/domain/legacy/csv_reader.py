"""
Tokenizer for legacy CSV exports.

The exports are loosely quoted, may contain NUL bytes and often break a
single record over several physical lines (free-text columns with embedded
newlines). Records of the namespaced exports always start with a numeric id
followed by a delimiter, which is what ``reconstruct_logical_rows`` keys on.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Pattern

logger = logging.getLogger(__name__)

RECORD_START_PATTERN = re.compile(r"^\d+[,;|]")
_LINE_SPLIT = re.compile(r"\r\n|\r|\n")
_HEADER_LETTER = re.compile(r"[A-Za-zšđčćžŠĐČĆŽÀ-ɏ]")
_NUMERIC = re.compile(r"^[+-]?(\d+([.,]\d*)?|[.,]\d+)([eE][+-]?\d+)?$")

MAX_HEADER_TOKEN_LENGTH = 60


@dataclass
class ParsedCsv:
    headers: List[str]
    rows: List[List[str]] = field(default_factory=list)
    has_header: bool = False

    @property
    def row_count(self) -> int:
        return len(self.rows)


def decode_bytes(raw: bytes) -> str:
    """Decode an archive entry as UTF-8, replacing undecodable bytes."""
    if raw.startswith(b"\xef\xbb\xbf"):
        raw = raw[3:]
    return raw.decode("utf-8", errors="replace")


def sanitize_csv_text(raw: str) -> str:
    """Strip NUL bytes; legacy exporters pad fixed-width fields with them."""
    return raw.replace("\x00", "")


def split_physical_rows(text: str) -> List[str]:
    """Split on any newline convention and drop empty lines."""
    return [line for line in _LINE_SPLIT.split(text) if line.strip()]


def reconstruct_logical_rows(text: str, record_start: Pattern[str] = RECORD_START_PATTERN) -> List[str]:
    """
    Join physical lines back into logical records.

    A line opens a new record when it matches ``record_start`` or is the very
    first line of the file; any other line is a continuation and is appended
    to the previous record with a single space.
    """
    logical: List[str] = []
    for line in _LINE_SPLIT.split(text):
        if not line.strip():
            continue
        if not logical or record_start.match(line):
            logical.append(line)
        else:
            logical[-1] = f"{logical[-1]} {line}"
    return [row for row in logical if row.strip()]


def parse_csv_line(line: str) -> List[str]:
    """
    Split one logical row into trimmed fields.

    Commas inside double quotes do not split; a doubled quote inside a quoted
    section yields a literal quote character.
    """
    fields: List[str] = []
    current: List[str] = []
    in_quotes = False
    i = 0
    length = len(line)

    while i < length:
        ch = line[i]
        if ch == '"':
            if in_quotes and i + 1 < length and line[i + 1] == '"':
                current.append('"')
                i += 2
                continue
            in_quotes = not in_quotes
        elif ch == "," and not in_quotes:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
        i += 1

    fields.append("".join(current).strip())
    return fields


def is_numeric_token(token: str) -> bool:
    return bool(_NUMERIC.match(token.strip()))


def looks_like_header(tokens: List[str]) -> bool:
    """
    A first row is a header when at least one cell reads like a column name:
    non-numeric, shorter than 60 characters and containing a letter.
    """
    for token in tokens:
        value = token.strip()
        if not value or is_numeric_token(value):
            continue
        if len(value) < MAX_HEADER_TOKEN_LENGTH and _HEADER_LETTER.search(value):
            return True
    return False


def synthetic_headers(count: int) -> List[str]:
    return [f"col_{i + 1}" for i in range(count)]


def iter_rows(
    text: str, multiline: bool = True, record_start: Pattern[str] = RECORD_START_PATTERN
) -> Iterator[List[str]]:
    """Yield tokenised rows from sanitized text."""
    lines = reconstruct_logical_rows(text, record_start) if multiline else split_physical_rows(text)
    for line in lines:
        yield parse_csv_line(line)


def parse_csv(
    text: str,
    has_header: Optional[bool] = None,
    multiline: bool = True,
    record_start: Pattern[str] = RECORD_START_PATTERN,
) -> ParsedCsv:
    """
    Tokenise a whole export.

    Args:
        text: Decoded file content (NUL bytes are stripped here).
        has_header: ``True``/``False`` when the layout is known, ``None`` to
            let the header heuristic decide.
        multiline: Re-join records broken across physical lines.
    """
    rows = list(iter_rows(sanitize_csv_text(text), multiline=multiline, record_start=record_start))
    if not rows:
        return ParsedCsv(headers=[], rows=[], has_header=False)

    header_present = looks_like_header(rows[0]) if has_header is None else has_header
    if header_present:
        return ParsedCsv(headers=rows[0], rows=rows[1:], has_header=True)

    width = max(len(row) for row in rows)
    return ParsedCsv(headers=synthetic_headers(width), rows=rows, has_header=False)


def raw_header_cells(text: str) -> List[str]:
    """First physical line split on commas, before NUL stripping; used for binary detection."""
    for line in _LINE_SPLIT.split(text):
        if line.strip():
            return line.split(",")
    return []
