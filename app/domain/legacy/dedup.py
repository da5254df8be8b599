"""
In-memory duplicate detection for one target table.

The index is seeded from the tenant's persisted rows before a file is
imported, then grows as rows are accepted, so duplicates inside the same file
are caught as well as duplicates of earlier runs.
"""
import logging
from typing import Any, Callable, Iterable, Mapping, Optional, Set

from sqlalchemy import Table, select
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

KeyFunction = Callable[[Mapping[str, Any]], Optional[str]]


def normalize_key(value: Any, casefold: bool = False) -> Optional[str]:
    """Trim (and optionally case-fold) a key; blank keys normalise to ``None``."""
    if value is None:
        return None
    key = str(value).strip()
    if not key:
        return None
    return key.casefold() if casefold else key


class DedupIndex:
    """
    Primary/secondary key sets for one table.

    A row with a primary key is a duplicate only when that key is already
    known. Rows without a primary key fall back to the secondary key. The
    optional extra key set (partners' legacy tag) rejects on its own.
    """

    def __init__(
        self,
        primary: Iterable[Any] = (),
        secondary: Iterable[Any] = (),
        extra: Iterable[Any] = (),
        casefold_primary: bool = False,
        casefold_secondary: bool = True,
    ):
        self.casefold_primary = casefold_primary
        self.casefold_secondary = casefold_secondary
        self.primary: Set[str] = set()
        self.secondary: Set[str] = set()
        self.extra: Set[str] = set()
        for value in primary:
            self._add(self.primary, normalize_key(value, casefold_primary))
        for value in secondary:
            self._add(self.secondary, normalize_key(value, casefold_secondary))
        for value in extra:
            self._add(self.extra, normalize_key(value))

    @staticmethod
    def _add(bucket: Set[str], key: Optional[str]) -> None:
        if key is not None:
            bucket.add(key)

    def __len__(self) -> int:
        return len(self.primary) + len(self.secondary) + len(self.extra)

    def seen(self, primary: Any = None, secondary: Any = None, extra: Any = None) -> bool:
        primary_key = normalize_key(primary, self.casefold_primary)
        secondary_key = normalize_key(secondary, self.casefold_secondary)
        extra_key = normalize_key(extra)

        if extra_key is not None and extra_key in self.extra:
            return True
        if primary_key is not None:
            return primary_key in self.primary
        return secondary_key is not None and secondary_key in self.secondary

    def claim(self, primary: Any = None, secondary: Any = None, extra: Any = None) -> bool:
        """Return False for a duplicate; otherwise record every key and return True."""
        if self.seen(primary, secondary, extra):
            return False
        self._add(self.primary, normalize_key(primary, self.casefold_primary))
        self._add(self.secondary, normalize_key(secondary, self.casefold_secondary))
        self._add(self.extra, normalize_key(extra))
        return True

    @classmethod
    def from_table(
        cls,
        engine: Engine,
        table: Table,
        tenant_id: str,
        primary: KeyFunction,
        secondary: Optional[KeyFunction] = None,
        extra: Optional[KeyFunction] = None,
        casefold_primary: bool = False,
        casefold_secondary: bool = True,
    ) -> "DedupIndex":
        """Build an index from the tenant's existing rows in ``table``."""
        primary_values, secondary_values, extra_values = [], [], []
        with engine.connect() as conn:
            rows = conn.execute(select(table).where(table.c.tenant_id == tenant_id)).mappings()
            for row in rows:
                primary_values.append(primary(row))
                if secondary is not None:
                    secondary_values.append(secondary(row))
                if extra is not None:
                    extra_values.append(extra(row))

        index = cls(
            primary_values,
            secondary_values,
            extra_values,
            casefold_primary=casefold_primary,
            casefold_secondary=casefold_secondary,
        )
        logger.debug("Loaded %d dedup keys for %s (tenant %s)", len(index), table.name, tenant_id)
        return index
