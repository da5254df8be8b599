"""
Legacy id -> internal id resolution.

Pairs are kept per entity type. They come from the persisted
``legacy_id_map`` table, from tags that earlier imports wrote into free-text
columns (``LEG:<code>``, ``Legacy ID: <id>``), and from rows written during
the current run. New pairs are flushed back to ``legacy_id_map`` by
``persist``.
"""
import logging
import re
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, select
from sqlalchemy.engine import Engine

from app.db.models import TARGET_TABLES, legacy_id_map
from app.domain.legacy.catalog import LegacyCatalog, get_catalog
from app.domain.legacy.errors import DependencyResolutionMiss

logger = logging.getLogger(__name__)


class LegacyIdResolver:
    def __init__(self, engine: Engine, tenant_id: str, catalog: Optional[LegacyCatalog] = None):
        self.engine = engine
        self.tenant_id = tenant_id
        self.catalog = catalog or get_catalog()
        self._maps: Dict[str, Dict[str, str]] = {}
        self._pending: List[Tuple[str, str, str]] = []

    def load(self, entity_type: str) -> Dict[str, str]:
        """Load (once) the known pairs for ``entity_type``."""
        if entity_type in self._maps:
            return self._maps[entity_type]

        mapping: Dict[str, str] = {}
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(legacy_id_map.c.legacy_id, legacy_id_map.c.internal_id).where(
                    and_(
                        legacy_id_map.c.tenant_id == self.tenant_id,
                        legacy_id_map.c.entity_type == entity_type,
                    )
                )
            )
            for legacy_id, internal_id in rows:
                mapping[legacy_id] = internal_id

            backfilled = self._backfill_from_tags(conn, entity_type, mapping)

        self._maps[entity_type] = mapping
        logger.debug(
            "Loaded %d %s legacy ids for tenant %s (%d from tags)",
            len(mapping),
            entity_type,
            self.tenant_id,
            backfilled,
        )
        return mapping

    def _backfill_from_tags(self, conn, entity_type: str, mapping: Dict[str, str]) -> int:
        tag = self.catalog.legacy_tags.get(entity_type)
        if tag is None:
            return 0
        table = TARGET_TABLES.get(tag.table)
        if table is None:
            logger.warning("Legacy tag for %s points at unknown table %s", entity_type, tag.table)
            return 0

        pattern = re.compile(tag.pattern)
        column = table.c[tag.column]
        rows = conn.execute(
            select(table.c.id, column).where(
                and_(table.c.tenant_id == self.tenant_id, column.isnot(None))
            )
        )
        added = 0
        for internal_id, text_value in rows:
            match = pattern.search(text_value or "")
            if match is None:
                continue
            legacy_id = match.group(1).strip()
            if legacy_id and legacy_id not in mapping:
                mapping[legacy_id] = internal_id
                added += 1
        return added

    def register(self, entity_type: str, legacy_id: Optional[str], internal_id: str) -> None:
        if not legacy_id:
            return
        legacy_id = str(legacy_id).strip()
        mapping = self.load(entity_type)
        if mapping.get(legacy_id) == internal_id:
            return
        mapping[legacy_id] = internal_id
        self._pending.append((entity_type, legacy_id, internal_id))

    def resolve(self, entity_type: str, legacy_id: Optional[str]) -> Optional[str]:
        if legacy_id is None:
            return None
        key = str(legacy_id).strip()
        if not key:
            return None
        return self.load(entity_type).get(key)

    def resolve_any(self, entity_types: Iterable[str], legacy_id: Optional[str]) -> Optional[Tuple[str, str]]:
        """Return ``(entity_type, internal_id)`` for the first entity type that knows ``legacy_id``."""
        for entity_type in entity_types:
            internal_id = self.resolve(entity_type, legacy_id)
            if internal_id is not None:
                return entity_type, internal_id
        return None

    def require(self, entity_type: str, legacy_id: Optional[str], *fallbacks: str) -> str:
        """Resolve or raise ``DependencyResolutionMiss``."""
        found = self.resolve_any((entity_type,) + fallbacks, legacy_id)
        if found is None:
            raise DependencyResolutionMiss(entity_type, str(legacy_id or ""))
        return found[1]

    def knows(self, entity_type: str, legacy_id: Optional[str]) -> bool:
        return self.resolve(entity_type, legacy_id) is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def persist(self) -> int:
        """Write pairs registered since the last call; existing keys are left untouched."""
        if not self._pending:
            return 0

        pending, self._pending = self._pending, []
        entity_types = {entity_type for entity_type, _, _ in pending}
        with self.engine.begin() as conn:
            existing = {
                (entity_type, legacy_id)
                for entity_type, legacy_id in conn.execute(
                    select(legacy_id_map.c.entity_type, legacy_id_map.c.legacy_id).where(
                        and_(
                            legacy_id_map.c.tenant_id == self.tenant_id,
                            legacy_id_map.c.entity_type.in_(entity_types),
                        )
                    )
                )
            }
            values = []
            for entity_type, legacy_id, internal_id in pending:
                if (entity_type, legacy_id) in existing:
                    continue
                existing.add((entity_type, legacy_id))
                values.append(
                    {
                        "tenant_id": self.tenant_id,
                        "entity_type": entity_type,
                        "legacy_id": legacy_id,
                        "internal_id": internal_id,
                    }
                )
            if values:
                conn.execute(legacy_id_map.insert(), values)

        logger.info("Persisted %d legacy id mappings for tenant %s", len(values), self.tenant_id)
        return len(values)
