"""
Batched inserts with row-level fallback.

Rows accumulate until the batch is full and are then written with one bulk
INSERT in a single transaction. When the bulk write fails the batch is
retried one row at a time (up to ``max_row_retries`` rows, each in its own
transaction) so a single bad row does not take its neighbours down with it.
"""
import logging
from dataclasses import dataclass, field
from itertools import groupby
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import Table
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.api.schemas.legacy_import import ImportResult
from app.core.config import settings
from app.domain.legacy.errors import WriteError

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 300


@dataclass
class PendingRow:
    values: Dict[str, Any]
    source_index: int
    legacy_id: Optional[str] = None
    # Additional entity_type -> legacy id pairs to register once written.
    aliases: Dict[str, str] = field(default_factory=dict)


def describe_db_error(exc: Exception) -> str:
    original = getattr(exc, "orig", None) or exc
    message = str(original).strip().splitlines()[0] if str(original).strip() else type(original).__name__
    return message[:MAX_REASON_LENGTH]


class BatchWriter:
    def __init__(
        self,
        engine: Engine,
        table: Table,
        result: ImportResult,
        batch_size: Optional[int] = None,
        max_row_retries: Optional[int] = None,
        max_errors: Optional[int] = None,
        on_written: Optional[Callable[[List[PendingRow]], None]] = None,
    ):
        self.engine = engine
        self.table = table
        self.result = result
        self.batch_size = max(1, batch_size or settings.legacy_import_batch_size)
        self.max_row_retries = settings.legacy_import_max_row_retries if max_row_retries is None else max_row_retries
        self.max_errors = settings.legacy_import_max_errors if max_errors is None else max_errors
        self.on_written = on_written
        self._pending: List[PendingRow] = []
        self.batches_written = 0

    def __enter__(self) -> "BatchWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def add(self, row: PendingRow) -> None:
        self._pending.append(row)
        if len(self._pending) >= self.batch_size:
            self.flush()

    def close(self) -> None:
        self.flush()

    def flush(self) -> None:
        if not self._pending:
            return
        batch, self._pending = self._pending, []

        try:
            self._write(batch)
        except WriteError as exc:
            logger.warning(
                "Bulk insert of %d rows into %s failed (%s); retrying row by row",
                len(batch),
                self.table.name,
                exc,
            )
            written = self._retry_rows(batch, str(exc))
        else:
            written = batch
            self.result.inserted += len(batch)
            logger.debug("Inserted batch of %d rows into %s", len(batch), self.table.name)

        self.batches_written += 1
        if written and self.on_written is not None:
            self.on_written(written)

    def _write(self, rows: List[PendingRow]) -> None:
        # executemany needs one key set per statement
        keyed = sorted(rows, key=lambda row: tuple(sorted(row.values)))
        try:
            with self.engine.begin() as conn:
                for _, group in groupby(keyed, key=lambda row: tuple(sorted(row.values))):
                    conn.execute(self.table.insert(), [row.values for row in group])
        except SQLAlchemyError as exc:
            raise WriteError(describe_db_error(exc), original=exc) from exc

    def _retry_rows(self, batch: List[PendingRow], batch_reason: str) -> List[PendingRow]:
        tried = batch[: self.max_row_retries]
        remainder = batch[self.max_row_retries:]
        written: List[PendingRow] = []

        for row in tried:
            try:
                self._write([row])
            except WriteError as exc:
                logger.warning("Row %d rejected by %s: %s", row.source_index, self.table.name, exc)
                self.result.add_error(row.source_index, str(exc), limit=self.max_errors)
            else:
                written.append(row)
                self.result.inserted += 1

        if remainder:
            self.result.skipped += len(remainder)
            first, last = remainder[0].source_index, remainder[-1].source_index
            self.result.add_error(
                first,
                f"Batch insert failed ({batch_reason}); {len(remainder)} rows ({first}-{last}) "
                f"were not retried individually",
                limit=self.max_errors,
            )
            logger.warning(
                "Skipped %d untried rows of a failed batch for %s", len(remainder), self.table.name
            )
        return written
