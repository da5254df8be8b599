import logging
import os
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url

from app.core.config import settings

logger = logging.getLogger(__name__)

_engine = None


def _report_connection_failure(exc: Exception) -> None:
    """Log high-signal diagnostics when the application cannot reach the database."""
    logger.warning("Could not connect to database: %s", exc)
    logger.warning("The application will start but database operations will fail until the connection succeeds.")

    try:
        url = make_url(settings.database_url)
    except Exception as parse_error:  # pragma: no cover
        logger.warning("Unable to parse DATABASE_URL (%s); skipping detailed diagnostics.", parse_error)
        return

    logger.warning(
        "Database settings: dialect=%s host=%s port=%s database=%s user=%s SKIP_DB_INIT=%r",
        url.get_backend_name(),
        url.host or "localhost",
        url.port or "(default)",
        url.database,
        url.username,
        os.getenv("SKIP_DB_INIT"),
    )


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        try:
            _engine = create_engine(settings.database_url)
            # Test connection eagerly so failures surface immediately.
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            _report_connection_failure(e)
            _engine = create_engine(settings.database_url)
    return _engine


def set_engine(engine: Optional[Engine]) -> None:
    """Install an engine explicitly (used by tests and one-off scripts)."""
    global _engine
    _engine = engine


def init_db(engine: Optional[Engine] = None) -> None:
    """Create the migration tables if they do not exist yet."""
    from app.db.models import metadata

    metadata.create_all(engine or get_engine())
