"""
Logging setup for the migrator.

Every module logs through ``logging.getLogger(__name__)``. ``configure_logging``
wires them to one stdout handler; the legacy import package can be given its
own level because a large archive produces a warning per bad row.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
LEGACY_LOGGER = "app.domain.legacy"

_is_configured = False


def configure_logging(level: Optional[str] = None, import_level: Optional[str] = None) -> None:
    """
    Configure logging once per process.

    Args:
        level: Root level (e.g. "DEBUG", "INFO"). Defaults to INFO.
        import_level: Level for ``app.domain.legacy``; defaults to ``level``.
    """
    global _is_configured

    if _is_configured:
        return

    log_level = (level or "INFO").upper()
    legacy_level = (import_level or log_level).upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {"format": LOG_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
            },
            "handlers": {
                "stdout": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "formatter": "standard",
                },
            },
            "root": {"handlers": ["stdout"], "level": log_level},
            "loggers": {
                "app": {"level": log_level},
                LEGACY_LOGGER: {"level": legacy_level},
                # boto logs every object fetch at INFO
                "botocore": {"level": "WARNING"},
                "boto3": {"level": "WARNING"},
            },
        }
    )

    _is_configured = True
