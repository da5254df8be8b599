"""
Pytest configuration and fixtures for the legacy migrator tests.

Every test that touches the database gets a fresh in-memory SQLite engine
installed as the application engine, with all tables created.
"""

import os

# The application must not try to reach PostgreSQL during tests.
os.environ["SKIP_DB_INIT"] = "1"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from app.db.models import metadata
from app.db.session import set_engine

TENANT_ID = "tenant-test"


@pytest.fixture
def engine():
    """
    In-memory SQLite engine shared by every connection of one test.

    Installed through ``set_engine`` so code calling ``get_engine()`` sees it.
    """
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    metadata.create_all(test_engine)
    set_engine(test_engine)
    try:
        yield test_engine
    finally:
        set_engine(None)
        test_engine.dispose()


@pytest.fixture
def tenant_id():
    return TENANT_ID
