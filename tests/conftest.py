"""
pytest configuration for polling_cdc tests.

Adds src directory to Python path for imports and provides shared SQLite
fixtures.
"""

import sys
from pathlib import Path

import pytest

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))

from sqlalchemy import create_engine, text  # noqa: E402

from polling_cdc import connection as connection_module  # noqa: E402


@pytest.fixture
def sqlite_url(tmp_path):
    """URL of a file-backed SQLite database with an empty orders table."""
    url = f"sqlite:///{tmp_path / 'shop.db'}"
    engine = create_engine(url, future=True)
    with engine.begin() as conn:
        conn.execute(
            text("CREATE TABLE orders (id INTEGER PRIMARY KEY, payload TEXT)")
        )
    engine.dispose()
    return url


@pytest.fixture
def sqlite_engine(sqlite_url):
    """Engine for inserting test rows into the orders table."""
    engine = create_engine(sqlite_url, future=True)
    yield engine
    engine.dispose()


@pytest.fixture
def insert_rows(sqlite_engine):
    """Insert (id, payload) rows into orders and commit."""

    def _insert(*rows):
        with sqlite_engine.begin() as conn:
            conn.execute(
                text("INSERT INTO orders (id, payload) VALUES (:id, :payload)"),
                [{"id": row_id, "payload": payload} for row_id, payload in rows],
            )

    return _insert


@pytest.fixture(autouse=True)
def clean_datasources():
    """Reset the process-wide datasource registry around each test."""
    connection_module._datasources.clear()
    yield
    connection_module._datasources.clear()
