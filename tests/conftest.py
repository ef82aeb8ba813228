"""
Shared test configuration.
These tests are executed by `pytest` and should remain deterministic.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterator

import duckdb
import pytest

ROOT_DIR = Path(__file__).resolve().parent.parent
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from exchange.checkpoint_store import FileCheckpointStore  # noqa: E402


@pytest.fixture
def checkpoint_store(tmp_path: Path) -> FileCheckpointStore:
    return FileCheckpointStore(tmp_path / "checkpoints")


@pytest.fixture
def person_connection() -> Iterator[duckdb.DuckDBPyConnection]:
    """In-memory DuckDB holding person(id, name) with ids 0..99."""
    conn = duckdb.connect(":memory:")
    conn.execute("CREATE TABLE person AS SELECT range AS id, 'person_' || range AS name FROM range(100)")
    yield conn
    conn.close()
