from __future__ import annotations

import logging
import re
import threading
from typing import Any, Iterator, Mapping, Protocol, Sequence

import duckdb

from core.settings import DEFAULT_FETCH_SIZE
from exchange.source_config import DuckDBSourceSpec

logger = logging.getLogger(__name__)

_ORDER_BY_PATTERN = re.compile(r"\border\s+by\b", flags=re.IGNORECASE)

Row = Mapping[str, Any]


class SourceAdapter(Protocol):
    """
    What the range reader needs from a source: a total count and skip/limit pages.

    execute_range_query must honour a stable total ordering, otherwise
    skip/limit windows overlap or miss rows across workers and retries.
    """

    sentence: str | None

    def __enter__(self) -> SourceAdapter:
        ...

    def __exit__(self, exc_type, exc_value, tb) -> None:
        ...

    def execute_count_query(self) -> int:
        ...

    def execute_range_query(self, start: int, size: int) -> Iterator[Sequence[Row]]:
        ...


def has_stable_ordering(sentence: str | None) -> bool:
    return bool(sentence) and _ORDER_BY_PATTERN.search(sentence) is not None


def warn_if_unordered(source_name: str, sentence: str | None) -> None:
    if has_stable_ordering(sentence):
        return
    logger.warning(
        "%s: the source sentence has no ORDER BY clause. Skip/limit ranges are only deterministic "
        "across workers and resumed runs when the query defines a stable order.",
        source_name,
    )


class DuckDBSourceAdapter:
    """
    Relational source backed by DuckDB.

    Count:  SELECT count(*) FROM (<sentence>) AS _src
    Range:  <sentence> LIMIT <size> OFFSET <start>, fetched in fetch_size pages

    Every query runs on its own cursor (a DuckDB cursor is a separate connection to
    the same database), so worker threads never share a connection.
    """

    def __init__(
        self,
        *,
        sentence: str,
        database: str = ":memory:",
        fetch_size: int = DEFAULT_FETCH_SIZE,
        connection: duckdb.DuckDBPyConnection | None = None,
    ):
        self.sentence = sentence.strip().rstrip(";")
        self._database = database
        self._fetch_size = fetch_size

        self._connection = connection
        self._owns_connection = connection is None
        self._cursor_lock = threading.Lock()

    def __enter__(self) -> DuckDBSourceAdapter:
        if self._connection is None:
            self._connection = duckdb.connect(self._database, read_only=self._database != ":memory:")
            self._owns_connection = True
            logger.debug("DuckDB source connected. database=%s", self._database)
        return self

    def __exit__(self, exc_type, exc_value, tb) -> None:
        if self._connection is None or not self._owns_connection:
            return
        try:
            self._connection.close()
        finally:
            self._connection = None

    def _require_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            raise RuntimeError("Source is not connected; use it as a context manager")
        return self._connection

    def _open_cursor(self) -> duckdb.DuckDBPyConnection:
        with self._cursor_lock:
            return self._require_connection().cursor()

    def execute_count_query(self) -> int:
        cursor = self._open_cursor()
        try:
            row = cursor.execute(f"SELECT count(*) FROM ({self.sentence}) AS _src").fetchone()
        finally:
            cursor.close()
        return int(row[0]) if row else 0

    def execute_range_query(self, start: int, size: int) -> Iterator[list[dict[str, Any]]]:
        # Nothing runs until the first next(); callers checkpoint before that.
        cursor = self._open_cursor()
        try:
            cursor.execute(f"{self.sentence} LIMIT {int(size)} OFFSET {int(start)}")
            columns = [d[0] for d in cursor.description]
            while True:
                rows = cursor.fetchmany(self._fetch_size)
                if not rows:
                    break
                yield [dict(zip(columns, row)) for row in rows]
        finally:
            cursor.close()


def build_source_adapter(source_spec: DuckDBSourceSpec) -> SourceAdapter:
    if source_spec.type == "duckdb":
        return DuckDBSourceAdapter(
            sentence=source_spec.sentence,
            database=source_spec.database,
            fetch_size=source_spec.fetch_size,
        )
    raise ValueError(f"Unsupported source type: {source_spec.type}")
