"""
Integration tests for the DuckDB source adapter against a real in-memory database.
"""

import logging

import duckdb
import pytest

from exchange.source_config import DuckDBSourceSpec
from exchange.sources import DuckDBSourceAdapter, build_source_adapter, has_stable_ordering, warn_if_unordered

PERSON_SENTENCE = "SELECT id, name FROM person ORDER BY id;"


def test_count_and_range_pages(person_connection: duckdb.DuckDBPyConnection) -> None:
    with DuckDBSourceAdapter(sentence=PERSON_SENTENCE, fetch_size=30, connection=person_connection) as adapter:
        assert adapter.execute_count_query() == 100

        pages = list(adapter.execute_range_query(10, 45))

    assert [len(p) for p in pages] == [30, 15]
    rows = [row for page in pages for row in page]
    assert [r["id"] for r in rows] == list(range(10, 55))
    assert rows[0] == {"id": 10, "name": "person_10"}


def test_range_past_the_end_is_empty(person_connection: duckdb.DuckDBPyConnection) -> None:
    with DuckDBSourceAdapter(sentence=PERSON_SENTENCE, connection=person_connection) as adapter:
        assert list(adapter.execute_range_query(100, 10)) == []


def test_injected_connection_stays_open(person_connection: duckdb.DuckDBPyConnection) -> None:
    with DuckDBSourceAdapter(sentence=PERSON_SENTENCE, connection=person_connection) as adapter:
        adapter.execute_count_query()

    assert person_connection.execute("SELECT count(*) FROM person").fetchone()[0] == 100


def test_query_outside_context_is_rejected() -> None:
    adapter = DuckDBSourceAdapter(sentence="SELECT 1 AS id")

    with pytest.raises(RuntimeError, match="not connected"):
        adapter.execute_count_query()


def test_factory_builds_owned_connection() -> None:
    spec = DuckDBSourceSpec(type="duckdb", sentence="SELECT range AS id FROM range(7) ORDER BY id", fetch_size=3)

    with build_source_adapter(spec) as adapter:
        assert adapter.execute_count_query() == 7
        pages = list(adapter.execute_range_query(2, 4))

    assert [[r["id"] for r in p] for p in pages] == [[2, 3, 4], [5]]


@pytest.mark.parametrize(
    "sentence, expected",
    [
        ("SELECT id FROM person ORDER BY id", True),
        ("select id from person order   by id desc", True),
        ("MATCH (n:person) RETURN n.id ORDER BY n.id", True),
        ("SELECT id FROM person", False),
        ("SELECT border_id FROM person", False),
        ("", False),
        (None, False),
    ],
)
def test_has_stable_ordering(sentence, expected) -> None:
    assert has_stable_ordering(sentence) is expected


def test_warns_when_sentence_is_unordered(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="exchange.sources"):
        warn_if_unordered("person", "SELECT id FROM person")
        warn_if_unordered("team", "SELECT id FROM team ORDER BY id")

    messages = [r.getMessage() for r in caplog.records]
    assert len(messages) == 1
    assert messages[0].startswith("person: the source sentence has no ORDER BY")
