"""
Unit tests for the PostgreSQL sink.

psycopg2 is mocked: the tests verify the SQL issued, the upsert (idempotency)
clause, connection pool hand-back, and that schema failures are fatal.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from microservices.similarity.src.schemas import FieldNames, SimilarityRecord
from microservices.similarity.src.sink import PostgresSimilaritySink, SinkError

_MODULE = "microservices.similarity.src.sink"


def _records(n: int = 2) -> list[SimilarityRecord]:
    ts = datetime(2026, 10, 19, tzinfo=timezone.utc)
    return [
        SimilarityRecord.build(i, [(i + 1, 0.5), (i + 2, 0.25)], timestamp=ts)
        for i in range(n)
    ]


@pytest.fixture()
def mock_pool():
    """Mock ThreadedConnectionPool whose connection/cursor are context managers."""
    cur = MagicMock()
    cursor_ctx = MagicMock()
    cursor_ctx.__enter__ = MagicMock(return_value=cur)
    cursor_ctx.__exit__ = MagicMock(return_value=False)

    conn = MagicMock()
    conn.cursor.return_value = cursor_ctx
    conn.__enter__ = MagicMock(return_value=conn)
    conn.__exit__ = MagicMock(return_value=False)

    pool = MagicMock()
    pool.closed = False
    pool.getconn.return_value = conn

    with patch(f"{_MODULE}.psycopg2.pool.ThreadedConnectionPool", return_value=pool) as factory:
        yield factory, pool, conn, cur


class TestSchema:

    def test_ensure_schema_creates_table(self, mock_pool):
        _, pool, conn, cur = mock_pool
        PostgresSimilaritySink("user_similarities", conn_params={}).ensure_schema()

        ddl = cur.execute.call_args[0][0]
        assert "CREATE TABLE IF NOT EXISTS user_similarities" in ddl
        assert "owner_id" in ddl and "JSONB" in ddl
        pool.putconn.assert_called_once_with(conn)

    def test_schema_failure_is_fatal(self, mock_pool):
        _, pool, _, cur = mock_pool
        cur.execute.side_effect = psycopg2.ProgrammingError("permission denied")

        with pytest.raises(SinkError, match="user_similarities"):
            PostgresSimilaritySink("user_similarities", conn_params={}).ensure_schema()
        pool.putconn.assert_called_once()

    def test_unreachable_database_is_fatal(self):
        with patch(
            f"{_MODULE}.psycopg2.pool.ThreadedConnectionPool",
            side_effect=psycopg2.OperationalError("connection refused"),
        ):
            with pytest.raises(SinkError, match="connect"):
                PostgresSimilaritySink("t", conn_params={}).ensure_schema()

    def test_invalid_table_name_rejected(self):
        with pytest.raises(ValueError, match="Invalid table name"):
            PostgresSimilaritySink("users; DROP TABLE x", conn_params={})


class TestWriteBatch:

    def test_upserts_rows(self, mock_pool):
        _, pool, conn, _ = mock_pool
        sink = PostgresSimilaritySink("user_similarities", conn_params={})

        with patch(f"{_MODULE}.psycopg2.extras.execute_values") as mock_ev:
            written = sink.write_batch(_records(3))

        assert written == 3
        assert mock_ev.call_count == 1
        sql, rows = mock_ev.call_args[0][1], mock_ev.call_args[0][2]
        assert "ON CONFLICT (owner_id)" in sql
        assert [row[0] for row in rows] == [0, 1, 2]
        pool.putconn.assert_called_once_with(conn, close=False)

    def test_neighbors_use_configured_field_names(self, mock_pool):
        sink = PostgresSimilaritySink(
            "item_similarities", fields=FieldNames.for_target("items"), conn_params={},
        )
        with patch(f"{_MODULE}.psycopg2.extras.execute_values") as mock_ev:
            sink.write_batch(_records(1))

        neighbors_json = mock_ev.call_args[0][2][0][2]
        assert neighbors_json.adapted == [
            {"item_id": 1, "value": 0.5},
            {"item_id": 2, "value": 0.25},
        ]

    def test_empty_batch_skips_database(self, mock_pool):
        factory, _, _, _ = mock_pool
        assert PostgresSimilaritySink("t", conn_params={}).write_batch([]) == 0
        factory.assert_not_called()

    def test_transient_error_retried_then_raised(self, mock_pool):
        _, pool, conn, _ = mock_pool
        sink = PostgresSimilaritySink("t", conn_params={})

        with (
            patch(
                f"{_MODULE}.psycopg2.extras.execute_values",
                side_effect=psycopg2.OperationalError("server closed the connection"),
            ) as mock_ev,
            patch("microservices.similarity.src.retry.time.sleep"),
        ):
            with pytest.raises(psycopg2.OperationalError):
                sink.write_batch(_records(1))

        # initial attempt + 2 retries, each broken connection discarded
        assert mock_ev.call_count == 3
        pool.putconn.assert_called_with(conn, close=True)

    def test_close_closes_pool(self, mock_pool):
        _, pool, _, _ = mock_pool
        sink = PostgresSimilaritySink("t", conn_params={})
        sink._get_pool()
        sink.close()
        pool.closeall.assert_called_once()

    def test_write_after_close_does_not_reopen_pool(self, mock_pool):
        factory, pool, _, _ = mock_pool
        sink = PostgresSimilaritySink("t", conn_params={})
        sink.ensure_schema()
        sink.close()

        with patch(f"{_MODULE}.psycopg2.extras.execute_values") as mock_ev:
            with pytest.raises(SinkError, match="closed"):
                sink.write_batch(_records(1))

        assert factory.call_count == 1
        pool.closeall.assert_called_once()
        mock_ev.assert_not_called()

    def test_concurrent_first_use_creates_one_pool(self, mock_pool):
        factory, _, _, _ = mock_pool
        sink = PostgresSimilaritySink("t", conn_params={})
        start = threading.Barrier(8)

        def first_use():
            start.wait()
            sink._get_pool()

        threads = [threading.Thread(target=first_use) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert factory.call_count == 1
