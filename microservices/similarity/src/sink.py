"""
Persistence sinks for similarity records.

The writer talks to storage only through :class:`SimilaritySink`.  The
production sink upserts records into PostgreSQL:

  - ``ensure_schema()`` creates the target table before any worker starts
    (failure is fatal for the run)
  - ``write_batch()`` is an idempotent upsert keyed on ``owner_id``, so a
    rerun simply replaces the previous neighbourhoods
  - no business logic here, only persistence
"""

from __future__ import annotations

import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from typing import Any, Sequence

import psycopg2
import psycopg2.extras
import psycopg2.pool

from microservices.similarity.src.retry import retry
from microservices.similarity.src.schemas import FieldNames, SimilarityRecord

logger = logging.getLogger(__name__)

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

_TRANSIENT_PG_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


class SinkError(Exception):
    """Raised when the sink cannot be prepared for a run."""


class SimilaritySink(ABC):
    """Destination for materialised neighbourhoods."""

    def ensure_schema(self) -> None:
        """Make sure the destination accepts :class:`SimilarityRecord` rows."""

    @abstractmethod
    def write_batch(self, records: Sequence[SimilarityRecord]) -> int:
        """Persist *records*; return the number written."""

    def close(self) -> None:
        """Release connections and other resources."""


def connection_params_from_env() -> dict[str, Any]:
    return {
        "host": os.environ.get("POSTGRES_HOST", "localhost"),
        "port": int(os.environ.get("POSTGRES_PORT", "5432")),
        "user": os.environ.get("POSTGRES_USER", "postgres"),
        "password": os.environ.get("POSTGRES_PASSWORD", "postgres"),
        "dbname": os.environ.get("POSTGRES_DB", "recommendations"),
    }


class PostgresSimilaritySink(SimilaritySink):
    """Upserts similarity records into a PostgreSQL table.

    Parameters
    ----------
    table : str
        Target table (optionally schema-qualified).
    fields : FieldNames
        Field names used inside the ``neighbors`` JSONB documents.
    max_connections : int
        Pool size; match it to the writer's ``max_num_of_writers``.
    conn_params : dict | None
        psycopg2 connection keyword arguments.  Defaults to ``POSTGRES_*``
        environment variables.
    """

    def __init__(
        self,
        table: str,
        fields: FieldNames | None = None,
        max_connections: int = 4,
        conn_params: dict[str, Any] | None = None,
    ) -> None:
        if not _TABLE_NAME.match(table):
            raise ValueError(f"Invalid table name '{table}'.")
        self.table = table
        self.fields = fields or FieldNames()
        self.max_connections = max(1, max_connections)
        self._conn_params = conn_params or connection_params_from_env()
        self._pool: psycopg2.pool.ThreadedConnectionPool | None = None
        self._pool_lock = threading.Lock()
        self._closed = False

    def _get_pool(self) -> psycopg2.pool.ThreadedConnectionPool:
        with self._pool_lock:
            if self._closed:
                raise SinkError(f"Sink for '{self.table}' is closed.")
            if self._pool is None or self._pool.closed:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=1,
                    maxconn=self.max_connections,
                    **self._conn_params,
                )
                logger.info(
                    "[sink] Connection pool created for %s (maxconn=%d).",
                    self._conn_params.get("host"), self.max_connections,
                )
            return self._pool

    def ensure_schema(self) -> None:
        """Create the target table if it does not exist.

        Raises
        ------
        SinkError
            If the database is unreachable or the DDL fails.
        """
        ddl = f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                owner_id     BIGINT PRIMARY KEY,
                generated_at TIMESTAMPTZ NOT NULL,
                neighbors    JSONB NOT NULL
            )
        """
        try:
            pool = self._get_pool()
            conn = pool.getconn()
        except psycopg2.Error as exc:
            raise SinkError(f"Cannot connect to PostgreSQL: {exc}") from exc

        try:
            with conn:
                with conn.cursor() as cur:
                    cur.execute(ddl)
            logger.info("[sink] Table '%s' is ready.", self.table)
        except psycopg2.Error as exc:
            raise SinkError(f"Failed to create table '{self.table}': {exc}") from exc
        finally:
            pool.putconn(conn)

    @retry(max_retries=2, backoff_sec=0.5, retryable_exceptions=_TRANSIENT_PG_ERRORS)
    def write_batch(self, records: Sequence[SimilarityRecord]) -> int:
        if not records:
            return 0

        rows = [
            (
                r.owner_id,
                r.timestamp,
                psycopg2.extras.Json(r.to_document(self.fields)[self.fields.neighbors_field]),
            )
            for r in records
        ]

        pool = self._get_pool()
        conn = pool.getconn()
        broken = False
        try:
            with conn:  # commit / rollback via context manager
                with conn.cursor() as cur:
                    psycopg2.extras.execute_values(
                        cur,
                        f"""
                        INSERT INTO {self.table} (owner_id, generated_at, neighbors)
                        VALUES %s
                        ON CONFLICT (owner_id)
                        DO UPDATE SET
                            generated_at = EXCLUDED.generated_at,
                            neighbors    = EXCLUDED.neighbors
                        """,
                        rows,
                        page_size=len(rows),
                    )
        except _TRANSIENT_PG_ERRORS:
            broken = True
            raise
        finally:
            pool.putconn(conn, close=broken)

        logger.debug("[sink] Upserted %d row(s) into '%s'.", len(rows), self.table)
        return len(rows)

    def close(self) -> None:
        """Close the pool.  Later writes raise :class:`SinkError`."""
        with self._pool_lock:
            self._closed = True
            pool, self._pool = self._pool, None
        if pool is not None and not pool.closed:
            pool.closeall()
            logger.info("[sink] Connection pool for '%s' closed.", self.table)
