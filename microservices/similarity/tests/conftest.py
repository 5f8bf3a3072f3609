"""
Shared pytest fixtures for the similarity microservice test suite.

Provides a small in-memory preference snapshot and an in-process sink that
records every batch it receives, so the scheduler and writer can be tested
without Spark or PostgreSQL.
"""

from __future__ import annotations

import sys
import threading
import time
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[3]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from microservices.similarity.src.data_model import InMemoryDataModel
from microservices.similarity.src.sink import SimilaritySink


class CollectingSink(SimilaritySink):
    """Thread-safe sink that keeps every record it is asked to write.

    Parameters
    ----------
    fail_owners : set[int]
        Batches containing one of these owners raise ``IOError``.
    delay_sec : float
        Sleep inside every ``write_batch`` call (simulates a slow store).
    """

    def __init__(self, fail_owners=None, delay_sec: float = 0.0) -> None:
        self.fail_owners = set(fail_owners or ())
        self.delay_sec = delay_sec
        self.batches = []
        self.closed = False
        self.schema_ready = False
        self.max_concurrent = 0
        self._active = 0
        self._lock = threading.Lock()

    def ensure_schema(self) -> None:
        self.schema_ready = True

    def write_batch(self, records):
        with self._lock:
            self._active += 1
            self.max_concurrent = max(self.max_concurrent, self._active)
        try:
            if self.delay_sec:
                time.sleep(self.delay_sec)
            if any(r.owner_id in self.fail_owners for r in records):
                raise IOError("sink unavailable")
            with self._lock:
                self.batches.append(list(records))
            return len(records)
        finally:
            with self._lock:
                self._active -= 1

    def close(self) -> None:
        self.closed = True

    @property
    def records(self):
        with self._lock:
            return [r for batch in self.batches for r in batch]

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.batches)


@pytest.fixture()
def sink() -> CollectingSink:
    return CollectingSink()


@pytest.fixture()
def sink_factory():
    """Build a :class:`CollectingSink` with custom failure or latency settings."""
    return CollectingSink


@pytest.fixture()
def sample_model() -> InMemoryDataModel:
    """Five users over items 1-6; user 5 has no preferences at all.

    user 1: {1, 2, 3}
    user 2: {2, 3, 4}
    user 3: {1, 2, 3}      (identical to user 1)
    user 4: {5, 6}         (disjoint from users 1-3)
    user 5: {}
    """
    return InMemoryDataModel({
        1: frozenset({1, 2, 3}),
        2: frozenset({2, 3, 4}),
        3: frozenset({1, 2, 3}),
        4: frozenset({5, 6}),
        5: frozenset(),
    })
