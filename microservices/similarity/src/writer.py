"""
Buffered, de-duplicating writer in front of a :class:`SimilaritySink`.

Persistence is best-effort: a failed sink call is logged and
reported as :attr:`WriteOutcome.FAILED` but never raised, so one bad batch
cannot stop the run.  Records lost that way are not retried here (the sink
retries transient errors itself).

Write path
----------
1. With caching enabled (``verbose``), a payload equal to the one last
   written for the same owner is skipped.
2. Records are buffered and flushed in batches of ``bulk_size``.
3. At most ``max_num_of_writers`` batches are in the sink at once; further
   callers block until a slot frees up.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from microservices.similarity.src.cache import LRUCache
from microservices.similarity.src.schemas import SimilarityRecord
from microservices.similarity.src.sink import SimilaritySink

logger = logging.getLogger(__name__)

Payload = tuple[tuple[int, float], ...]


class WriteOutcome(str, Enum):
    """What happened to a single :meth:`ResultWriter.write` call."""
    WRITTEN = "written"
    BUFFERED = "buffered"
    DEDUPLICATED = "deduplicated"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class WriterStats:
    written: int = 0
    deduplicated: int = 0
    failed: int = 0
    dropped_after_close: int = 0


def _to_payload(neighbors: Iterable[Any]) -> Payload:
    """Normalise ``Neighbor`` objects or ``(id, value)`` pairs to a tuple."""
    payload = []
    for n in neighbors:
        if isinstance(n, tuple):
            neighbor_id, value = n
        else:
            neighbor_id, value = n.neighbor_id, n.value
        payload.append((int(neighbor_id), float(value)))
    return tuple(payload)


class ResultWriter:
    """Thread-safe writer of neighbourhood records.

    Parameters
    ----------
    sink : SimilaritySink
        Where records end up.
    verbose : bool
        Enables the de-duplication cache.
    cache_size : int
        LRU capacity of the cache (ignored when ``verbose`` is off).
    max_num_of_writers : int
        Maximum concurrent sink operations.
    bulk_size : int
        Records per sink call.  ``1`` writes each record immediately.
    close_timeout : float
        Seconds :meth:`close` waits for in-flight sink calls.
    """

    def __init__(
        self,
        sink: SimilaritySink,
        verbose: bool = False,
        cache_size: int = 1000,
        max_num_of_writers: int = 4,
        bulk_size: int = 1,
        close_timeout: float = 30.0,
    ) -> None:
        self._sink = sink
        self._cache: Optional[LRUCache] = LRUCache(cache_size) if verbose else None
        self._slots = threading.BoundedSemaphore(max(1, max_num_of_writers))
        self.bulk_size = max(1, bulk_size)
        self.close_timeout = close_timeout

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._buffer: list[tuple[SimilarityRecord, Payload]] = []
        self._in_flight = 0
        self._closed = False
        self.stats = WriterStats()

    @property
    def caching(self) -> bool:
        return self._cache is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, owner_id: int, neighbors: Iterable[Any]) -> WriteOutcome:
        """Queue the neighbourhood of *owner_id* for persistence."""
        payload = _to_payload(neighbors)

        if self._closed:
            return self._drop_closed(owner_id)

        if self._cache is not None and self._cache.get(owner_id) == payload:
            with self._lock:
                self.stats.deduplicated += 1
            return WriteOutcome.DEDUPLICATED

        try:
            record = SimilarityRecord.build(owner_id, payload)
        except ValidationError as exc:
            logger.error("[writer] Invalid record for owner %s: %s", owner_id, exc)
            with self._lock:
                self.stats.failed += 1
            return WriteOutcome.FAILED

        with self._lock:
            if self._closed:
                batch = None
            else:
                self._buffer.append((record, payload))
                if len(self._buffer) < self.bulk_size:
                    return WriteOutcome.BUFFERED
                batch, self._buffer = self._buffer, []
                self._in_flight += 1

        if batch is None:
            return self._drop_closed(owner_id)
        return self._flush_batch(batch)

    def flush(self) -> Optional[WriteOutcome]:
        """Push buffered records to the sink.  ``None`` if nothing was buffered."""
        with self._lock:
            if not self._buffer:
                return None
            batch, self._buffer = self._buffer, []
            self._in_flight += 1
        return self._flush_batch(batch)

    def _flush_batch(self, batch: list[tuple[SimilarityRecord, Payload]]) -> WriteOutcome:
        try:
            with self._slots:
                self._sink.write_batch([record for record, _ in batch])
        except Exception as exc:
            owners = [record.owner_id for record, _ in batch]
            logger.error(
                "[writer] Sink write failed for %d record(s) (owners %s): %s",
                len(batch), owners[:10], exc,
            )
            with self._lock:
                self.stats.failed += len(batch)
            return WriteOutcome.FAILED
        else:
            if self._cache is not None:
                for record, payload in batch:
                    self._cache.put(record.owner_id, payload)
            with self._lock:
                self.stats.written += len(batch)
            return WriteOutcome.WRITTEN
        finally:
            with self._idle:
                self._in_flight -= 1
                self._idle.notify_all()

    def _drop_closed(self, owner_id: int) -> WriteOutcome:
        logger.warning("[writer] Writer is closed; dropping record for owner %s.", owner_id)
        with self._lock:
            self.stats.dropped_after_close += 1
        return WriteOutcome.CLOSED

    def close(self) -> None:
        """Drain outstanding writes, flush the buffer and close the sink.

        Idempotent.  Never raises; problems are logged.
        """
        with self._idle:
            if self._closed:
                return
            self._closed = True
            drained = self._idle.wait_for(
                lambda: self._in_flight == 0, timeout=self.close_timeout,
            )
            batch, self._buffer = self._buffer, []
            if batch:
                self._in_flight += 1

        if not drained:
            logger.warning(
                "[writer] %d sink operation(s) still running after %.1fs; closing anyway.",
                self._in_flight, self.close_timeout,
            )
        if batch:
            self._flush_batch(batch)

        try:
            self._sink.close()
        except Exception:
            logger.exception("[writer] Failed to close sink %r.", self._sink)

        if self._cache is not None:
            self._cache.clear()

        logger.info("[writer] Closed. %s", self.stats_snapshot())

    def stats_snapshot(self) -> dict[str, int]:
        with self._lock:
            return asdict(self.stats)

    def __enter__(self) -> "ResultWriter":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
