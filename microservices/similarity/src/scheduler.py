"""
Parallel scheduler for the similar-entities batch.

A fixed pool of workers pulls IDs from one shared cursor until the ID stream
runs out or the run is cancelled.  Pulling (instead of splitting the ID space
up front) keeps every worker busy even when a few entities with huge
preference sets take far longer than the rest.

Each worker step::

    id = cursor.next_id()
    neighbours = recommender.most_similar(id, num_of_neighbors)
    writer.write(id, neighbours)

Budget
------
With ``max_duration > 0`` the run is cancelled cooperatively once the budget
is spent: workers finish the ID they are on and stop pulling.  After a grace
period the pool is shut down without waiting for stragglers.  Whatever was
written stays written.  Timing out is a normal way for a run to end.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

from microservices.similarity.src.data_model import DataModel
from microservices.similarity.src.recommender import Recommender, RecommenderBuilder
from microservices.similarity.src.writer import ResultWriter

logger = logging.getLogger(__name__)


class IdCursor:
    """Shared pull cursor over a (possibly unbounded) stream of IDs.

    Every ID is handed out to exactly one caller.  If the underlying
    iterable raises, the cursor is exhausted and the exception is kept in
    :attr:`error`.
    """

    def __init__(self, ids: Iterable[int]) -> None:
        self._it: Iterator[int] = iter(ids)
        self._lock = threading.Lock()
        self._claimed = 0
        self._exhausted = False
        self.error: Optional[BaseException] = None

    def next_id(self) -> Optional[int]:
        """Claim the next ID, or ``None`` once the stream is exhausted."""
        with self._lock:
            if self._exhausted:
                return None
            try:
                entity_id = next(self._it)
            except StopIteration:
                self._exhausted = True
                return None
            except Exception as exc:
                self._exhausted = True
                self.error = exc
                logger.error(
                    "[scheduler] ID enumeration failed after %d id(s): %r",
                    self._claimed, exc,
                )
                return None
            self._claimed += 1
            return entity_id

    @property
    def claimed(self) -> int:
        with self._lock:
            return self._claimed

    @property
    def exhausted(self) -> bool:
        with self._lock:
            return self._exhausted


@dataclass
class RunSummary:
    """Outcome of one scheduler run.

    ``processed`` counts IDs whose neighbourhood was computed and handed to
    the writer; ``skipped`` counts IDs whose computation raised.  Whether a
    handed-over record actually reached the sink is only visible in
    ``writer_stats`` (``written`` / ``failed``).  ``enumeration_error`` is
    set when the ID stream itself broke off, in which case the run did not
    cover every ID.
    """
    processed: int = 0
    skipped: int = 0
    timed_out: bool = False
    elapsed_sec: float = 0.0
    num_of_threads: int = 0
    enumeration_error: Optional[str] = None
    writer_stats: dict[str, int] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        """True when every ID of the stream was pulled."""
        return not self.timed_out and self.enumeration_error is None


class _Counters:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.processed = 0
        self.skipped = 0

    def add(self, processed: int = 0, skipped: int = 0) -> None:
        with self._lock:
            self.processed += processed
            self.skipped += skipped


class SimilarityScheduler:
    """Runs the recommender over every ID with a fixed worker pool.

    Parameters
    ----------
    recommender : Recommender
        Built recommender (read-only during the run).
    writer : ResultWriter
        Receives every computed neighbourhood.
    num_of_neighbors : int
        Neighbourhood size N.
    num_of_threads : int
        Degree of parallelism.
    max_duration : float
        Wall-clock budget in seconds; ``0`` means unbounded.
    grace_period : float
        Seconds to wait for in-flight IDs after the budget is spent.
    """

    def __init__(
        self,
        recommender: Recommender,
        writer: ResultWriter,
        num_of_neighbors: int = 10,
        num_of_threads: int = 1,
        max_duration: float = 0,
        grace_period: float = 5.0,
    ) -> None:
        if num_of_threads < 1:
            raise ValueError(f"num_of_threads must be >= 1, got {num_of_threads}")
        self.recommender = recommender
        self.writer = writer
        self.num_of_neighbors = num_of_neighbors
        self.num_of_threads = num_of_threads
        self.max_duration = max_duration
        self.grace_period = grace_period

    def run(self, ids: Iterable[int]) -> RunSummary:
        """Process every ID (or as many as the budget allows)."""
        cursor = IdCursor(ids)
        cancel = threading.Event()
        counters = _Counters()
        timed_out = False
        started = time.monotonic()

        logger.info(
            "[scheduler] Starting %d worker(s): recommender=%r, neighbors=%d, max_duration=%ss.",
            self.num_of_threads, self.recommender, self.num_of_neighbors, self.max_duration,
        )

        executor = ThreadPoolExecutor(
            max_workers=self.num_of_threads,
            thread_name_prefix="similarity-worker",
        )
        try:
            futures = [
                executor.submit(self._work, n, cursor, cancel, counters)
                for n in range(self.num_of_threads)
            ]
            budget = self.max_duration if self.max_duration and self.max_duration > 0 else None
            _, not_done = wait(futures, timeout=budget)

            if not_done:
                timed_out = True
                logger.info(
                    "[scheduler] Budget of %ss spent; cancelling %d worker(s).",
                    self.max_duration, len(not_done),
                )
                cancel.set()
                _, not_done = wait(not_done, timeout=self.grace_period)
                if not_done:
                    logger.warning(
                        "[scheduler] %d worker(s) still busy after %.1fs grace period; "
                        "shutting the pool down without them.",
                        len(not_done), self.grace_period,
                    )

            for future in futures:
                if future.done() and future.exception() is not None:
                    logger.error(
                        "[scheduler] Worker died unexpectedly: %s", future.exception(),
                    )
        finally:
            cancel.set()
            executor.shutdown(wait=False, cancel_futures=True)

        summary = RunSummary(
            processed=counters.processed,
            skipped=counters.skipped,
            timed_out=timed_out,
            elapsed_sec=time.monotonic() - started,
            num_of_threads=self.num_of_threads,
            enumeration_error=repr(cursor.error) if cursor.error is not None else None,
        )
        logger.info(
            "[scheduler] Finished: processed=%d skipped=%d timed_out=%s elapsed=%.2fs.",
            summary.processed, summary.skipped, summary.timed_out, summary.elapsed_sec,
        )
        if summary.enumeration_error is not None:
            logger.warning(
                "[scheduler] Run is incomplete: ID stream failed after %d id(s).",
                cursor.claimed,
            )
        return summary

    def _work(
        self,
        worker_id: int,
        cursor: IdCursor,
        cancel: threading.Event,
        counters: _Counters,
    ) -> None:
        logger.debug("[scheduler] Worker %d started.", worker_id)
        while not cancel.is_set():
            entity_id = cursor.next_id()
            if entity_id is None:
                break
            try:
                neighbors = self.recommender.most_similar(entity_id, self.num_of_neighbors)
                self.writer.write(entity_id, neighbors)
            except Exception as exc:
                logger.error(
                    "[scheduler] Worker %d failed on id=%s with %r: %s",
                    worker_id, entity_id, self.recommender, exc,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                counters.add(skipped=1)
                continue
            counters.add(processed=1)
        logger.debug("[scheduler] Worker %d stopped.", worker_id)


def compute(
    ids: Optional[Iterable[int]],
    data_model: DataModel,
    recommender_builder: RecommenderBuilder,
    writer: ResultWriter,
    target: str = "users",
    num_of_neighbors: int = 10,
    num_of_threads: int = 1,
    max_duration: float = 0,
    grace_period: float = 5.0,
) -> RunSummary:
    """Build the recommender and run the scheduler over *ids*.

    Parameters
    ----------
    ids : Iterable[int] | None
        IDs to process.  ``None`` → every user (or item, per *target*) of
        the data model.
    target : str
        ``"users"`` or ``"items"``; selects the default ID enumeration.

    Raises
    ------
    RecommenderBuildError
        If the recommender cannot be built.  The writer is closed first.
    """
    try:
        recommender = recommender_builder.build_recommender(data_model)

        if ids is None:
            ids = data_model.item_ids() if target == "items" else data_model.user_ids()

        scheduler = SimilarityScheduler(
            recommender,
            writer,
            num_of_neighbors=num_of_neighbors,
            num_of_threads=num_of_threads,
            max_duration=max_duration,
            grace_period=grace_period,
        )
        summary = scheduler.run(ids)
    finally:
        writer.close()

    summary.writer_stats = writer.stats_snapshot()
    return summary
