"""
Similarity metrics for the similarity microservice.

A metric is a small capability interface over a :class:`DataModel`:

    user_similarity(a, b)          -> float
    item_similarity(a, b)          -> float
    item_similarities(a, [b, ...]) -> list[float]
    refresh()

Scores are symmetric.  ``NaN`` means "could not be computed" and is
distinct from ``0.0`` ("computably dissimilar"); callers drop NaN scores
rather than rank them.

Tanimoto coefficient
--------------------
The extended Jaccard coefficient over preference *sets*:

    |X ∩ Y| / (|X| + |Y| - |X ∩ Y|)

It is meant for "binary" data where a user either expresses a generic
"yes" for an item or nothing at all, so preference values are ignored and
the result lies in [0, 1].
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Sequence

from microservices.similarity.src.data_model import DataModel, intersection_size

logger = logging.getLogger(__name__)

NAN = float("nan")


class UnsupportedOperationError(Exception):
    """Raised when a metric is asked for a capability it does not have."""


class SimilarityMetric(ABC):
    """Capability interface shared by every metric."""

    #: Whether inferred/weighted preference values influence the score.
    supports_weighted_preferences: bool = False

    def __init__(self, data_model: DataModel) -> None:
        self._data_model = data_model

    @property
    def data_model(self) -> DataModel:
        return self._data_model

    @abstractmethod
    def user_similarity(self, user_id1: int, user_id2: int) -> float: ...

    @abstractmethod
    def item_similarity(self, item_id1: int, item_id2: int) -> float: ...

    def item_similarities(self, item_id1: int, item_id2s: Sequence[int]) -> list[float]:
        return [self.item_similarity(item_id1, other) for other in item_id2s]

    def set_preference_inferrer(self, inferrer: Any) -> None:
        """Install a strategy that infers missing preference values.

        Raises
        ------
        UnsupportedOperationError
            If the metric does not use preference values at all.
        """
        if not self.supports_weighted_preferences:
            raise UnsupportedOperationError(
                f"{type(self).__name__} ignores preference values; "
                "a preference inferrer cannot be applied."
            )
        self._inferrer = inferrer

    def refresh(self) -> None:
        self._data_model.refresh()


class TanimotoCoefficientSimilarity(SimilarityMetric):
    """Tanimoto / extended Jaccard similarity over preference sets."""

    supports_weighted_preferences = False

    def user_similarity(self, user_id1: int, user_id2: int) -> float:
        x_prefs = self._data_model.item_ids_from_user(user_id1)
        y_prefs = self._data_model.item_ids_from_user(user_id2)

        x_size = len(x_prefs)
        y_size = len(y_prefs)
        if x_size == 0 and y_size == 0:
            return NAN
        if x_size == 0 or y_size == 0:
            return 0.0

        intersection = intersection_size(x_prefs, y_prefs)
        if intersection == 0:
            return NAN

        union = x_size + y_size - intersection
        return intersection / union

    def item_similarity(self, item_id1: int, item_id2: int) -> float:
        preferring1 = self._data_model.num_users_with_preference_for(item_id1)
        return self._item_similarity(item_id1, item_id2, preferring1)

    def item_similarities(self, item_id1: int, item_id2s: Sequence[int]) -> list[float]:
        preferring1 = self._data_model.num_users_with_preference_for(item_id1)
        return [
            self._item_similarity(item_id1, item_id2, preferring1)
            for item_id2 in item_id2s
        ]

    def _item_similarity(self, item_id1: int, item_id2: int, preferring1: int) -> float:
        preferring1and2 = self._data_model.num_users_with_preference_for_both(
            item_id1, item_id2
        )
        if preferring1and2 == 0:
            return NAN
        preferring2 = self._data_model.num_users_with_preference_for(item_id2)
        return preferring1and2 / (preferring1 + preferring2 - preferring1and2)

    def __repr__(self) -> str:
        return f"TanimotoCoefficientSimilarity[dataModel:{self._data_model!r}]"


# ── Registry ──────────────────────────────────────────────────────────────

_METRICS: dict[str, Callable[[DataModel], SimilarityMetric]] = {
    "tanimoto": TanimotoCoefficientSimilarity,
    "jaccard": TanimotoCoefficientSimilarity,
}


def create_similarity(name: str, data_model: DataModel) -> SimilarityMetric:
    """Instantiate the metric configured under ``similarity.name``.

    Raises
    ------
    ValueError
        If *name* is not a known metric.
    """
    try:
        factory = _METRICS[name.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown similarity metric '{name}'. Known: {sorted(_METRICS)}"
        ) from None
    metric = factory(data_model)
    logger.info("[similarity] Using %r.", metric)
    return metric
