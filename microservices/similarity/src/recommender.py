"""
Neighbourhood recommenders and their builders.

A recommender answers one question for the scheduler: "which N entities are
most similar to this one?"  Scores come from a :class:`SimilarityMetric`;
undefined (NaN) scores and the query itself are never returned.  Results are
ordered by descending score with ties broken by ascending ID so that two runs
over the same snapshot produce identical output.
"""

from __future__ import annotations

import heapq
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence

from microservices.similarity.src.data_model import DataModel
from microservices.similarity.src.similarity import SimilarityMetric, create_similarity

logger = logging.getLogger(__name__)


class RecommenderBuildError(Exception):
    """Raised when a recommender cannot be built.  Aborts the whole run."""


@dataclass(frozen=True)
class Neighbor:
    """One entry of a neighbour list."""
    neighbor_id: int
    value: float


def top_n(
    query_id: int,
    scored: Iterable[tuple[int, float]],
    n: int,
) -> list[Neighbor]:
    """Keep the *n* best ``(candidate_id, score)`` pairs.

    Self and NaN scores are dropped; order is descending score, then
    ascending candidate ID.
    """
    if n <= 0:
        return []
    best = heapq.nsmallest(
        n,
        (
            (-score, candidate_id)
            for candidate_id, score in scored
            if candidate_id != query_id and not math.isnan(score)
        ),
    )
    return [Neighbor(candidate_id, -neg_score) for neg_score, candidate_id in best]


class Recommender(ABC):
    """Finds the most similar entities to a query entity."""

    def __init__(self, data_model: DataModel, similarity: SimilarityMetric) -> None:
        self.data_model = data_model
        self.similarity = similarity

    @abstractmethod
    def most_similar(self, query_id: int, n: int) -> list[Neighbor]: ...

    def refresh(self) -> None:
        self.similarity.refresh()

    def __repr__(self) -> str:
        return f"{type(self).__name__}[similarity:{self.similarity!r}]"


class UserBasedRecommender(Recommender):
    """Compares a user against every other user of the data model."""

    def most_similar(self, query_id: int, n: int) -> list[Neighbor]:
        sim = self.similarity
        return top_n(
            query_id,
            (
                (other, sim.user_similarity(query_id, other))
                for other in self.data_model.user_ids()
                if other != query_id
            ),
            n,
        )


class ItemBasedRecommender(Recommender):
    """Compares an item against a candidate item list in one batched call.

    Parameters
    ----------
    candidate_item_ids : Sequence[int] | None
        Items to compare against.  ``None`` means every item of the model.
    """

    def __init__(
        self,
        data_model: DataModel,
        similarity: SimilarityMetric,
        candidate_item_ids: Optional[Sequence[int]] = None,
    ) -> None:
        super().__init__(data_model, similarity)
        self._candidates: tuple[int, ...] = tuple(
            candidate_item_ids if candidate_item_ids is not None
            else data_model.item_ids()
        )

    def most_similar(self, query_id: int, n: int) -> list[Neighbor]:
        candidates = [c for c in self._candidates if c != query_id]
        scores = self.similarity.item_similarities(query_id, candidates)
        return top_n(query_id, zip(candidates, scores), n)


# ══════════════════════════════════════════════════════════════════════════
# Builders
# ══════════════════════════════════════════════════════════════════════════

class RecommenderBuilder(ABC):
    """Composes a data model and the configured metric into a recommender.

    Parameters
    ----------
    similarity_cfg : dict
        The ``similarity`` config section; ``name`` selects the metric.
    """

    def __init__(self, similarity_cfg: dict[str, Any] | None = None) -> None:
        self.similarity_cfg = dict(similarity_cfg or {})

    def build_recommender(self, data_model: DataModel | None) -> Recommender:
        """Build the recommender for *data_model*.

        Raises
        ------
        RecommenderBuildError
            If the model is missing or the metric cannot be created.
        """
        if data_model is None:
            raise RecommenderBuildError("No data model available to build a recommender.")

        name = self.similarity_cfg.get("name", "tanimoto")
        try:
            similarity = create_similarity(name, data_model)
            recommender = self._create(data_model, similarity)
        except Exception as exc:
            raise RecommenderBuildError(
                f"Failed to build {type(self).__name__} with metric '{name}': {exc}"
            ) from exc

        logger.info("[recommender] Built %r.", recommender)
        return recommender

    @abstractmethod
    def _create(self, data_model: DataModel, similarity: SimilarityMetric) -> Recommender: ...


class UserBasedRecommenderBuilder(RecommenderBuilder):
    def _create(self, data_model: DataModel, similarity: SimilarityMetric) -> Recommender:
        return UserBasedRecommender(data_model, similarity)


class ItemBasedRecommenderBuilder(RecommenderBuilder):
    def __init__(
        self,
        similarity_cfg: dict[str, Any] | None = None,
        candidate_item_ids: Optional[Sequence[int]] = None,
    ) -> None:
        super().__init__(similarity_cfg)
        self.candidate_item_ids = candidate_item_ids

    def _create(self, data_model: DataModel, similarity: SimilarityMetric) -> Recommender:
        return ItemBasedRecommender(data_model, similarity, self.candidate_item_ids)
