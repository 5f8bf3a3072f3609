"""
Read-only preference data model for the similarity microservice.

A data model is a snapshot of "who prefers what": it answers which items a
user has a preference for, which users prefer an item, and how many users
prefer one item or a pair of items.  Preference *values* are not kept; the
set-based metrics only look at presence or absence.

The model is built once per run and never mutated afterwards, so any number
of scheduler workers may read it concurrently without locking.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import AbstractSet, Iterable, Iterator, Tuple

logger = logging.getLogger(__name__)

_EMPTY: frozenset[int] = frozenset()


class DataModelError(Exception):
    """Raised when a data model cannot be constructed.  Fatal for a run."""


def intersection_size(x: AbstractSet[int], y: AbstractSet[int]) -> int:
    """Number of IDs present in both sets, probing the larger with the smaller."""
    if len(x) > len(y):
        x, y = y, x
    return sum(1 for entity_id in x if entity_id in y)


class DataModel(ABC):
    """Read-only view over a preference snapshot."""

    @abstractmethod
    def user_ids(self) -> Iterator[int]:
        """All user IDs, in ascending order."""

    @abstractmethod
    def item_ids(self) -> Iterator[int]:
        """All item IDs, in ascending order."""

    @abstractmethod
    def item_ids_from_user(self, user_id: int) -> AbstractSet[int]:
        """Items *user_id* has a preference for (empty if unknown)."""

    @abstractmethod
    def user_ids_from_item(self, item_id: int) -> AbstractSet[int]:
        """Users with a preference for *item_id* (empty if unknown)."""

    @abstractmethod
    def num_users(self) -> int: ...

    @abstractmethod
    def num_items(self) -> int: ...

    def num_users_with_preference_for(self, item_id: int) -> int:
        return len(self.user_ids_from_item(item_id))

    def num_users_with_preference_for_both(self, item_id1: int, item_id2: int) -> int:
        return intersection_size(
            self.user_ids_from_item(item_id1),
            self.user_ids_from_item(item_id2),
        )

    def refresh(self) -> None:
        """Reload state from the backing store.  Snapshots have nothing to do."""


class InMemoryDataModel(DataModel):
    """Data model holding both user→items and item→users indexes in memory.

    Parameters
    ----------
    user_items : dict[int, frozenset[int]]
        Items per user.  The reverse index is derived from it.
    """

    def __init__(self, user_items: dict[int, frozenset[int]]) -> None:
        self._user_items: dict[int, frozenset[int]] = dict(user_items)

        item_users: dict[int, set[int]] = {}
        for user_id, items in self._user_items.items():
            for item_id in items:
                item_users.setdefault(item_id, set()).add(user_id)
        self._item_users: dict[int, frozenset[int]] = {
            item_id: frozenset(users) for item_id, users in item_users.items()
        }

        self._sorted_user_ids: Tuple[int, ...] = tuple(sorted(self._user_items))
        self._sorted_item_ids: Tuple[int, ...] = tuple(sorted(self._item_users))

        logger.info(
            "[data_model] Snapshot ready: %d users, %d items.",
            len(self._sorted_user_ids), len(self._sorted_item_ids),
        )

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[int, int]]) -> "InMemoryDataModel":
        """Build a model from ``(user_id, item_id)`` preference pairs.

        Duplicate pairs collapse into a single preference.
        """
        user_items: dict[int, set[int]] = {}
        for user_id, item_id in pairs:
            user_items.setdefault(int(user_id), set()).add(int(item_id))
        return cls({uid: frozenset(items) for uid, items in user_items.items()})

    def user_ids(self) -> Iterator[int]:
        return iter(self._sorted_user_ids)

    def item_ids(self) -> Iterator[int]:
        return iter(self._sorted_item_ids)

    def item_ids_from_user(self, user_id: int) -> frozenset[int]:
        return self._user_items.get(user_id, _EMPTY)

    def user_ids_from_item(self, item_id: int) -> frozenset[int]:
        return self._item_users.get(item_id, _EMPTY)

    def num_users(self) -> int:
        return len(self._sorted_user_ids)

    def num_items(self) -> int:
        return len(self._sorted_item_ids)

    def __repr__(self) -> str:
        return f"InMemoryDataModel(users={self.num_users()}, items={self.num_items()})"
