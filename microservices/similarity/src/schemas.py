"""
Output record schema for similarity results.

Every record written to the sink has the shape::

    {
        "<id field>": 42,
        "<timestamp field>": "2026-10-19T08:00:00+00:00",
        "<neighbours field>": [{"<id field>": 7, "<value field>": 0.5}, ...]
    }

Field names default to the user target (``user_id`` / ``users``) and can be
switched to the item target with :meth:`FieldNames.for_target`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from pydantic import BaseModel, Field


class NeighborEntry(BaseModel):
    """A single neighbour of the owner entity."""
    neighbor_id: int
    value: float = Field(..., ge=-1.0, le=1.0)


class SimilarityRecord(BaseModel):
    """The materialised neighbourhood of one entity."""
    owner_id: int
    timestamp: datetime
    neighbors: list[NeighborEntry]

    @classmethod
    def build(
        cls,
        owner_id: int,
        neighbors: Iterable[tuple[int, float]],
        timestamp: datetime | None = None,
    ) -> "SimilarityRecord":
        return cls(
            owner_id=owner_id,
            timestamp=timestamp or datetime.now(timezone.utc),
            neighbors=[
                NeighborEntry(neighbor_id=nid, value=value) for nid, value in neighbors
            ],
        )

    def to_document(self, fields: "FieldNames | None" = None) -> dict[str, Any]:
        """Render with the sink's field names."""
        fields = fields or FieldNames()
        return {
            fields.id_field: self.owner_id,
            fields.timestamp_field: self.timestamp.isoformat(),
            fields.neighbors_field: [
                {fields.id_field: n.neighbor_id, fields.value_field: n.value}
                for n in self.neighbors
            ],
        }


@dataclass(frozen=True)
class FieldNames:
    """Names used for the record fields in the persisted document."""
    id_field: str = "user_id"
    neighbors_field: str = "users"
    value_field: str = "value"
    timestamp_field: str = "@timestamp"

    @classmethod
    def for_target(cls, target: str) -> "FieldNames":
        if target == "items":
            return cls(id_field="item_id", neighbors_field="items")
        return cls()
