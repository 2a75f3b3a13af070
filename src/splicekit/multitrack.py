"""Relationships between tracks, stored as an undirected graph over ids.

The manager never holds Track objects, only their ids. The Timeline asks
it which tracks are tied to an edited track and applies the mirrored
edits itself.

Relationship kinds:
  locked   structural clip edits (move, trim, remove, split) are mirrored
           onto the temporally corresponding clip of every partner track.
  grouped  mute and lock flag changes propagate to every group member.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Collection

from .errors import TimelineError, UnknownTrackError


class RelationshipKind(str, Enum):
    LOCKED = "locked"
    GROUPED = "grouped"

    @classmethod
    def parse(cls, value: "str | RelationshipKind") -> "RelationshipKind":
        if isinstance(value, RelationshipKind):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            valid = sorted(k.value for k in cls)
            raise ValueError(
                f"Unknown relationship kind '{value}'. Valid: {valid}"
            ) from None


@dataclass(frozen=True)
class Relationship:
    """A symmetric tie between two tracks. Endpoints are stored sorted."""

    track_a: str
    track_b: str
    kind: RelationshipKind

    @classmethod
    def between(cls, a: str, b: str, kind: RelationshipKind | str) -> "Relationship":
        first, second = sorted((a, b))
        return cls(first, second, RelationshipKind.parse(kind))

    def involves(self, track_id: str) -> bool:
        return track_id in (self.track_a, self.track_b)

    def other(self, track_id: str) -> str:
        return self.track_b if track_id == self.track_a else self.track_a

    def to_dict(self) -> dict[str, Any]:
        return {"track_a": self.track_a, "track_b": self.track_b,
                "kind": self.kind.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Relationship":
        return cls.between(data["track_a"], data["track_b"], data["kind"])


class MultiTrackManager:
    """Set of track relationships with graph queries."""

    def __init__(self):
        self._relationships: list[Relationship] = []

    def __iter__(self):
        return iter(self._relationships)

    def __len__(self) -> int:
        return len(self._relationships)

    def __contains__(self, relationship: Relationship) -> bool:
        return relationship in self._relationships

    def __eq__(self, other) -> bool:
        if not isinstance(other, MultiTrackManager):
            return NotImplemented
        return set(self._relationships) == set(other._relationships)

    def add_relationship(
        self, a: str, b: str, kind: RelationshipKind | str,
        known_tracks: Collection[str],
    ) -> Relationship | None:
        """Tie two tracks together.

        Returns:
            The new relationship, or None if it already existed.

        Raises:
            UnknownTrackError: Either id is not in `known_tracks`.
            TimelineError: A track related to itself.
        """
        for track_id in (a, b):
            if track_id not in known_tracks:
                raise UnknownTrackError(f"Unknown track: '{track_id}'")
        if a == b:
            raise TimelineError(f"Track '{a}' cannot be related to itself")
        rel = Relationship.between(a, b, kind)
        if rel in self._relationships:
            return None
        self._relationships.append(rel)
        return rel

    def remove_relationship(self, a: str, b: str,
                            kind: RelationshipKind | str) -> Relationship | None:
        rel = Relationship.between(a, b, kind)
        if rel not in self._relationships:
            return None
        self._relationships.remove(rel)
        return rel

    def restore(self, relationship: Relationship) -> None:
        if relationship not in self._relationships:
            self._relationships.append(relationship)

    def discard(self, relationship: Relationship) -> None:
        if relationship in self._relationships:
            self._relationships.remove(relationship)

    def relationships_of(
        self, track_id: str, kind: RelationshipKind | str | None = None,
    ) -> list[Relationship]:
        kind = RelationshipKind.parse(kind) if kind is not None else None
        return [
            r for r in self._relationships
            if r.involves(track_id) and (kind is None or r.kind == kind)
        ]

    def group(self, track_id: str, kind: RelationshipKind | str) -> set[str]:
        """All tracks reachable from `track_id` through `kind` edges, itself included."""
        kind = RelationshipKind.parse(kind)
        seen = {track_id}
        frontier = [track_id]
        while frontier:
            current = frontier.pop()
            for rel in self.relationships_of(current, kind):
                nxt = rel.other(current)
                if nxt not in seen:
                    seen.add(nxt)
                    frontier.append(nxt)
        return seen

    def remove_track(self, track_id: str) -> list[Relationship]:
        """Drop every relationship touching a track and return them."""
        removed = self.relationships_of(track_id)
        self._relationships = [r for r in self._relationships if not r.involves(track_id)]
        return removed
