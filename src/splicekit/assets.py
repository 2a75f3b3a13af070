"""Asset registry: probed media referenced by clips.

Assets are registered once and never mutated. Registering the same path
twice yields two independent entries; callers tell them apart through the
metadata `extra` map (e.g. extra["purpose"] = "overlay").
"""

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def new_id() -> str:
    """Generate an opaque identifier for assets, tracks and clips."""
    return uuid.uuid4().hex


@dataclass(frozen=True)
class AssetMetadata:
    """Probed facts about a media file. Absent facts are None."""

    duration: float | None = None
    dimensions: tuple[int, int] | None = None
    kind: str = "video"
    extra: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if self.duration is not None and self.duration < 0:
            raise ValueError(f"Asset duration must be >= 0, got {self.duration}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration": self.duration,
            "dimensions": list(self.dimensions) if self.dimensions else None,
            "kind": self.kind,
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AssetMetadata":
        dims = data.get("dimensions")
        return cls(
            duration=data.get("duration"),
            dimensions=tuple(dims) if dims else None,
            kind=data.get("kind", "video"),
            extra={str(k): str(v) for k, v in (data.get("extra") or {}).items()},
        )


@dataclass(frozen=True)
class AssetReference:
    """A registered asset: id, source path and metadata."""

    id: str
    path: Path
    metadata: AssetMetadata

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "path": str(self.path),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AssetReference":
        return cls(
            id=str(data["id"]),
            path=Path(data["path"]),
            metadata=AssetMetadata.from_dict(data.get("metadata") or {}),
        )


class AssetRegistry:
    """Maps asset ids to their references, preserving registration order."""

    def __init__(self):
        self._assets: dict[str, AssetReference] = {}

    def add_asset(self, path: str | Path, metadata: AssetMetadata) -> str:
        """Register a media file and return its new id."""
        asset_id = new_id()
        self._assets[asset_id] = AssetReference(asset_id, Path(path), metadata)
        logger.debug("Registered asset %s -> %s", asset_id, path)
        return asset_id

    def insert(self, reference: AssetReference) -> None:
        """Re-insert a reference with a known id (used when loading projects)."""
        if reference.id in self._assets:
            raise ValueError(f"Duplicate asset id: '{reference.id}'")
        self._assets[reference.id] = reference

    def get(self, asset_id: str) -> AssetMetadata | None:
        ref = self._assets.get(asset_id)
        return ref.metadata if ref else None

    def get_reference(self, asset_id: str) -> AssetReference | None:
        return self._assets.get(asset_id)

    def remove_asset(self, asset_id: str) -> bool:
        """Drop an asset. Clips still referencing it fail at render time."""
        removed = self._assets.pop(asset_id, None) is not None
        if removed:
            logger.debug("Removed asset %s", asset_id)
        return removed

    def __contains__(self, asset_id: str) -> bool:
        return asset_id in self._assets

    def __iter__(self):
        return iter(self._assets.values())

    def __len__(self) -> int:
        return len(self._assets)

    def __eq__(self, other) -> bool:
        if not isinstance(other, AssetRegistry):
            return NotImplemented
        return list(self._assets.values()) == list(other._assets.values())
