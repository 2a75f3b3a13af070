"""Project: the aggregate that owns assets, timeline and edit history.

All editing goes through a Project. Each mutating method runs one
Timeline operation, validates its clips against the asset registry, and
records the resulting command so it can be undone. Read accessors hand
out copies; tracks and clips never escape the project by reference.

Typical use:
    project = Project("demo")
    asset = project.import_asset("intro.mp4")
    video = project.add_track("video")
    clip = project.add_clip(video, Clip.from_source(asset, 0.0, 0.0, 4.0))
    project.move_clip(video, clip, 1.5)
    project.undo()
    project.render_with_config(RenderConfig("out.mp4"))
"""

import copy
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .assets import AssetMetadata, AssetReference, AssetRegistry, new_id
from .config import RenderConfig
from .encoder import Encoder
from .errors import InvalidRangeError, TimelineError, UnknownAssetError
from .history import ClipEdit, CompoundCommand, EditCommand, EditHistory
from .keyframes import Easing
from .multitrack import RelationshipKind
from .planner import DURATION_TOLERANCE, RenderPlan
from .probe import probe_asset
from .render import CancelToken, ProgressCallback, RenderResult, plan_render, render_timeline
from .serialization import (
    FORMAT_VERSION, decode_history, encode_history, read_document, write_document,
)
from .timeline import Clip, Timeline, Track, TrackKind

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Project:
    """A named editing session: assets + timeline + undo history."""

    def __init__(
        self,
        name: str = "Untitled",
        description: str = "",
        tags: list[str] | None = None,
        history_capacity: int | None = None,
    ):
        self.id = new_id()
        self.name = name
        self.description = description
        self.tags = list(tags or [])
        self.created_at = _now()
        self.modified_at = self.created_at
        self.assets = AssetRegistry()
        self.timeline = Timeline()
        self.history = EditHistory(capacity=history_capacity)

    def __repr__(self) -> str:
        return (f"Project(name={self.name!r}, tracks={len(self.timeline.track_ids)}, "
                f"assets={len(self.assets)})")

    def _touch(self) -> None:
        self.modified_at = _now()

    # ── History plumbing ──────────────────────────────────────────

    def _with_history(self, command: EditCommand | None) -> EditCommand | None:
        """Validate an applied command and record it; revert it if invalid."""
        if command is None:
            return None
        try:
            self._check_sources(command)
        except TimelineError:
            command.revert(self.timeline)
            raise
        self.history.push(command)
        self._touch()
        return command

    def _check_sources(self, command: EditCommand) -> None:
        if isinstance(command, CompoundCommand):
            for sub in command.commands:
                self._check_sources(sub)
            return
        if not isinstance(command, ClipEdit):
            return
        for change in command.changes:
            after, before = change.after, change.before
            if after is None:
                continue
            unchanged = before is not None and (
                before.asset_id == after.asset_id
                and before.source_in == after.source_in
                and before.source_out == after.source_out
            )
            if unchanged:
                continue
            ref = self.assets.get_reference(after.asset_id)
            if ref is None:
                raise UnknownAssetError(
                    f"Clip '{after.id}' references unknown asset '{after.asset_id}'"
                )
            track = self.timeline.get_track(change.track_id)
            if track.kind == TrackKind.VIDEO and ref.metadata.kind == "audio":
                raise TimelineError(
                    f"Audio asset '{after.asset_id}' cannot be placed on "
                    f"video track '{track.label}'"
                )
            duration = ref.metadata.duration
            if duration is not None and after.source_out > duration + DURATION_TOLERANCE:
                raise InvalidRangeError(
                    f"Clip '{after.id}' source range {after.source_in:.3f}-"
                    f"{after.source_out:.3f} exceeds asset '{after.asset_id}' "
                    f"duration {duration:.3f}"
                )

    def undo(self) -> bool:
        """Undo the last edit. An empty history is a successful no-op (False)."""
        done = self.history.undo(self.timeline)
        if done:
            self._touch()
        return done

    def redo(self) -> bool:
        done = self.history.redo(self.timeline)
        if done:
            self._touch()
        return done

    @property
    def can_undo(self) -> bool:
        return self.history.can_undo

    @property
    def can_redo(self) -> bool:
        return self.history.can_redo

    @contextmanager
    def transaction(self, label: str = "transaction"):
        """Group several edits into one undo step. Errors roll all of them back."""
        with self.history.transaction(self.timeline, label):
            yield self

    # ── Assets ────────────────────────────────────────────────────

    def add_asset(self, path: str | Path, metadata: AssetMetadata) -> str:
        asset_id = self.assets.add_asset(path, metadata)
        self._touch()
        return asset_id

    def import_asset(self, path: str | Path, purpose: str | None = None) -> str:
        """Probe a media file and register it."""
        extra = {"purpose": purpose} if purpose else None
        return self.add_asset(path, probe_asset(path, extra=extra))

    def remove_asset(self, asset_id: str) -> bool:
        """Unregister an asset. Not undoable; clips using it fail to render."""
        removed = self.assets.remove_asset(asset_id)
        if removed:
            self._touch()
        return removed

    def get_asset(self, asset_id: str) -> AssetMetadata | None:
        return self.assets.get(asset_id)

    # ── Tracks ────────────────────────────────────────────────────

    def add_track(self, kind: TrackKind | str, name: str | None = None) -> str:
        command = self._with_history(self.timeline.add_track(kind, name))
        return command.track_id

    def remove_track(self, track_id: str) -> None:
        self._with_history(self.timeline.remove_track(track_id))

    def set_name(self, track_id: str, name: str) -> None:
        self._with_history(self.timeline.set_name(track_id, name))

    def set_muted(self, track_id: str, muted: bool) -> None:
        self._with_history(self.timeline.set_muted(track_id, muted))

    def set_locked(self, track_id: str, locked: bool) -> None:
        self._with_history(self.timeline.set_locked(track_id, locked))

    def add_relationship(self, a: str, b: str, kind: RelationshipKind | str) -> None:
        self._with_history(self.timeline.add_relationship(a, b, kind))

    def remove_relationship(self, a: str, b: str, kind: RelationshipKind | str) -> None:
        self._with_history(self.timeline.remove_relationship(a, b, kind))

    @property
    def tracks(self) -> list[Track]:
        return [t.copy() for t in self.timeline.tracks]

    def get_track(self, track_id: str) -> Track:
        return self.timeline.get_track(track_id).copy()

    def get_clip(self, track_id: str, clip_id: str) -> Clip:
        return self.timeline.get_track(track_id).get_clip(clip_id).copy()

    @property
    def duration(self) -> float:
        return self.timeline.duration

    # ── Clips ─────────────────────────────────────────────────────

    def add_clip(self, track_id: str, clip: Clip) -> str:
        """Place a clip on a track and return its id."""
        self._with_history(self.timeline.add_clip(track_id, clip))
        return clip.id

    def remove_clip(self, track_id: str, clip_id: str) -> None:
        self._with_history(self.timeline.remove_clip(track_id, clip_id))

    def move_clip(self, track_id: str, clip_id: str, new_start: float) -> None:
        self._with_history(self.timeline.move_clip(track_id, clip_id, new_start))

    def trim_clip(self, track_id: str, clip_id: str, new_in: float, new_out: float) -> None:
        self._with_history(self.timeline.trim_clip(track_id, clip_id, new_in, new_out))

    def split_clip(self, track_id: str, clip_id: str, at: float) -> str:
        """Split a clip and return the id of the right-hand half."""
        command = self._with_history(self.timeline.split_clip(track_id, clip_id, at))
        for change in command.changes:
            if change.track_id == track_id and change.before is None:
                return change.after.id
        raise TimelineError(f"Split of clip '{clip_id}' produced no new clip")

    def merge_clips(self, track_id: str, first_id: str, second_id: str) -> None:
        self._with_history(self.timeline.merge_clips(track_id, first_id, second_id))

    def move_clip_to_track(
        self, source_id: str, target_id: str, clip_id: str,
        new_start: float | None = None,
    ) -> None:
        self._with_history(
            self.timeline.move_clip_to_track(source_id, target_id, clip_id, new_start)
        )

    # ── Keyframes ─────────────────────────────────────────────────

    def add_keyframe_with_history(
        self, track_id: str, parameter_name: str, time: float, value: float,
        easing: Easing | str = Easing.LINEAR, clip_id: str | None = None,
    ) -> None:
        self._with_history(self.timeline.add_keyframe(
            track_id, parameter_name, time, value, easing, clip_id=clip_id,
        ))

    add_keyframe = add_keyframe_with_history

    def update_keyframe(
        self, track_id: str, parameter_name: str, time: float,
        value: float | None = None, easing: Easing | str | None = None,
        clip_id: str | None = None,
    ) -> None:
        self._with_history(self.timeline.update_keyframe(
            track_id, parameter_name, time, value, easing, clip_id=clip_id,
        ))

    def remove_keyframe(
        self, track_id: str, parameter_name: str, time: float,
        clip_id: str | None = None,
    ) -> None:
        self._with_history(self.timeline.remove_keyframe(
            track_id, parameter_name, time, clip_id=clip_id,
        ))

    def evaluate(
        self, track_id: str, parameter_name: str, time: float,
        clip_id: str | None = None,
    ) -> float:
        """Current value of a track parameter (timeline time) or clip parameter (clip time)."""
        track = self.timeline.get_track(track_id)
        if clip_id is None:
            return track.parameter_value(parameter_name, time)
        return track.get_clip(clip_id).parameter_value(parameter_name, time)

    # ── Rendering ─────────────────────────────────────────────────

    def plan(self, config: RenderConfig) -> RenderPlan:
        return plan_render(self.timeline, self.assets, config)

    def render_with_config(
        self,
        config: RenderConfig,
        encoder: Encoder | None = None,
        progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> RenderResult:
        """Render a snapshot of the current timeline."""
        return render_timeline(
            self.timeline, self.assets, config,
            encoder=encoder, progress=progress, cancel=cancel,
        )

    # ── Persistence ───────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "format_version": FORMAT_VERSION,
            "project": {
                "id": self.id,
                "name": self.name,
                "description": self.description,
                "tags": list(self.tags),
                "created_at": self.created_at.isoformat(),
                "modified_at": self.modified_at.isoformat(),
            },
            "assets": [ref.to_dict() for ref in self.assets],
            "timeline": self.timeline.to_dict(),
            "history": encode_history(self.history),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Project":
        meta = data.get("project") or {}
        project = cls(
            name=meta.get("name", "Untitled"),
            description=meta.get("description", ""),
            tags=meta.get("tags"),
        )
        project.id = meta.get("id", project.id)
        if "created_at" in meta:
            project.created_at = datetime.fromisoformat(meta["created_at"])
        if "modified_at" in meta:
            project.modified_at = datetime.fromisoformat(meta["modified_at"])
        for asset_data in data.get("assets") or []:
            project.assets.insert(AssetReference.from_dict(asset_data))
        project.timeline = Timeline.from_dict(data.get("timeline") or {})
        project.history = decode_history(data.get("history") or {})
        return project

    def save(self, path: str | Path) -> Path:
        """Write the project (YAML, or JSON for a .json path)."""
        return write_document(self.to_dict(), path)

    @classmethod
    def load(cls, path: str | Path) -> "Project":
        project = cls.from_dict(read_document(path))
        logger.debug("Loaded project %s from %s", project.name, path)
        return project

    def copy(self) -> "Project":
        return copy.deepcopy(self)
