"""Timeline data model: clips, tracks and the track arena.

The Timeline owns every Track in an id-keyed arena plus an order list
(z-order for video, mix order for audio). Relationships between tracks
live in a MultiTrackManager that only knows track ids.

Structural edits are all-or-nothing. Each edit copies the affected
tracks, applies the change (and any locked-partner mirror) to the copies,
and swaps them into the arena only when every copy validated. A failed
edit therefore leaves the timeline untouched.

Every public mutator returns an EditCommand describing the change, or
None when the call changed nothing. The Project records those commands
in its EditHistory.

Keyframe time bases:
  track keyframes (opacity, volume) use timeline seconds.
  clip keyframes (opacity, scale, position_x, position_y, volume) use
  seconds relative to the clip's timeline start.
"""

import bisect
import copy
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

from .assets import new_id
from .errors import (
    InvalidRangeError, KeyframeError, OverlapError, SyncError, TimelineError,
    TrackLockedError, UnknownClipError, UnknownTrackError,
)
from .history import (
    ClipChange, ClipEdit, FlagChange, KeyframeChange, RelationshipChange,
    TrackAdded, TrackFlagChange, TrackRemoved,
)
from .keyframes import (
    CLIP_PARAMETERS, PARAMETER_DEFAULTS, TRACK_PARAMETERS, Easing, Keyframe,
    KeyframeTrack,
)
from .multitrack import MultiTrackManager, Relationship, RelationshipKind
from .timecode import TIME_EPSILON, format_time, ranges_overlap, same_time

logger = logging.getLogger(__name__)


class TrackKind(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"

    @classmethod
    def parse(cls, value: "str | TrackKind") -> "TrackKind":
        if isinstance(value, TrackKind):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            valid = sorted(k.value for k in cls)
            raise ValueError(f"Unknown track kind '{value}'. Valid: {valid}") from None


# ── Clip ───────────────────────────────────────────────────────────

@dataclass
class Clip:
    """Maps source range [source_in, source_out) of an asset onto
    timeline range [timeline_start, timeline_start + timeline_duration).

    A source range longer or shorter than the timeline span plays the
    clip faster or slower; see `speed`.
    """

    asset_id: str
    timeline_start: float
    timeline_duration: float
    source_in: float
    source_out: float
    id: str = field(default_factory=new_id)
    scale: float = 1.0
    position: tuple[float, float] = (0.0, 0.0)
    keyframes: dict[str, KeyframeTrack] = field(default_factory=dict)

    def __post_init__(self):
        self.timeline_start = float(self.timeline_start)
        self.timeline_duration = float(self.timeline_duration)
        self.source_in = float(self.source_in)
        self.source_out = float(self.source_out)
        self.position = (float(self.position[0]), float(self.position[1]))
        if self.timeline_start < 0:
            raise InvalidRangeError(
                f"Clip '{self.id}': timeline_start must be >= 0, got {self.timeline_start}"
            )
        if self.timeline_duration <= 0:
            raise InvalidRangeError(
                f"Clip '{self.id}': timeline_duration must be > 0, "
                f"got {self.timeline_duration}"
            )
        if self.source_in < 0:
            raise InvalidRangeError(
                f"Clip '{self.id}': source_in must be >= 0, got {self.source_in}"
            )
        if self.source_in >= self.source_out:
            raise InvalidRangeError(
                f"Clip '{self.id}': source_in ({self.source_in}) must be before "
                f"source_out ({self.source_out})"
            )
        if self.scale <= 0:
            raise InvalidRangeError(f"Clip '{self.id}': scale must be > 0, got {self.scale}")

    @classmethod
    def from_source(
        cls, asset_id: str, timeline_start: float,
        source_in: float, source_out: float, **kwargs,
    ) -> "Clip":
        """Build a clip that plays its source range at normal speed."""
        return cls(asset_id, timeline_start, source_out - source_in,
                   source_in, source_out, **kwargs)

    @property
    def timeline_end(self) -> float:
        return self.timeline_start + self.timeline_duration

    @property
    def source_duration(self) -> float:
        return self.source_out - self.source_in

    @property
    def speed(self) -> float:
        """Source seconds consumed per timeline second."""
        return self.source_duration / self.timeline_duration

    def contains(self, time: float) -> bool:
        return self.timeline_start - TIME_EPSILON <= time < self.timeline_end - TIME_EPSILON

    def local_time(self, time: float) -> float:
        return time - self.timeline_start

    def parameter_value(self, parameter: str, local_time: float) -> float:
        """Clip parameter at a clip-local instant, falling back to static values."""
        track = self.keyframes.get(parameter)
        if track is not None and len(track):
            return track.evaluate(local_time)
        if parameter == "scale":
            return self.scale
        if parameter == "position_x":
            return self.position[0]
        if parameter == "position_y":
            return self.position[1]
        return PARAMETER_DEFAULTS.get(parameter, 1.0)

    def copy(self) -> "Clip":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "asset_id": self.asset_id,
            "timeline_start": self.timeline_start,
            "timeline_duration": self.timeline_duration,
            "source_in": self.source_in,
            "source_out": self.source_out,
            "scale": self.scale,
            "position": list(self.position),
            "keyframes": [kt.to_dict() for kt in self.keyframes.values()],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Clip":
        tracks = [KeyframeTrack.from_dict(k) for k in data.get("keyframes") or []]
        return cls(
            asset_id=data["asset_id"],
            timeline_start=data["timeline_start"],
            timeline_duration=data["timeline_duration"],
            source_in=data["source_in"],
            source_out=data["source_out"],
            id=data["id"],
            scale=data.get("scale", 1.0),
            position=tuple(data.get("position") or (0.0, 0.0)),
            keyframes={kt.parameter: kt for kt in tracks},
        )


# ── Track ──────────────────────────────────────────────────────────

class Track:
    """Ordered, non-overlapping clips of one kind plus track parameters."""

    def __init__(
        self, kind: TrackKind | str, name: str = "", id: str | None = None,
        muted: bool = False, locked: bool = False,
    ):
        self.id = id or new_id()
        self.kind = TrackKind.parse(kind)
        self.name = name
        self.muted = muted
        self.locked = locked
        self._clips: list[Clip] = []
        self.keyframes: dict[str, KeyframeTrack] = {}

    def __repr__(self) -> str:
        return (f"Track(id={self.id!r}, kind={self.kind.value!r}, name={self.name!r}, "
                f"clips={len(self._clips)}, muted={self.muted}, locked={self.locked})")

    def __eq__(self, other) -> bool:
        if not isinstance(other, Track):
            return NotImplemented
        return (
            self.id == other.id and self.kind == other.kind
            and self.name == other.name and self.muted == other.muted
            and self.locked == other.locked and self._clips == other._clips
            and self.keyframes == other.keyframes
        )

    @property
    def clips(self) -> tuple[Clip, ...]:
        return tuple(self._clips)

    @property
    def end(self) -> float:
        """Timeline end of the last clip, 0.0 for an empty track."""
        return max((c.timeline_end for c in self._clips), default=0.0)

    def copy(self) -> "Track":
        return copy.deepcopy(self)

    # ── Lookup ────────────────────────────────────────────────────

    def find_clip(self, clip_id: str) -> Clip | None:
        for clip in self._clips:
            if clip.id == clip_id:
                return clip
        return None

    def get_clip(self, clip_id: str) -> Clip:
        clip = self.find_clip(clip_id)
        if clip is None:
            raise UnknownClipError(f"Unknown clip '{clip_id}' on track '{self.label}'")
        return clip

    def clip_at(self, time: float) -> Clip | None:
        """The clip covering a timeline instant, if any."""
        for clip in self._clips:
            if clip.contains(time):
                return clip
        return None

    def clip_starting_at(self, time: float, tolerance: float = 1e-6) -> Clip | None:
        for clip in self._clips:
            if abs(clip.timeline_start - time) <= tolerance:
                return clip
        return None

    @property
    def label(self) -> str:
        return self.name or self.id

    def parameter_value(self, parameter: str, time: float) -> float:
        """Track parameter at a timeline instant; the default when unanimated."""
        track = self.keyframes.get(parameter)
        if track is not None and len(track):
            return track.evaluate(time)
        return PARAMETER_DEFAULTS.get(parameter, 1.0)

    # ── Validated mutation ────────────────────────────────────────

    def _require_unlocked(self) -> None:
        if self.locked:
            raise TrackLockedError(f"Track '{self.label}' is locked")

    def check_fits(self, clip: Clip, ignore: str | None = None) -> None:
        """Raise OverlapError if `clip` collides with any other clip."""
        for other in self._clips:
            if other.id == ignore:
                continue
            if ranges_overlap(clip.timeline_start, clip.timeline_end,
                              other.timeline_start, other.timeline_end):
                raise OverlapError(
                    f"Clip '{clip.id}' at {format_time(clip.timeline_start)}-"
                    f"{format_time(clip.timeline_end)} overlaps clip '{other.id}' at "
                    f"{format_time(other.timeline_start)}-{format_time(other.timeline_end)} "
                    f"on track '{self.label}'",
                    position=clip.timeline_start,
                )

    def add_clip(self, clip: Clip) -> None:
        """Insert a clip, keeping the list ordered by start time.

        Raises:
            TrackLockedError: Track is locked.
            OverlapError: Clip intersects an existing clip.
        """
        self._require_unlocked()
        if self.find_clip(clip.id) is not None:
            raise TimelineError(f"Duplicate clip id '{clip.id}' on track '{self.label}'")
        self.check_fits(clip)
        self._insert(clip)

    def remove_clip(self, clip_id: str) -> Clip:
        self._require_unlocked()
        clip = self.get_clip(clip_id)
        self._clips.remove(clip)
        return clip

    def move_clip(self, clip_id: str, new_start: float) -> Clip:
        """Move a clip to a new start time and return the moved clip."""
        self._require_unlocked()
        clip = self.get_clip(clip_id)
        if new_start < -TIME_EPSILON:
            raise InvalidRangeError(
                f"Clip '{clip_id}' cannot start before 0 (requested {new_start:.3f})"
            )
        moved = replace(clip, timeline_start=max(0.0, new_start))
        self.check_fits(moved, ignore=clip_id)
        self._clips.remove(clip)
        self._insert(moved)
        return moved

    def trim_clip(self, clip_id: str, new_in: float, new_out: float) -> Clip:
        """Change a clip's source range.

        The timeline start shifts by the in-point delta and the duration
        follows the new source length, both scaled by the clip's speed.
        """
        self._require_unlocked()
        clip = self.get_clip(clip_id)
        if new_in < 0 or new_in >= new_out:
            raise InvalidRangeError(
                f"Invalid trim for clip '{clip_id}': in={new_in:.3f} out={new_out:.3f}"
            )
        speed = clip.speed
        new_start = clip.timeline_start + (new_in - clip.source_in) / speed
        if new_start < -TIME_EPSILON:
            raise InvalidRangeError(
                f"Trim would move clip '{clip_id}' before 0 ({new_start:.3f})"
            )
        trimmed = replace(
            clip,
            timeline_start=max(0.0, new_start),
            timeline_duration=(new_out - new_in) / speed,
            source_in=new_in,
            source_out=new_out,
        )
        self.check_fits(trimmed, ignore=clip_id)
        self._clips.remove(clip)
        self._insert(trimmed)
        return trimmed

    def split_clip(self, clip_id: str, at: float) -> tuple[Clip, Clip]:
        """Cut a clip at a timeline instant strictly inside it.

        Returns:
            (left, right). The left half keeps the original id.
        """
        self._require_unlocked()
        clip = self.get_clip(clip_id)
        if not (clip.timeline_start + TIME_EPSILON < at < clip.timeline_end - TIME_EPSILON):
            raise InvalidRangeError(
                f"Split point {at:.3f} is not inside clip '{clip_id}' "
                f"({clip.timeline_start:.3f}-{clip.timeline_end:.3f})"
            )
        offset = at - clip.timeline_start
        source_cut = clip.source_in + offset * clip.speed
        left = replace(
            clip, timeline_duration=offset, source_out=source_cut,
            keyframes=copy.deepcopy(clip.keyframes),
        )
        right = replace(
            clip, id=new_id(), timeline_start=at,
            timeline_duration=clip.timeline_end - at, source_in=source_cut,
            keyframes=_shift_keyframes(clip.keyframes, offset),
        )
        self._clips.remove(clip)
        self._insert(left)
        self._insert(right)
        return left, right

    def merge_clips(self, first_id: str, second_id: str) -> Clip:
        """Join two adjacent clips of one asset with contiguous source ranges."""
        self._require_unlocked()
        first = self.get_clip(first_id)
        second = self.get_clip(second_id)
        if second.timeline_start < first.timeline_start:
            first, second = second, first
        if first.asset_id != second.asset_id:
            raise TimelineError(
                f"Cannot merge clips '{first.id}' and '{second.id}': different assets"
            )
        if not same_time(first.timeline_end, second.timeline_start):
            raise TimelineError(
                f"Cannot merge clips '{first.id}' and '{second.id}': not adjacent"
            )
        if abs(first.source_out - second.source_in) > 1e-6:
            raise TimelineError(
                f"Cannot merge clips '{first.id}' and '{second.id}': "
                f"source ranges are not contiguous"
            )
        keyframes = copy.deepcopy(first.keyframes)
        for parameter, kt in second.keyframes.items():
            target = keyframes.setdefault(parameter, KeyframeTrack(parameter))
            for kf in kt:
                shifted = kf.time + first.timeline_duration
                if target.get(shifted) is None:
                    target.add_keyframe(shifted, kf.value, kf.easing)
        merged = replace(
            first,
            timeline_duration=first.timeline_duration + second.timeline_duration,
            source_out=second.source_out,
            keyframes=keyframes,
        )
        self._clips.remove(first)
        self._clips.remove(second)
        self._insert(merged)
        return merged

    # ── Unchecked primitives (history replay) ─────────────────────

    def _insert(self, clip: Clip) -> None:
        bisect.insort(self._clips, clip, key=lambda c: c.timeline_start)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "muted": self.muted,
            "locked": self.locked,
            "clips": [c.to_dict() for c in self._clips],
            "keyframes": [kt.to_dict() for kt in self.keyframes.values()],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Track":
        track = cls(
            data["kind"], name=data.get("name", ""), id=data["id"],
            muted=bool(data.get("muted", False)),
            locked=bool(data.get("locked", False)),
        )
        for clip_data in data.get("clips") or []:
            clip = Clip.from_dict(clip_data)
            track.check_fits(clip)
            track._insert(clip)
        for kt_data in data.get("keyframes") or []:
            kt = KeyframeTrack.from_dict(kt_data)
            track.keyframes[kt.parameter] = kt
        return track


def _shift_keyframes(
    keyframes: dict[str, KeyframeTrack], offset: float,
) -> dict[str, KeyframeTrack]:
    """Re-base clip keyframes to a later clip start, pinning the value at the cut."""
    shifted = {}
    for parameter, kt in keyframes.items():
        if not len(kt):
            continue
        out = KeyframeTrack(parameter)
        governing = Easing.LINEAR
        for kf in kt:
            if kf.time <= offset + TIME_EPSILON:
                governing = kf.easing
        out.add_keyframe(0.0, kt.evaluate(offset), governing)
        for kf in kt:
            if kf.time > offset + TIME_EPSILON:
                out.add_keyframe(kf.time - offset, kf.value, kf.easing)
        shifted[parameter] = out
    return shifted


def _diff_clips(track_id: str, old: Track, new: Track) -> list[ClipChange]:
    before = {c.id: c for c in old.clips}
    after = {c.id: c for c in new.clips}
    changes = []
    for clip_id in [*before, *(k for k in after if k not in before)]:
        b, a = before.get(clip_id), after.get(clip_id)
        if b != a:
            changes.append(ClipChange(
                track_id,
                b.copy() if b is not None else None,
                a.copy() if a is not None else None,
            ))
    return changes


# ── Timeline ───────────────────────────────────────────────────────

class Timeline:
    """Ordered track arena plus the track relationship graph."""

    def __init__(self):
        self._tracks: dict[str, Track] = {}
        self._order: list[str] = []
        self.relationships = MultiTrackManager()

    def __eq__(self, other) -> bool:
        if not isinstance(other, Timeline):
            return NotImplemented
        return (self._order == other._order and self._tracks == other._tracks
                and self.relationships == other.relationships)

    @property
    def tracks(self) -> tuple[Track, ...]:
        return tuple(self._tracks[tid] for tid in self._order)

    @property
    def track_ids(self) -> list[str]:
        return list(self._order)

    @property
    def duration(self) -> float:
        return max((t.end for t in self._tracks.values()), default=0.0)

    def find_track(self, track_id: str) -> Track | None:
        return self._tracks.get(track_id)

    def get_track(self, track_id: str) -> Track:
        track = self._tracks.get(track_id)
        if track is None:
            raise UnknownTrackError(f"Unknown track: '{track_id}'")
        return track

    def index_of(self, track_id: str) -> int:
        self.get_track(track_id)
        return self._order.index(track_id)

    def find_clip(self, clip_id: str) -> tuple[Track, Clip] | None:
        for track in self.tracks:
            clip = track.find_clip(clip_id)
            if clip is not None:
                return track, clip
        return None

    def snapshot(self) -> "Timeline":
        """Deep, independent copy for rendering."""
        return copy.deepcopy(self)

    # ── Tracks ────────────────────────────────────────────────────

    def add_track(self, kind: TrackKind | str, name: str | None = None) -> TrackAdded:
        kind = TrackKind.parse(kind)
        if name is None:
            count = sum(1 for t in self._tracks.values() if t.kind == kind)
            name = f"{kind.value.capitalize()} {count + 1}"
        track = Track(kind, name=name)
        self.insert_track(track, len(self._order))
        logger.debug("Added %s track %s", kind.value, track.id)
        return TrackAdded(track.copy(), len(self._order) - 1)

    def remove_track(self, track_id: str) -> TrackRemoved:
        track = self.get_track(track_id)
        if track.locked:
            raise TrackLockedError(f"Track '{track.label}' is locked")
        index = self._order.index(track_id)
        relationships = self.relationships.relationships_of(track_id)
        self.detach_track(track_id)
        return TrackRemoved(track.copy(), index, relationships)

    def set_name(self, track_id: str, name: str) -> TrackFlagChange | None:
        return self._set_flags("set name", [track_id], "name", name)

    def set_muted(self, track_id: str, muted: bool) -> TrackFlagChange | None:
        """Mute a track and every track grouped with it."""
        targets = self._grouped(track_id)
        return self._set_flags("set muted", targets, "muted", bool(muted))

    def set_locked(self, track_id: str, locked: bool) -> TrackFlagChange | None:
        """Lock a track and every track grouped with it."""
        targets = self._grouped(track_id)
        return self._set_flags("set locked", targets, "locked", bool(locked))

    def _grouped(self, track_id: str) -> list[str]:
        self.get_track(track_id)
        group = self.relationships.group(track_id, RelationshipKind.GROUPED)
        return [tid for tid in self._order if tid in group]

    def _set_flags(self, label, track_ids, name, value) -> TrackFlagChange | None:
        changes = []
        for tid in track_ids:
            before = getattr(self.get_track(tid), name)
            if before != value:
                changes.append(FlagChange(tid, name, before, value))
        if not changes:
            return None
        command = TrackFlagChange(label, changes)
        command.apply(self)
        return command

    # ── Relationships ─────────────────────────────────────────────

    def add_relationship(
        self, a: str, b: str, kind: RelationshipKind | str,
    ) -> RelationshipChange | None:
        rel = self.relationships.add_relationship(a, b, kind, self._tracks)
        return RelationshipChange(rel, added=True) if rel else None

    def remove_relationship(
        self, a: str, b: str, kind: RelationshipKind | str,
    ) -> RelationshipChange | None:
        rel = self.relationships.remove_relationship(a, b, kind)
        return RelationshipChange(rel, added=False) if rel else None

    # ── Clips ─────────────────────────────────────────────────────

    def add_clip(self, track_id: str, clip: Clip) -> ClipEdit:
        working = self.get_track(track_id).copy()
        working.add_clip(clip.copy())
        return self._commit("add clip", {track_id: working})

    def remove_clip(self, track_id: str, clip_id: str) -> ClipEdit:
        return self._mirrored(
            "remove clip", track_id, clip_id,
            lambda track, clip: track.remove_clip(clip.id),
            lambda track, partner, original, edited: track.remove_clip(partner.id),
        )

    def move_clip(self, track_id: str, clip_id: str, new_start: float) -> ClipEdit | None:
        def primary(track, clip):
            track.move_clip(clip.id, new_start)

        def mirror(track, partner, original, edited):
            delta = edited.timeline_start - original.timeline_start
            track.move_clip(partner.id, partner.timeline_start + delta)

        return self._mirrored("move clip", track_id, clip_id, primary, mirror)

    def trim_clip(
        self, track_id: str, clip_id: str, new_in: float, new_out: float,
    ) -> ClipEdit | None:
        def primary(track, clip):
            track.trim_clip(clip.id, new_in, new_out)

        def mirror(track, partner, original, edited):
            d_start = edited.timeline_start - original.timeline_start
            d_end = edited.timeline_end - original.timeline_end
            track.trim_clip(
                partner.id,
                partner.source_in + d_start * partner.speed,
                partner.source_out + d_end * partner.speed,
            )

        return self._mirrored("trim clip", track_id, clip_id, primary, mirror)

    def split_clip(self, track_id: str, clip_id: str, at: float) -> ClipEdit:
        return self._mirrored(
            "split clip", track_id, clip_id,
            lambda track, clip: track.split_clip(clip.id, at),
            lambda track, partner, original, edited: track.split_clip(partner.id, at),
        )

    def merge_clips(self, track_id: str, first_id: str, second_id: str) -> ClipEdit:
        working = self.get_track(track_id).copy()
        working.merge_clips(first_id, second_id)
        return self._commit("merge clips", {track_id: working})

    def move_clip_to_track(
        self, source_id: str, target_id: str, clip_id: str,
        new_start: float | None = None,
    ) -> ClipEdit | None:
        """Move a clip onto another track of the same kind."""
        source = self.get_track(source_id).copy()
        target = self.get_track(target_id).copy()
        if source_id == target_id:
            if new_start is None:
                return None
            return self.move_clip(source_id, clip_id, new_start)
        if source.kind != target.kind:
            raise TimelineError(
                f"Cannot move clip '{clip_id}' from {source.kind.value} track "
                f"'{source.label}' to {target.kind.value} track '{target.label}'"
            )
        clip = source.remove_clip(clip_id)
        if new_start is not None:
            if new_start < 0:
                raise InvalidRangeError(f"Clip '{clip_id}' cannot start before 0")
            clip = replace(clip, timeline_start=new_start)
        target.add_clip(clip)
        return self._commit("move clip to track", {source_id: source, target_id: target})

    def _mirrored(
        self, label: str, track_id: str, clip_id: str,
        primary: Callable[[Track, Clip], Any],
        mirror: Callable[[Track, Clip, Clip, Clip | None], Any],
    ) -> ClipEdit | None:
        """Apply an edit and mirror it onto every locked partner track."""
        track = self.get_track(track_id)
        original = track.get_clip(clip_id).copy()
        working = {track_id: track.copy()}
        primary(working[track_id], original)
        edited = working[track_id].find_clip(clip_id)

        group = self.relationships.group(track_id, RelationshipKind.LOCKED)
        for partner_id in self._order:
            if partner_id == track_id or partner_id not in group:
                continue
            partner_track = self._tracks[partner_id].copy()
            partner = partner_track.clip_starting_at(original.timeline_start)
            if partner is None:
                raise SyncError(
                    f"Locked track '{partner_track.label}' has no clip at "
                    f"{original.timeline_start:.3f} corresponding to clip '{clip_id}'"
                )
            mirror(partner_track, partner, original, edited)
            working[partner_id] = partner_track
        return self._commit(label, working)

    def _commit(self, label: str, working: dict[str, Track]) -> ClipEdit | None:
        changes = []
        for tid in self._order:
            if tid in working:
                changes.extend(_diff_clips(tid, self._tracks[tid], working[tid]))
        if not changes:
            return None
        for tid, track in working.items():
            self._tracks[tid] = track
        logger.debug("%s: %d clip change(s)", label, len(changes))
        return ClipEdit(label, changes)

    # ── Keyframes ─────────────────────────────────────────────────

    def add_keyframe(
        self, track_id: str, parameter: str, time: float, value: float,
        easing: Easing | str = Easing.LINEAR, clip_id: str | None = None,
    ) -> KeyframeChange | None:
        """Upsert a keyframe on a track parameter, or a clip parameter if clip_id is given."""
        kt = self._keyframe_owner(track_id, clip_id, parameter).get(parameter)
        before = kt.get(time) if kt is not None else None
        after = Keyframe(float(time), float(value), Easing.parse(easing))
        if before is not None:
            after = replace(after, time=before.time)
        if before == after:
            return None
        if after.time < 0:
            raise InvalidRangeError(f"Keyframe time must be >= 0, got {after.time}")
        command = KeyframeChange(track_id, clip_id, parameter, before, after, "add keyframe")
        command.apply(self)
        return command

    def update_keyframe(
        self, track_id: str, parameter: str, time: float,
        value: float | None = None, easing: Easing | str | None = None,
        clip_id: str | None = None,
    ) -> KeyframeChange | None:
        before = self._existing_keyframe(track_id, clip_id, parameter, time)
        after = Keyframe(
            before.time,
            before.value if value is None else float(value),
            before.easing if easing is None else Easing.parse(easing),
        )
        if before == after:
            return None
        command = KeyframeChange(track_id, clip_id, parameter, before, after, "update keyframe")
        command.apply(self)
        return command

    def remove_keyframe(
        self, track_id: str, parameter: str, time: float, clip_id: str | None = None,
    ) -> KeyframeChange:
        before = self._existing_keyframe(track_id, clip_id, parameter, time)
        command = KeyframeChange(track_id, clip_id, parameter, before, None, "remove keyframe")
        command.apply(self)
        return command

    def _keyframe_owner(self, track_id, clip_id, parameter) -> dict[str, KeyframeTrack]:
        track = self.get_track(track_id)
        if clip_id is None:
            if parameter not in TRACK_PARAMETERS:
                raise ValueError(
                    f"Unknown track parameter '{parameter}'. "
                    f"Valid: {sorted(TRACK_PARAMETERS)}"
                )
            return track.keyframes
        if parameter not in CLIP_PARAMETERS:
            raise ValueError(
                f"Unknown clip parameter '{parameter}'. Valid: {sorted(CLIP_PARAMETERS)}"
            )
        return track.get_clip(clip_id).keyframes

    def _existing_keyframe(self, track_id, clip_id, parameter, time) -> Keyframe:
        kt = self._keyframe_owner(track_id, clip_id, parameter).get(parameter)
        kf = kt.get(time) if kt is not None else None
        if kf is None:
            raise KeyframeError(f"No '{parameter}' keyframe at {time} on track '{track_id}'")
        return kf

    # ── Unchecked primitives used by history commands ─────────────

    def insert_track(self, track: Track, index: int) -> None:
        if track.id in self._tracks:
            raise TimelineError(f"Duplicate track id: '{track.id}'")
        self._tracks[track.id] = track
        self._order.insert(index, track.id)

    def detach_track(self, track_id: str) -> Track:
        track = self.get_track(track_id)
        del self._tracks[track_id]
        self._order.remove(track_id)
        self.relationships.remove_track(track_id)
        return track

    def place_clip(self, track_id: str, clip: Clip) -> None:
        self.get_track(track_id)._insert(clip)

    def take_clip(self, track_id: str, clip_id: str) -> Clip:
        track = self.get_track(track_id)
        clip = track.get_clip(clip_id)
        track._clips.remove(clip)
        return clip

    def set_flag(self, track_id: str, name: str, value) -> None:
        setattr(self.get_track(track_id), name, value)

    def keyframe_put(self, track_id, clip_id, parameter, keyframe: Keyframe) -> None:
        owner = self._keyframe_owner(track_id, clip_id, parameter)
        kt = owner.setdefault(parameter, KeyframeTrack(parameter))
        kt.add_keyframe(keyframe.time, keyframe.value, keyframe.easing)

    def keyframe_remove(self, track_id, clip_id, parameter, time: float) -> None:
        owner = self._keyframe_owner(track_id, clip_id, parameter)
        kt = owner[parameter]
        kt.remove_keyframe(time)
        if not len(kt):
            del owner[parameter]

    # ── Persistence ───────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "tracks": [t.to_dict() for t in self.tracks],
            "relationships": [r.to_dict() for r in self.relationships],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Timeline":
        timeline = cls()
        for track_data in data.get("tracks") or []:
            track = Track.from_dict(track_data)
            timeline.insert_track(track, len(timeline._order))
        for rel_data in data.get("relationships") or []:
            rel = Relationship.from_dict(rel_data)
            timeline.relationships.add_relationship(
                rel.track_a, rel.track_b, rel.kind, timeline._tracks,
            )
        return timeline
