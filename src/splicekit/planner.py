"""RenderPlanner compiles a timeline snapshot into an ordered render plan.

The plan is pure data. It names every decode (asset, source range), where
each decoded segment lands on the output timeline, and the parameter
curves the compositing stage applies. It never touches pixels or samples;
an Encoder turns it into real media.

Algorithm:
  1. Validate the config, then every clip: its asset must be registered and
     its source range must fit the asset's known duration.
  2. Video tracks form a bottom-to-top z-order equal to track order.
     Muted tracks are excluded entirely, for video and audio alike.
  3. Each video clip becomes a VideoSegment carrying opacity, scale and
     position curves sampled over the clip's span.
  4. Each audio clip becomes an AudioMix carrying a volume curve.
  5. The optional render range trims every operation to [start, end) and
     shifts it so the output starts at 0.

Output duration is the maximum end time across all non-muted clips,
clipped to the render range.
"""

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from .assets import AssetRegistry
from .config import RenderConfig
from .errors import CompositionError, MissingAssetError
from .keyframes import PARAMETER_DEFAULTS
from .timeline import Clip, Timeline, Track, TrackKind
from .timecode import TIME_EPSILON, format_time, frame_count

logger = logging.getLogger(__name__)

# Asset durations reported by probers are rounded; allow this much slack.
DURATION_TOLERANCE = 1e-3


# ── Plan data ──────────────────────────────────────────────────────

@dataclass(eq=False)
class ParameterCurve:
    """Sampled parameter values over output-timeline seconds."""

    name: str
    times: np.ndarray
    values: np.ndarray

    @property
    def is_constant(self) -> bool:
        return bool(np.allclose(self.values, self.values[0], atol=1e-6))

    @property
    def constant(self) -> float:
        return float(self.values[0])

    def value_at(self, time: float) -> float:
        return float(np.interp(time, self.times, self.values))

    def breakpoints(self, tolerance: float = 1e-4) -> list[tuple[float, float]]:
        """Reduce the samples to a piecewise-linear outline.

        A span between two kept samples is split at its worst sample until
        every dropped sample lies within `tolerance` of the straight line
        between its neighbouring kept samples (Ramer-Douglas-Peucker).
        Linear keyframe segments collapse to their end points, which keeps
        expressions built from the curve short.
        """
        times, values = self.times, self.values
        n = len(times)
        if n <= 2:
            return list(zip(times.tolist(), values.tolist()))

        keep = np.zeros(n, dtype=bool)
        keep[0] = keep[-1] = True
        spans = [(0, n - 1)]
        while spans:
            lo, hi = spans.pop()
            if hi - lo < 2:
                continue
            inner = slice(lo + 1, hi)
            t0, t1 = times[lo], times[hi]
            v0, v1 = values[lo], values[hi]
            if t1 - t0 <= 0:
                chord = np.full(hi - lo - 1, v0)
            else:
                chord = v0 + (v1 - v0) * (times[inner] - t0) / (t1 - t0)
            deviation = np.abs(values[inner] - chord)
            worst = int(np.argmax(deviation))
            if deviation[worst] > tolerance:
                mid = lo + 1 + worst
                keep[mid] = True
                spans += [(lo, mid), (mid, hi)]
        return list(zip(times[keep].tolist(), values[keep].tolist()))


@dataclass(eq=False)
class VideoSegment:
    """Decode [source_in, source_out) of an asset and layer it at [start, end)."""

    track_id: str
    clip_id: str
    asset_id: str
    path: Path
    asset_kind: str
    layer: int
    source_in: float
    source_out: float
    start: float
    end: float
    speed: float
    opacity: ParameterCurve
    scale: ParameterCurve
    position_x: ParameterCurve
    position_y: ParameterCurve

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(eq=False)
class AudioMix:
    """Decode [source_in, source_out) of an asset's audio and mix it at [start, end)."""

    track_id: str
    clip_id: str
    asset_id: str
    path: Path
    order: int
    source_in: float
    source_out: float
    start: float
    end: float
    speed: float
    volume: ParameterCurve

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(eq=False)
class RenderPlan:
    config: RenderConfig
    duration: float
    video: list[VideoSegment] = field(default_factory=list)
    audio: list[AudioMix] = field(default_factory=list)

    @property
    def steps(self) -> list[VideoSegment | AudioMix]:
        """All operations in execution order: video bottom-to-top, then audio."""
        return [*self.video, *self.audio]

    @property
    def total_frames(self) -> int:
        return frame_count(self.duration, self.config.fps)

    @property
    def clip_ids(self) -> set[str]:
        return {op.clip_id for op in self.steps}


# ── Planner ────────────────────────────────────────────────────────

class RenderPlanner:
    """Turns (timeline, assets, config) into a RenderPlan.

    Planning is atomic: any validation error raises before a plan exists.
    """

    def __init__(self, timeline: Timeline, assets: AssetRegistry, config: RenderConfig):
        self.timeline = timeline
        self.assets = assets
        self.config = config

    def plan(self, cancel=None) -> RenderPlan:
        """Build the render plan.

        Args:
            cancel: Optional token with `raise_if_cancelled()`, checked
                between steps.

        Raises:
            ValueError: Invalid RenderConfig.
            MissingAssetError: A clip references an unregistered asset.
            CompositionError: Source range past the asset's end, wrong
                asset kind for the track, empty timeline or empty range.
        """
        config = self.config.validate()
        active = [t for t in self.timeline.tracks if not t.muted]

        self._validate(active)
        _check(cancel)

        full = max((t.end for t in active), default=0.0)
        if full <= TIME_EPSILON:
            raise CompositionError("Timeline has no unmuted clips to render")
        window_start = config.start or 0.0
        window_end = min(config.end, full) if config.end is not None else full
        if window_end - window_start <= TIME_EPSILON:
            raise CompositionError(
                f"Render range {format_time(window_start)}-{format_time(window_end)} is empty "
                f"(timeline ends at {format_time(full)})"
            )

        plan = RenderPlan(config=config, duration=window_end - window_start)
        layer = 0
        order = 0
        for track in active:
            for clip in track.clips:
                _check(cancel)
                span = _clip_window(clip, window_start, window_end)
                if span is None:
                    continue
                if track.kind == TrackKind.VIDEO:
                    plan.video.append(self._video_segment(track, clip, layer, span))
                else:
                    plan.audio.append(self._audio_mix(track, clip, order, span))
            if track.kind == TrackKind.VIDEO:
                layer += 1
            else:
                order += 1

        logger.debug(
            "Planned %d video segment(s), %d audio mix(es), %.3fs",
            len(plan.video), len(plan.audio), plan.duration,
        )
        return plan

    # ── Validation ────────────────────────────────────────────────

    def _validate(self, tracks: list[Track]) -> None:
        for track in tracks:
            for clip in track.clips:
                ref = self.assets.get_reference(clip.asset_id)
                if ref is None:
                    raise MissingAssetError(
                        f"Clip '{clip.id}' on track '{track.label}' references "
                        f"missing asset '{clip.asset_id}'"
                    )
                meta = ref.metadata
                if track.kind == TrackKind.VIDEO and meta.kind == "audio":
                    raise CompositionError(
                        f"Clip '{clip.id}' on video track '{track.label}' uses "
                        f"audio-only asset '{clip.asset_id}'"
                    )
                if track.kind == TrackKind.AUDIO and meta.kind == "image":
                    raise CompositionError(
                        f"Clip '{clip.id}' on audio track '{track.label}' uses "
                        f"image asset '{clip.asset_id}'"
                    )
                if meta.duration is None:
                    if meta.kind != "image":
                        logger.warning(
                            "Asset %s (%s) has unknown duration; cannot check clip %s",
                            clip.asset_id, ref.path, clip.id,
                        )
                    continue
                if clip.source_out > meta.duration + DURATION_TOLERANCE:
                    raise CompositionError(
                        f"Clip '{clip.id}' on track '{track.label}' needs source up to "
                        f"{format_time(clip.source_out)} but asset '{clip.asset_id}' is "
                        f"{format_time(meta.duration)} long"
                    )

    # ── Operations ────────────────────────────────────────────────

    def _times(self, start: float, end: float) -> np.ndarray:
        """Sample instants covering [start, end] at the curve rate, both ends included."""
        rate = self.config.sample_rate
        n = max(2, int(math.ceil((end - start) * rate)) + 1)
        return np.linspace(start, end, n)

    def _video_segment(self, track: Track, clip: Clip, layer: int, span) -> VideoSegment:
        t_start, t_end, src_in, src_out = span
        times = self._times(t_start, t_end)
        local = times - clip.timeline_start
        offset = self.config.start or 0.0

        opacity = (_param(track.keyframes.get("opacity"), times, "opacity")
                   * _clip_param(clip, "opacity", local))
        return VideoSegment(
            track_id=track.id,
            clip_id=clip.id,
            asset_id=clip.asset_id,
            path=self.assets.get_reference(clip.asset_id).path,
            asset_kind=self.assets.get(clip.asset_id).kind,
            layer=layer,
            source_in=src_in,
            source_out=src_out,
            start=t_start - offset,
            end=t_end - offset,
            speed=clip.speed,
            opacity=ParameterCurve("opacity", times - offset, np.clip(opacity, 0.0, 1.0)),
            scale=ParameterCurve("scale", times - offset, _clip_param(clip, "scale", local)),
            position_x=ParameterCurve(
                "position_x", times - offset, _clip_param(clip, "position_x", local)),
            position_y=ParameterCurve(
                "position_y", times - offset, _clip_param(clip, "position_y", local)),
        )

    def _audio_mix(self, track: Track, clip: Clip, order: int, span) -> AudioMix:
        t_start, t_end, src_in, src_out = span
        times = self._times(t_start, t_end)
        local = times - clip.timeline_start
        offset = self.config.start or 0.0

        volume = (_param(track.keyframes.get("volume"), times, "volume")
                  * _clip_param(clip, "volume", local))
        return AudioMix(
            track_id=track.id,
            clip_id=clip.id,
            asset_id=clip.asset_id,
            path=self.assets.get_reference(clip.asset_id).path,
            order=order,
            source_in=src_in,
            source_out=src_out,
            start=t_start - offset,
            end=t_end - offset,
            speed=clip.speed,
            volume=ParameterCurve("volume", times - offset, np.maximum(volume, 0.0)),
        )


# ── Helpers ────────────────────────────────────────────────────────

def _check(cancel) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()


def _clip_window(clip: Clip, window_start: float, window_end: float):
    """Intersect a clip with the render range.

    Returns:
        (timeline_start, timeline_end, source_in, source_out) of the visible
        part, or None if the clip lies outside the range.
    """
    start = max(clip.timeline_start, window_start)
    end = min(clip.timeline_end, window_end)
    if end - start <= TIME_EPSILON:
        return None
    head = start - clip.timeline_start
    tail = clip.timeline_end - end
    return (
        start,
        end,
        clip.source_in + head * clip.speed,
        clip.source_out - tail * clip.speed,
    )


def _param(kt, times: np.ndarray, name: str) -> np.ndarray:
    if kt is None or not len(kt):
        return np.full(times.shape, PARAMETER_DEFAULTS[name])
    return kt.sample(times)


def _clip_param(clip: Clip, name: str, local: np.ndarray) -> np.ndarray:
    kt = clip.keyframes.get(name)
    if kt is not None and len(kt):
        return kt.sample(local)
    return np.full(local.shape, clip.parameter_value(name, 0.0))
