"""Keyframe animation: easing functions and per-parameter keyframe tracks.

A KeyframeTrack holds (time, value, easing) samples sorted by strictly
increasing time. Between two samples the value is interpolated using the
easing of the LEFT sample. Outside the sampled range the first/last value
is held (clamped evaluation).

Contains: Easing, Keyframe, KeyframeTrack.
"""

import bisect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

import numpy as np

from .errors import InvalidRangeError, KeyframeError
from .timecode import TIME_EPSILON


# Defaults used when a track parameter has no keyframes at all.
PARAMETER_DEFAULTS = {
    "opacity": 1.0,
    "volume": 1.0,
    "scale": 1.0,
    "position_x": 0.0,
    "position_y": 0.0,
}

TRACK_PARAMETERS = {"opacity", "volume"}
CLIP_PARAMETERS = {"opacity", "scale", "position_x", "position_y", "volume"}


# ── Easing ─────────────────────────────────────────────────────────

class Easing(str, Enum):
    """Shaping function applied to interpolation progress p in [0, 1]."""

    LINEAR = "linear"
    EASE_IN = "ease_in"
    EASE_OUT = "ease_out"
    EASE_IN_OUT = "ease_in_out"
    STEP = "step"

    def apply(self, p):
        """Map progress to eased progress. Works on floats and numpy arrays."""
        if self is Easing.LINEAR:
            return p
        if self is Easing.EASE_IN:
            return p * p
        if self is Easing.EASE_OUT:
            return p * (2.0 - p)
        if self is Easing.EASE_IN_OUT:
            return np.where(p < 0.5, 2.0 * p * p, -1.0 + (4.0 - 2.0 * p) * p)
        # STEP holds the left value until the next sample.
        return np.where(p >= 1.0, 1.0, 0.0)

    @classmethod
    def parse(cls, value: "str | Easing") -> "Easing":
        if isinstance(value, Easing):
            return value
        try:
            return cls(str(value).lower().replace("-", "_"))
        except ValueError:
            valid = sorted(e.value for e in cls)
            raise ValueError(
                f"Unknown easing '{value}'. Valid: {valid}"
            ) from None


@dataclass(frozen=True)
class Keyframe:
    time: float
    value: float
    easing: Easing = Easing.LINEAR

    def to_dict(self) -> dict[str, Any]:
        return {"time": self.time, "value": self.value, "easing": self.easing.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Keyframe":
        return cls(
            time=float(data["time"]),
            value=float(data["value"]),
            easing=Easing.parse(data.get("easing", "linear")),
        )


# ── KeyframeTrack ──────────────────────────────────────────────────

class KeyframeTrack:
    """Time-ordered animated samples for one named parameter."""

    def __init__(self, parameter: str, keyframes: Iterable[Keyframe] = ()):
        self.parameter = parameter
        self._keyframes: list[Keyframe] = []
        for kf in keyframes:
            self.add_keyframe(kf.time, kf.value, kf.easing)

    @property
    def keyframes(self) -> tuple[Keyframe, ...]:
        return tuple(self._keyframes)

    @property
    def times(self) -> list[float]:
        return [kf.time for kf in self._keyframes]

    def __len__(self) -> int:
        return len(self._keyframes)

    def __iter__(self):
        return iter(self._keyframes)

    def __eq__(self, other) -> bool:
        if not isinstance(other, KeyframeTrack):
            return NotImplemented
        return (self.parameter == other.parameter
                and self._keyframes == other._keyframes)

    def __repr__(self) -> str:
        return f"KeyframeTrack({self.parameter!r}, {self._keyframes!r})"

    def _index_of(self, time: float) -> int | None:
        i = bisect.bisect_left(self.times, time - TIME_EPSILON)
        if i < len(self._keyframes) and abs(self._keyframes[i].time - time) <= TIME_EPSILON:
            return i
        return None

    # ── Mutation ──────────────────────────────────────────────────

    def add_keyframe(
        self, time: float, value: float, easing: Easing | str = Easing.LINEAR,
    ) -> Keyframe | None:
        """Insert a sample, replacing any sample already at `time`.

        Returns:
            The replaced keyframe, or None if the time was new.

        Raises:
            InvalidRangeError: Negative time.
        """
        time = float(time)
        if time < 0:
            raise InvalidRangeError(
                f"Keyframe time must be >= 0 for '{self.parameter}', got {time}"
            )
        kf = Keyframe(time, float(value), Easing.parse(easing))
        i = self._index_of(time)
        if i is not None:
            previous = self._keyframes[i]
            self._keyframes[i] = Keyframe(previous.time, kf.value, kf.easing)
            return previous
        bisect.insort(self._keyframes, kf, key=lambda k: k.time)
        return None

    def get(self, time: float) -> Keyframe | None:
        i = self._index_of(time)
        return self._keyframes[i] if i is not None else None

    def update_keyframe(
        self, time: float, value: float | None = None,
        easing: Easing | str | None = None,
    ) -> Keyframe:
        """Change the value and/or easing of an existing sample.

        Returns:
            The keyframe as it was before the update.

        Raises:
            KeyframeError: No sample at `time`.
        """
        i = self._index_of(time)
        if i is None:
            raise KeyframeError(
                f"No '{self.parameter}' keyframe at {time}"
            )
        previous = self._keyframes[i]
        self._keyframes[i] = Keyframe(
            previous.time,
            previous.value if value is None else float(value),
            previous.easing if easing is None else Easing.parse(easing),
        )
        return previous

    def remove_keyframe(self, time: float) -> Keyframe:
        """Delete the sample at `time` and return it.

        Raises:
            KeyframeError: No sample at `time`.
        """
        i = self._index_of(time)
        if i is None:
            raise KeyframeError(
                f"No '{self.parameter}' keyframe at {time}"
            )
        return self._keyframes.pop(i)

    # ── Evaluation ────────────────────────────────────────────────

    def evaluate(self, time: float) -> float | None:
        """Interpolated value at `time`, or None for an empty track."""
        kfs = self._keyframes
        if not kfs:
            return None
        if time <= kfs[0].time:
            return kfs[0].value
        if time >= kfs[-1].time:
            return kfs[-1].value

        i = bisect.bisect_right(self.times, time) - 1
        left, right = kfs[i], kfs[i + 1]
        p = (time - left.time) / (right.time - left.time)
        eased = float(left.easing.apply(p))
        return left.value + (right.value - left.value) * eased

    value_at = evaluate

    def sample(self, times) -> np.ndarray:
        """Evaluate at many instants at once.

        Args:
            times: Array-like of instants.

        Returns:
            Float array shaped like `times`; NaN everywhere for an empty track.
        """
        t = np.asarray(times, dtype=float)
        kfs = self._keyframes
        if not kfs:
            return np.full(t.shape, np.nan)
        kt = np.array([kf.time for kf in kfs])
        kv = np.array([kf.value for kf in kfs])
        if len(kfs) == 1:
            return np.full(t.shape, kv[0])

        idx = np.clip(np.searchsorted(kt, t, side="right") - 1, 0, len(kfs) - 2)
        t0, t1 = kt[idx], kt[idx + 1]
        v0, v1 = kv[idx], kv[idx + 1]
        p = np.clip((t - t0) / (t1 - t0), 0.0, 1.0)

        easings = np.array([kf.easing.value for kf in kfs])[idx]
        eased = np.empty_like(p)
        for easing in Easing:
            mask = easings == easing.value
            if mask.any():
                eased[mask] = easing.apply(p[mask])

        out = v0 + (v1 - v0) * eased
        out = np.where(t <= kt[0], kv[0], out)
        out = np.where(t >= kt[-1], kv[-1], out)
        return out

    # ── Persistence ───────────────────────────────────────────────

    def copy(self) -> "KeyframeTrack":
        return KeyframeTrack(self.parameter, self._keyframes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "parameter": self.parameter,
            "keyframes": [kf.to_dict() for kf in self._keyframes],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KeyframeTrack":
        return cls(
            data["parameter"],
            [Keyframe.from_dict(k) for k in data.get("keyframes") or []],
        )
