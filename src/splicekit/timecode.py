"""Time helpers shared by the timeline, keyframe and render modules.

All times in splicekit are plain float seconds. Two instants closer than
TIME_EPSILON are treated as the same instant, which keeps adjacency checks
(clip A ends exactly where clip B starts) stable under float arithmetic.

Contains: tolerance comparisons, timecode formatting and time parsing.
"""

from decimal import Decimal, ROUND_HALF_UP


TIME_EPSILON = 1e-9


# ── Comparisons ───────────────────────────────────────────────────

def same_time(a: float, b: float) -> bool:
    """True when two instants are equal within TIME_EPSILON."""
    return abs(a - b) <= TIME_EPSILON


def ranges_overlap(
    start_a: float, end_a: float, start_b: float, end_b: float,
) -> bool:
    """Check whether two half-open ranges [start, end) intersect.

    Ranges that only touch at an endpoint do not overlap.
    """
    return start_a < end_b - TIME_EPSILON and start_b < end_a - TIME_EPSILON


# ── Formatting ────────────────────────────────────────────────────

def format_time(seconds: float) -> str:
    """Format seconds as mm:ss.mmm with half-up millisecond rounding.

    Negative values clamp to zero.
    """
    if seconds < 0:
        seconds = 0.0
    ms_total = int(
        (Decimal(str(seconds)) * Decimal(1000)).to_integral_value(
            rounding=ROUND_HALF_UP
        )
    )
    m, rem = divmod(ms_total, 60000)
    s, ms = divmod(rem, 1000)
    return f"{m:02d}:{s:02d}.{ms:03d}"


def to_timecode(seconds: float, fps: float) -> str:
    """Format seconds as an HH:MM:SS:FF timecode at the given frame rate."""
    if fps <= 0:
        raise ValueError(f"fps must be positive, got {fps}")
    seconds = max(0.0, seconds)
    whole = int(seconds)
    hours, rem = divmod(whole, 3600)
    minutes, secs = divmod(rem, 60)
    frames = int(seconds * fps) % max(1, int(fps))
    return f"{hours:02d}:{minutes:02d}:{secs:02d}:{frames:02d}"


def frame_count(seconds: float, fps: float) -> int:
    """Number of whole frames that fit in a duration."""
    return max(0, int(round(seconds * fps, 6)))


# ── Parsing ───────────────────────────────────────────────────────

def parse_time(text: str | float | int) -> float:
    """Parse a time given as seconds or as HH:MM:SS[.fff].

    Accepts numbers unchanged, numeric strings ("12.5"), and colon
    separated clock strings ("01:02:03.250", "02:03.5").

    Raises:
        ValueError: Unparseable string or negative component.
    """
    if isinstance(text, (int, float)):
        return float(text)

    value = text.strip()
    try:
        return float(value)
    except ValueError:
        pass

    parts = value.split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time format: '{text}'")
    if len(parts) == 2:
        parts.insert(0, "0")

    try:
        hours = float(parts[0])
        minutes = float(parts[1])
        secs = float(parts[2])
    except ValueError:
        raise ValueError(f"Invalid time format: '{text}'") from None

    if hours < 0 or minutes < 0 or secs < 0:
        raise ValueError(f"Time components must be >= 0: '{text}'")
    return hours * 3600.0 + minutes * 60.0 + secs
