"""Prober: reads duration, dimensions and stream kind from a media file.

Backed by moviepy's readers, which shell out to the ffmpeg binary bundled
with imageio-ffmpeg. Facts the reader cannot supply are left as None;
callers must not assume every field is populated.
"""

import logging
from pathlib import Path

from moviepy import AudioFileClip, ImageClip, VideoFileClip

from .assets import AssetMetadata

logger = logging.getLogger(__name__)


AUDIO_SUFFIXES = {".wav", ".mp3", ".aac", ".m4a", ".flac", ".ogg", ".opus"}
IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".bmp", ".gif", ".webp", ".tif", ".tiff"}


def detect_kind(path: str | Path) -> str:
    """Guess the stream kind ("video", "audio", "image") from the suffix."""
    suffix = Path(path).suffix.lower()
    if suffix in AUDIO_SUFFIXES:
        return "audio"
    if suffix in IMAGE_SUFFIXES:
        return "image"
    return "video"


def _known(value):
    """moviepy reports unknown durations as None or inf."""
    if value is None:
        return None
    value = float(value)
    if value != value or value == float("inf"):
        return None
    return value


def probe_asset(
    path: str | Path, extra: dict[str, str] | None = None,
) -> AssetMetadata:
    """Probe a media file and return its AssetMetadata.

    Args:
        path: Media file to inspect.
        extra: Caller supplied tags stored verbatim (e.g. {"purpose": "music"}).

    Raises:
        FileNotFoundError: The path does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Asset not found: {path}")

    kind = detect_kind(path)
    extra = dict(extra or {})

    if kind == "audio":
        clip = AudioFileClip(str(path))
        try:
            meta = AssetMetadata(
                duration=_known(clip.duration), dimensions=None,
                kind="audio", extra=extra,
            )
        finally:
            clip.close()
    elif kind == "image":
        clip = ImageClip(str(path))
        try:
            w, h = clip.size
            meta = AssetMetadata(
                duration=None, dimensions=(int(w), int(h)),
                kind="image", extra=extra,
            )
        finally:
            clip.close()
    else:
        clip = VideoFileClip(str(path))
        try:
            w, h = clip.size
            if clip.audio is not None:
                extra.setdefault("has_audio", "true")
            meta = AssetMetadata(
                duration=_known(clip.duration), dimensions=(int(w), int(h)),
                kind="video", extra=extra,
            )
        finally:
            clip.close()

    logger.debug(
        "Probed %s: kind=%s duration=%s dimensions=%s",
        path, meta.kind, meta.duration, meta.dimensions,
    )
    return meta
