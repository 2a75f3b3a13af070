"""Render configuration and the YAML render-settings loader.

RenderConfig carries everything the planner and encoder need to know
about the output: path, resolution, frame rate, codecs with 0-100
quality knobs, container, an optional render range and encoder threads.

Render settings schema (load_render_config):
  paths:
    renders: "/path/to/renders"
  output: "${renders}/final.mp4"
  container: mp4                # mp4 | webm | mov | mkv | gif
  video:
    width: 1920
    height: 1080
    fps: 30
    codec: h264                 # h264 | h265 | vp9 | av1
    quality: 80                 # 0-100, maps to CRF
    gpu: false                  # h264/h265 -> NVENC
  audio:
    codec: aac                  # aac | opus | mp3 | vorbis
    quality: 80                 # 0-100, maps to bitrate
  range:
    start: "00:05"              # seconds or [HH:]MM:SS[.fff]
    end: 12.5
  threads: 4
  curve_rate: 30                # parameter curve samples per second
"""

import re
from dataclasses import asdict, dataclass
from pathlib import Path

import yaml

from .timecode import parse_time


VIDEO_CODECS = {
    "h264": "libx264",
    "h265": "libx265",
    "vp9": "libvpx-vp9",
    "av1": "libaom-av1",
}

GPU_VIDEO_CODECS = {
    "h264": "h264_nvenc",
    "h265": "hevc_nvenc",
}

AUDIO_CODECS = {
    "aac": "aac",
    "opus": "libopus",
    "mp3": "libmp3lame",
    "vorbis": "libvorbis",
}

CONTAINERS = {
    "mp4": ".mp4",
    "webm": ".webm",
    "mov": ".mov",
    "mkv": ".mkv",
    "gif": ".gif",
}

# Codecs each container can hold. Missing entries accept everything.
CONTAINER_VIDEO_CODECS = {
    "webm": {"vp9", "av1"},
    "mp4": {"h264", "h265", "vp9", "av1"},
}
CONTAINER_AUDIO_CODECS = {
    "webm": {"opus", "vorbis"},
    "mp4": {"aac", "opus", "mp3"},
    "mov": {"aac", "mp3"},
}

# CRF ceiling shared by x264/x265/vp9/aom.
MAX_CRF = 51
MIN_AUDIO_KBPS = 64
MAX_AUDIO_KBPS = 320


# ── Path utilities ─────────────────────────────────────────────────

def resolve_path_vars(text: str, paths: dict[str, str]) -> str:
    """Replace ${name} variables in a string using the paths dict."""
    def _replace(match):
        key = match.group(1)
        if key not in paths:
            raise ValueError(f"Unknown path variable: ${{{key}}}")
        return str(paths[key])
    return re.sub(r"\$\{(\w+)\}", _replace, text)


# ── RenderConfig ───────────────────────────────────────────────────

@dataclass
class RenderConfig:
    output_path: str | Path
    width: int = 1920
    height: int = 1080
    fps: float = 30.0
    video_codec: str = "h264"
    video_quality: int = 80
    audio_codec: str = "aac"
    audio_quality: int = 80
    container: str = "mp4"
    start: float | None = None
    end: float | None = None
    threads: int | None = None
    use_gpu: bool = False
    curve_rate: float | None = None

    @property
    def resolution(self) -> tuple[int, int]:
        return (self.width, self.height)

    @property
    def output(self) -> Path:
        """Output path, with the container's suffix added when it has none."""
        path = Path(self.output_path)
        if not path.suffix and self.container in CONTAINERS:
            path = path.with_suffix(CONTAINERS[self.container])
        return path

    @property
    def sample_rate(self) -> float:
        """Parameter curve samples per second (defaults to the frame rate)."""
        return self.curve_rate or self.fps

    @property
    def has_audio(self) -> bool:
        return self.container != "gif"

    @property
    def crf(self) -> int:
        """Quality 100 -> CRF 0 (lossless), quality 0 -> CRF 51."""
        return round((100 - self.video_quality) * MAX_CRF / 100)

    @property
    def audio_bitrate(self) -> str:
        kbps = MIN_AUDIO_KBPS + (MAX_AUDIO_KBPS - MIN_AUDIO_KBPS) * self.audio_quality / 100
        return f"{int(round(kbps))}k"

    @property
    def ffmpeg_video_codec(self) -> str:
        if self.container == "gif":
            return "gif"
        if self.use_gpu and self.video_codec in GPU_VIDEO_CODECS:
            return GPU_VIDEO_CODECS[self.video_codec]
        return VIDEO_CODECS[self.video_codec]

    @property
    def ffmpeg_audio_codec(self) -> str:
        return AUDIO_CODECS[self.audio_codec]

    def video_params(self) -> list[str]:
        """Encoder quality flags for the selected video codec."""
        codec = self.ffmpeg_video_codec
        if codec == "gif":
            return []
        if codec.endswith("_nvenc"):
            return ["-cq", str(self.crf), "-pix_fmt", "yuv420p"]
        if codec in ("libvpx-vp9", "libaom-av1"):
            params = ["-crf", str(self.crf), "-b:v", "0", "-pix_fmt", "yuv420p"]
            if codec == "libaom-av1":
                params += ["-cpu-used", "6"]
            return params
        return ["-crf", str(self.crf), "-pix_fmt", "yuv420p"]

    def audio_params(self) -> list[str]:
        return ["-c:a", self.ffmpeg_audio_codec, "-b:a", self.audio_bitrate]

    def validate(self) -> "RenderConfig":
        """Check every field and report all problems at once.

        Returns:
            self, so calls can be chained.

        Raises:
            ValueError: Lists each invalid field.
        """
        errors = []
        if not str(self.output_path).strip():
            errors.append("output_path must not be empty")
        if not isinstance(self.width, int) or self.width <= 0:
            errors.append(f"width must be a positive integer, got {self.width!r}")
        if not isinstance(self.height, int) or self.height <= 0:
            errors.append(f"height must be a positive integer, got {self.height!r}")
        if (self.video_codec in ("h264", "h265") and self.container != "gif"
                and isinstance(self.width, int) and isinstance(self.height, int)
                and (self.width % 2 or self.height % 2)):
            errors.append(
                f"{self.video_codec} needs even dimensions, got {self.width}x{self.height}"
            )
        if not isinstance(self.fps, (int, float)) or self.fps <= 0:
            errors.append(f"fps must be > 0, got {self.fps!r}")
        if self.video_codec not in VIDEO_CODECS:
            errors.append(
                f"invalid video_codec '{self.video_codec}'. Valid: {sorted(VIDEO_CODECS)}"
            )
        if self.audio_codec not in AUDIO_CODECS:
            errors.append(
                f"invalid audio_codec '{self.audio_codec}'. Valid: {sorted(AUDIO_CODECS)}"
            )
        if self.container not in CONTAINERS:
            errors.append(
                f"invalid container '{self.container}'. Valid: {sorted(CONTAINERS)}"
            )
        else:
            allowed_video = CONTAINER_VIDEO_CODECS.get(self.container)
            if allowed_video and self.video_codec not in allowed_video:
                errors.append(
                    f"container '{self.container}' cannot hold video codec "
                    f"'{self.video_codec}'. Valid: {sorted(allowed_video)}"
                )
            allowed_audio = CONTAINER_AUDIO_CODECS.get(self.container)
            if allowed_audio and self.audio_codec not in allowed_audio:
                errors.append(
                    f"container '{self.container}' cannot hold audio codec "
                    f"'{self.audio_codec}'. Valid: {sorted(allowed_audio)}"
                )
        for name in ("video_quality", "audio_quality"):
            q = getattr(self, name)
            if not isinstance(q, int) or not 0 <= q <= 100:
                errors.append(f"{name} must be an integer in 0-100, got {q!r}")
        if self.start is not None and self.start < 0:
            errors.append(f"range start must be >= 0, got {self.start}")
        if self.end is not None and self.end <= (self.start or 0.0):
            errors.append(
                f"range end ({self.end}) must be after range start ({self.start or 0.0})"
            )
        if self.threads is not None and (not isinstance(self.threads, int) or self.threads < 1):
            errors.append(f"threads must be >= 1, got {self.threads!r}")
        if self.curve_rate is not None and self.curve_rate <= 0:
            errors.append(f"curve_rate must be > 0, got {self.curve_rate}")

        if errors:
            msg = f"Invalid render config ({len(errors)} problem(s)):\n"
            for e in errors:
                msg += f"  - {e}\n"
            raise ValueError(msg)
        return self

    def to_dict(self) -> dict:
        data = asdict(self)
        data["output_path"] = str(self.output_path)
        return data


# ── Loader ─────────────────────────────────────────────────────────

def load_render_config(config_path: str | Path) -> RenderConfig:
    """Load and validate a YAML render-settings file.

    Processing pipeline:
      1. Parse YAML.
      2. Resolve ${path} variables in the output path.
      3. Parse range bounds (seconds or clock strings).
      4. Build and validate a RenderConfig.

    Args:
        config_path: Path to the YAML file.

    Returns:
        A validated RenderConfig.

    Raises:
        ValueError: Missing output or invalid settings.
        FileNotFoundError: Missing settings file.
    """
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    if "output" not in raw:
        raise ValueError("Render config: missing required field 'output'")

    paths = raw.get("paths", {})
    output = resolve_path_vars(str(raw["output"]), paths)

    video = raw.get("video", {})
    audio = raw.get("audio", {})
    rng = raw.get("range", {})

    unknown = set(raw) - {
        "paths", "output", "container", "video", "audio", "range",
        "threads", "curve_rate",
    }
    if unknown:
        raise ValueError(f"Render config: unknown field(s) {sorted(unknown)}")

    config = RenderConfig(
        output_path=output,
        width=video.get("width", 1920),
        height=video.get("height", 1080),
        fps=video.get("fps", 30.0),
        video_codec=video.get("codec", "h264"),
        video_quality=video.get("quality", 80),
        audio_codec=audio.get("codec", "aac"),
        audio_quality=audio.get("quality", 80),
        container=raw.get("container", "mp4"),
        start=parse_time(rng["start"]) if "start" in rng else None,
        end=parse_time(rng["end"]) if "end" in rng else None,
        threads=raw.get("threads"),
        use_gpu=bool(video.get("gpu", False)),
        curve_rate=raw.get("curve_rate"),
    )
    return config.validate()
