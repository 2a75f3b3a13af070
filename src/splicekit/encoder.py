"""Encoders execute a RenderPlan and write the output file.

FFmpegEncoder builds a single native ffmpeg invocation from the plan and
runs it as a subprocess. ffmpeg handles all decoding, compositing, mixing
and encoding; nothing here touches frames.

Filter graph layout:
  inputs    one input-seeked decode per plan step (-ss/-t per input)
  canvas    color=black at the output size/rate for the plan duration
  video     per segment: retime -> scale -> yuva420p -> opacity, then an
            overlay onto the running composite, bottom layer first, enabled
            only inside the segment's window
  audio     per mix: retime -> adelay to its start -> volume envelope,
            then one amix (normalize=0, so gains stay additive)

Time-varying curves become piecewise-linear ffmpeg expressions, e.g.
  if(lt(t,2),0.3+0.7*(t-0)/2,1)
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

import imageio_ffmpeg

from .errors import ProcessingFailed, RenderError
from .planner import AudioMix, ParameterCurve, RenderPlan, VideoSegment

logger = logging.getLogger(__name__)

# Characters of ffmpeg stderr kept on failure.
STDERR_TAIL = 2000


def partial_path(output: Path) -> Path:
    """Hidden sibling that receives the encode until it succeeds.

    The container suffix is kept so ffmpeg still picks the right muxer.
    """
    return output.with_name(f".{output.stem}.part{output.suffix}")


@dataclass(frozen=True)
class EncodeResult:
    output_path: Path
    duration: float


class Encoder:
    """Capability interface: consume a plan, produce an output file.

    Implementations write to partial_path(plan.config.output) and move the
    finished file onto the output path only when encoding succeeded.
    """

    def encode(self, plan: RenderPlan) -> EncodeResult:
        raise NotImplementedError


# ── Expression helpers ─────────────────────────────────────────────

def _num(value: float) -> str:
    """Compact decimal for ffmpeg arguments."""
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return text if text not in ("", "-0") else "0"


def curve_expression(curve: ParameterCurve, var: str = "t") -> str:
    """Piecewise-linear ffmpeg expression for a curve over variable `var`.

    Before the first breakpoint the first value holds, after the last the
    last value holds.
    """
    points = curve.breakpoints()
    if len(points) == 1 or curve.is_constant:
        return _num(points[0][1])
    expr = _num(points[-1][1])
    for (t0, v0), (t1, v1) in reversed(list(zip(points, points[1:]))):
        if t1 - t0 <= 0:
            continue
        slope = (v1 - v0) / (t1 - t0)
        segment = f"{_num(v0)}+{_num(slope)}*({var}-{_num(t0)})"
        expr = f"if(lt({var},{_num(t1)}),{segment},{expr})"
    return f"if(lt({var},{_num(points[0][0])}),{_num(points[0][1])},{expr})"


def _atempo_chain(speed: float) -> list[str]:
    """atempo accepts 0.5-100 per instance; chain halves below that."""
    filters = []
    while speed < 0.5:
        filters.append("atempo=0.5")
        speed /= 0.5
    filters.append(f"atempo={_num(speed)}")
    return filters


# ── FFmpegEncoder ──────────────────────────────────────────────────

class FFmpegEncoder(Encoder):
    """Runs the plan through the ffmpeg binary bundled with imageio-ffmpeg.

    Args:
        ffmpeg: Path to an ffmpeg executable. Defaults to the bundled one.
        extra_args: Additional output arguments appended before the path.
    """

    def __init__(self, ffmpeg: str | None = None, extra_args: list[str] | None = None):
        self.ffmpeg = ffmpeg or imageio_ffmpeg.get_ffmpeg_exe()
        self.extra_args = list(extra_args or [])

    def _inputs(self, plan: RenderPlan) -> list[str]:
        args = []
        for seg in plan.video:
            if seg.asset_kind == "image":
                args += ["-loop", "1", "-framerate", _num(plan.config.fps),
                         "-t", _num(seg.duration), "-i", str(seg.path)]
            else:
                args += ["-ss", _num(seg.source_in),
                         "-t", _num(seg.source_out - seg.source_in),
                         "-i", str(seg.path)]
        for mix in plan.audio:
            args += ["-ss", _num(mix.source_in),
                     "-t", _num(mix.source_out - mix.source_in),
                     "-i", str(mix.path)]
        return args

    def _video_chain(self, seg: VideoSegment, index: int, plan: RenderPlan) -> str:
        width, height = plan.config.resolution
        parts = []
        if seg.asset_kind == "image":
            parts.append(f"setpts=PTS-STARTPTS+{_num(seg.start)}/TB")
        else:
            parts.append(
                f"setpts=(PTS-STARTPTS)/{_num(seg.speed)}+{_num(seg.start)}/TB"
            )

        if seg.scale.is_constant:
            s = seg.scale.constant
            parts.append(
                f"scale=w={_even(width * s)}:h={_even(height * s)}"
                f":force_original_aspect_ratio=decrease"
            )
        else:
            s_expr = curve_expression(seg.scale)
            parts.append(
                f"scale=w='trunc({width}*({s_expr})/2)*2'"
                f":h='trunc({height}*({s_expr})/2)*2'"
                f":eval=frame"
            )
        parts.append("format=yuva420p")

        if seg.opacity.is_constant:
            if seg.opacity.constant < 1.0:
                parts.append(f"colorchannelmixer=aa={_num(seg.opacity.constant)}")
        else:
            a_expr = curve_expression(seg.opacity, var="T")
            parts.append(
                "geq=lum='lum(X,Y)':cb='cb(X,Y)':cr='cr(X,Y)'"
                f":a='alpha(X,Y)*({a_expr})'"
            )
        return f"[{index}:v]" + ",".join(parts) + f"[v{index}]"

    def _overlay(self, seg: VideoSegment, index: int, src: str, dst: str) -> str:
        x = curve_expression(seg.position_x)
        y = curve_expression(seg.position_y)
        return (
            f"[{src}][v{index}]overlay="
            f"x='(main_w-overlay_w)/2+({x})':y='(main_h-overlay_h)/2+({y})'"
            f":eof_action=pass"
            f":enable='between(t,{_num(seg.start)},{_num(seg.end)})'"
            f"[{dst}]"
        )

    def _audio_chain(self, mix: AudioMix, index: int) -> str:
        parts = ["asetpts=PTS-STARTPTS"]
        if abs(mix.speed - 1.0) > 1e-9:
            parts += _atempo_chain(mix.speed)
        delay_ms = int(round(mix.start * 1000))
        if delay_ms > 0:
            parts.append(f"adelay={delay_ms}:all=1")
        if mix.volume.is_constant:
            parts.append(f"volume={_num(mix.volume.constant)}")
        else:
            parts.append(f"volume='{curve_expression(mix.volume)}':eval=frame")
        return f"[{index}:a]" + ",".join(parts) + f"[a{index}]"

    def build_filter_graph(self, plan: RenderPlan) -> tuple[str, str | None]:
        """Return (filter_complex, audio_label). The video label is always [vout]."""
        config = plan.config
        width, height = config.resolution
        filters = [
            f"color=c=black:s={width}x{height}:r={_num(config.fps)}"
            f":d={_num(plan.duration)}[base]"
        ]

        current = "base"
        for i, seg in enumerate(plan.video):
            filters.append(self._video_chain(seg, i, plan))
            nxt = f"ov{i}"
            filters.append(self._overlay(seg, i, current, nxt))
            current = nxt
        out_format = "rgb8" if config.container == "gif" else "yuv420p"
        filters.append(f"[{current}]format={out_format}[vout]")

        audio_label = None
        if config.has_audio and plan.audio:
            offset = len(plan.video)
            labels = []
            for j, mix in enumerate(plan.audio):
                filters.append(self._audio_chain(mix, offset + j))
                labels.append(f"[a{offset + j}]")
            filters.append(
                "".join(labels)
                + f"amix=inputs={len(labels)}:normalize=0:duration=longest[aout]"
            )
            audio_label = "[aout]"
        return ";".join(filters), audio_label

    def build_command(self, plan: RenderPlan, output: Path | None = None) -> list[str]:
        """Full ffmpeg argument list. `output` defaults to the configured path."""
        config = plan.config
        filter_graph, audio_label = self.build_filter_graph(plan)
        cmd = [
            self.ffmpeg, "-y", "-hide_banner",
            *self._inputs(plan),
            "-filter_complex", filter_graph,
            "-map", "[vout]",
        ]
        cmd += ["-c:v", config.ffmpeg_video_codec, *config.video_params()]
        if audio_label:
            cmd += ["-map", audio_label, *config.audio_params()]
        else:
            cmd.append("-an")
        if config.container == "mp4":
            cmd += ["-movflags", "+faststart"]
        if config.threads:
            cmd += ["-threads", str(config.threads)]
        cmd += ["-r", _num(config.fps), "-t", _num(plan.duration)]
        cmd += self.extra_args
        cmd.append(str(output or config.output))
        return cmd

    def encode(self, plan: RenderPlan) -> EncodeResult:
        """Run ffmpeg for the plan.

        ffmpeg writes to partial_path(output); the result replaces the
        configured output only once ffmpeg has succeeded, so a failed encode
        leaves any earlier file at that path untouched.

        Raises:
            ProcessingFailed: ffmpeg exited non-zero or wrote nothing.
            RenderError: ffmpeg could not be started.
        """
        output = plan.config.output
        output.parent.mkdir(parents=True, exist_ok=True)
        part = partial_path(output)
        cmd = self.build_command(plan, part)
        logger.debug("ffmpeg command: %s", " ".join(cmd))

        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as e:
            part.unlink(missing_ok=True)
            stderr = (e.stderr or "")[-STDERR_TAIL:]
            raise ProcessingFailed(
                f"ffmpeg exited with status {e.returncode} while writing {output}:\n{stderr}",
                returncode=e.returncode,
                stderr=stderr,
            ) from e
        except OSError as e:
            part.unlink(missing_ok=True)
            raise RenderError(f"Could not run ffmpeg ({self.ffmpeg}): {e}") from e

        if not part.exists():
            raise ProcessingFailed(f"ffmpeg reported success but {output} was not written")
        os.replace(part, output)
        return EncodeResult(output_path=output, duration=plan.duration)


def _even(value: float) -> int:
    return max(2, int(value) // 2 * 2)
