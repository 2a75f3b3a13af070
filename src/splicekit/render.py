"""Render pipeline: snapshot -> plan -> encode, with progress and cancellation.

render_timeline works on deep copies of the timeline and asset registry,
so edits made to the live project while a render runs never reach it.
Cancellation is checked between steps. A cancelled or failed render never
leaves a partial output file behind, and encoders only replace an
existing output once encoding has succeeded.
"""

import copy
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

from .assets import AssetRegistry
from .config import RenderConfig
from .encoder import Encoder, FFmpegEncoder, partial_path
from .errors import RenderCancelled, RenderError
from .planner import RenderPlan, RenderPlanner
from .timecode import to_timecode
from .timeline import Timeline

logger = logging.getLogger(__name__)


class RenderStage(str, Enum):
    PREPARING = "preparing"
    PLANNING = "planning"
    ENCODING = "encoding"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


ProgressCallback = Callable[[RenderStage, float], None]


class CancelToken:
    """Thread-safe cancellation flag shared between caller and render."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RenderCancelled("Render cancelled")


@dataclass(frozen=True)
class RenderResult:
    output_path: Path
    duration: float
    total_frames: int
    render_time: float


def plan_render(
    timeline: Timeline, assets: AssetRegistry, config: RenderConfig,
    cancel: CancelToken | None = None,
) -> RenderPlan:
    """Snapshot the inputs and build a plan without encoding anything."""
    return RenderPlanner(
        timeline.snapshot(), copy.deepcopy(assets), config,
    ).plan(cancel)


def render_timeline(
    timeline: Timeline,
    assets: AssetRegistry,
    config: RenderConfig,
    encoder: Encoder | None = None,
    progress: ProgressCallback | None = None,
    cancel: CancelToken | None = None,
) -> RenderResult:
    """Plan and encode a timeline.

    Args:
        timeline: Live timeline; a snapshot is taken immediately.
        assets: Live asset registry; snapshotted with the timeline.
        config: Output settings.
        encoder: Defaults to FFmpegEncoder.
        progress: Called as progress(stage, fraction) at each stage change.
        cancel: Checked between plan steps and around the encode.

    Returns:
        RenderResult describing the written file.

    Raises:
        ValueError: Invalid config.
        RenderCancelled: The token was cancelled.
        RenderError: Planning or encoding failed.
    """
    def report(stage: RenderStage, fraction: float) -> None:
        if progress is not None:
            progress(stage, fraction)

    started = time.perf_counter()
    encoder = encoder or FFmpegEncoder()
    output = config.output
    existed = output.exists()

    report(RenderStage.PREPARING, 0.0)
    snapshot = timeline.snapshot()
    registry = copy.deepcopy(assets)

    try:
        if cancel is not None:
            cancel.raise_if_cancelled()
        report(RenderStage.PLANNING, 0.1)
        plan = RenderPlanner(snapshot, registry, config).plan(cancel)

        if cancel is not None:
            cancel.raise_if_cancelled()
        report(RenderStage.ENCODING, 0.2)
        logger.info(
            "Rendering %s (%d steps) to %s",
            to_timecode(plan.duration, plan.config.fps), len(plan.steps), output,
        )
        encoded = encoder.encode(plan)

        if cancel is not None:
            cancel.raise_if_cancelled()
    except RenderCancelled:
        _discard(output, existed)
        report(RenderStage.CANCELLED, 0.0)
        logger.info("Render to %s cancelled", output)
        raise
    except (RenderError, ValueError):
        _discard(output, existed)
        report(RenderStage.FAILED, 0.0)
        raise

    elapsed = time.perf_counter() - started
    report(RenderStage.COMPLETE, 1.0)
    logger.info("Rendered %s in %.2fs", encoded.output_path, elapsed)
    return RenderResult(
        output_path=encoded.output_path,
        duration=encoded.duration,
        total_frames=plan.total_frames,
        render_time=elapsed,
    )


def _discard(output: Path, existed: bool) -> None:
    """Remove the in-progress file and any output this render created."""
    partial_path(output).unlink(missing_ok=True)
    if not existed and output.exists():
        output.unlink()
        logger.debug("Removed partial output %s", output)
