"""Tests for the render pipeline: stages, snapshots, cancellation, cleanup."""

import os
import subprocess
from pathlib import Path
from unittest import mock

import pytest

from splicekit.assets import AssetMetadata, AssetRegistry
from splicekit.config import RenderConfig
from splicekit.encoder import EncodeResult, Encoder, FFmpegEncoder, partial_path
from splicekit.errors import CompositionError, ProcessingFailed, RenderCancelled
from splicekit.render import CancelToken, RenderStage, plan_render, render_timeline
from splicekit.timeline import Clip, Timeline


class FakeEncoder(Encoder):
    """Records the plan and writes a placeholder output file."""

    def __init__(self, fail=False, on_encode=None):
        self.plans = []
        self.fail = fail
        self.on_encode = on_encode

    def encode(self, plan):
        self.plans.append(plan)
        output = plan.config.output
        partial_path(output).write_bytes(b"partial")
        if self.on_encode is not None:
            self.on_encode()
        if self.fail:
            raise ProcessingFailed("boom", returncode=1, stderr="boom")
        os.replace(partial_path(output), output)
        return EncodeResult(output, plan.duration)


@pytest.fixture
def setup(tmp_path):
    assets = AssetRegistry()
    video = assets.add_asset("/m/v.mp4", AssetMetadata(duration=10.0, dimensions=(640, 360)))
    tl = Timeline()
    tid = tl.add_track("video").track_id
    tl.add_clip(tid, Clip(video, 0.0, 3.0, 0.0, 3.0))
    config = RenderConfig(tmp_path / "out.mp4", width=640, height=360, fps=10)
    return tl, assets, config


class TestRenderTimeline:
    def test_stages_and_result(self, setup):
        tl, assets, config = setup
        stages = []
        result = render_timeline(tl, assets, config, encoder=FakeEncoder(),
                                 progress=lambda s, f: stages.append((s, f)))
        assert [s for s, _ in stages] == [
            RenderStage.PREPARING, RenderStage.PLANNING,
            RenderStage.ENCODING, RenderStage.COMPLETE,
        ]
        assert stages[-1][1] == 1.0
        assert result.output_path == config.output
        assert result.duration == 3.0
        assert result.total_frames == 30
        assert result.render_time >= 0

    def test_renders_a_snapshot(self, setup):
        tl, assets, config = setup
        tid = tl.track_ids[0]

        def edit_during_encode():
            tl.add_clip(tid, Clip(next(iter(assets)).id, 5.0, 1.0, 0.0, 1.0))

        encoder = FakeEncoder(on_encode=edit_during_encode)
        result = render_timeline(tl, assets, config, encoder=encoder)
        assert result.duration == 3.0
        assert len(tl.get_track(tid).clips) == 2

    def test_cancelled_before_start(self, setup):
        tl, assets, config = setup
        token = CancelToken()
        token.cancel()
        stages = []
        with pytest.raises(RenderCancelled):
            render_timeline(tl, assets, config, encoder=FakeEncoder(),
                            progress=lambda s, f: stages.append(s), cancel=token)
        assert stages[-1] == RenderStage.CANCELLED
        assert not config.output.exists()

    def test_cancel_during_encode_removes_output(self, setup):
        tl, assets, config = setup
        token = CancelToken()
        with pytest.raises(RenderCancelled):
            render_timeline(tl, assets, config,
                            encoder=FakeEncoder(on_encode=token.cancel), cancel=token)
        assert not config.output.exists()

    def test_failure_reports_and_cleans_up(self, setup):
        tl, assets, config = setup
        stages = []
        with pytest.raises(ProcessingFailed):
            render_timeline(tl, assets, config, encoder=FakeEncoder(fail=True),
                            progress=lambda s, f: stages.append(s))
        assert stages[-1] == RenderStage.FAILED
        assert not config.output.exists()
        assert not partial_path(config.output).exists()

    def test_failure_keeps_preexisting_output(self, setup):
        tl, assets, config = setup
        config.output.write_bytes(b"previous render")
        with pytest.raises(ProcessingFailed):
            render_timeline(tl, assets, config, encoder=FakeEncoder(fail=True))
        assert config.output.read_bytes() == b"previous render"
        assert not partial_path(config.output).exists()

    def test_failed_ffmpeg_keeps_preexisting_output(self, setup):
        tl, assets, config = setup
        config.output.write_bytes(b"previous good render")

        def fake_run(cmd, **kwargs):
            Path(cmd[-1]).write_bytes(b"partial")
            raise subprocess.CalledProcessError(1, cmd, stderr="x")

        with mock.patch("splicekit.encoder.subprocess.run", side_effect=fake_run) as run:
            with pytest.raises(ProcessingFailed):
                render_timeline(tl, assets, config, encoder=FFmpegEncoder(ffmpeg="ffmpeg"))
        assert run.call_args[0][0][-1] == str(partial_path(config.output))
        assert config.output.read_bytes() == b"previous good render"
        assert not partial_path(config.output).exists()

    def test_success_replaces_preexisting_output(self, setup):
        tl, assets, config = setup
        config.output.write_bytes(b"previous render")
        render_timeline(tl, assets, config, encoder=FakeEncoder())
        assert config.output.read_bytes() == b"partial"
        assert not partial_path(config.output).exists()

    def test_composition_error_reported_as_failure(self, setup, tmp_path):
        _, assets, _ = setup
        config = RenderConfig(tmp_path / "empty.mp4", width=640, height=360, fps=10)
        stages = []
        with pytest.raises(CompositionError):
            render_timeline(Timeline(), assets, config, encoder=FakeEncoder(),
                            progress=lambda s, f: stages.append(s))
        assert stages[-1] == RenderStage.FAILED

    def test_invalid_config_raises_value_error(self, setup, tmp_path):
        tl, assets, _ = setup
        config = RenderConfig(tmp_path / "bad.mp4", width=640, height=360, fps=0)
        encoder = FakeEncoder()
        with pytest.raises(ValueError, match="fps"):
            render_timeline(tl, assets, config, encoder=encoder)
        assert encoder.plans == []


class TestCancelToken:
    def test_flag(self):
        token = CancelToken()
        assert not token.cancelled
        token.raise_if_cancelled()
        token.cancel()
        assert token.cancelled
        with pytest.raises(RenderCancelled):
            token.raise_if_cancelled()


def test_plan_render_does_not_touch_timeline(setup):
    tl, assets, config = setup
    before = tl.snapshot()
    plan = plan_render(tl, assets, config)
    assert plan.duration == 3.0
    assert tl == before
