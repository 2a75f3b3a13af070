"""Tests for the render planner."""

import numpy as np
import pytest

from splicekit.assets import AssetMetadata, AssetRegistry
from splicekit.config import RenderConfig
from splicekit.errors import CompositionError, MissingAssetError, RenderCancelled
from splicekit.keyframes import Easing
from splicekit.planner import ParameterCurve, RenderPlanner
from splicekit.render import CancelToken
from splicekit.timeline import Clip, Timeline


@pytest.fixture
def assets():
    return AssetRegistry()


@pytest.fixture
def video(assets):
    return assets.add_asset("/m/v.mp4", AssetMetadata(duration=20.0, dimensions=(640, 360)))


@pytest.fixture
def audio(assets):
    return assets.add_asset("/m/a.wav", AssetMetadata(duration=20.0, kind="audio"))


def _config(**kwargs):
    return RenderConfig("out.mp4", width=640, height=360, fps=10, **kwargs)


def _plan(timeline, assets, **kwargs):
    return RenderPlanner(timeline, assets, _config(**kwargs)).plan()


class TestValidation:
    def test_missing_asset(self, assets):
        tl = Timeline()
        tid = tl.add_track("video").track_id
        tl.add_clip(tid, Clip("gone", 0.0, 1.0, 0.0, 1.0))
        with pytest.raises(MissingAssetError, match="missing asset 'gone'"):
            _plan(tl, assets)

    def test_source_past_asset_end(self, assets, video):
        tl = Timeline()
        tid = tl.add_track("video").track_id
        tl.add_clip(tid, Clip(video, 0.0, 5.0, 18.0, 23.0))
        with pytest.raises(CompositionError,
                           match="needs source up to 00:23.000 .* is 00:20.000 long"):
            _plan(tl, assets)

    def test_audio_asset_on_video_track(self, assets, audio):
        tl = Timeline()
        tid = tl.add_track("video").track_id
        tl.add_clip(tid, Clip(audio, 0.0, 1.0, 0.0, 1.0))
        with pytest.raises(CompositionError, match="audio-only asset"):
            _plan(tl, assets)

    def test_unknown_duration_warns(self, assets, caplog):
        unknown = assets.add_asset("/m/live.mp4", AssetMetadata())
        tl = Timeline()
        tid = tl.add_track("video").track_id
        tl.add_clip(tid, Clip(unknown, 0.0, 2.0, 0.0, 2.0))
        with caplog.at_level("WARNING", logger="splicekit.planner"):
            plan = _plan(tl, assets)
        assert plan.duration == 2.0
        assert "unknown duration" in caplog.text

    def test_empty_timeline(self, assets):
        tl = Timeline()
        tl.add_track("video")
        with pytest.raises(CompositionError, match="no unmuted clips"):
            _plan(tl, assets)

    def test_invalid_config(self, assets):
        tl = Timeline()
        with pytest.raises(ValueError, match="fps"):
            RenderPlanner(tl, assets, RenderConfig("o.mp4", fps=0)).plan()


class TestComposition:
    def test_scenario_two_tracks_duration(self, assets, video):
        tl = Timeline()
        background = tl.add_track("video").track_id
        foreground = tl.add_track("video").track_id
        tl.add_keyframe(background, "opacity", 0.0, 0.3, Easing.LINEAR)
        tl.add_clip(foreground, Clip(video, 2.0, 8.0, 1.0, 9.0))
        plan = _plan(tl, assets)
        assert plan.duration >= 10.0
        assert plan.total_frames == 100

    def test_z_order_follows_track_order(self, assets, video):
        tl = Timeline()
        bottom = tl.add_track("video").track_id
        top = tl.add_track("video").track_id
        tl.add_clip(top, Clip(video, 0.0, 2.0, 0.0, 2.0))
        tl.add_clip(bottom, Clip(video, 0.0, 2.0, 0.0, 2.0))
        plan = _plan(tl, assets)
        assert [seg.track_id for seg in plan.video] == [bottom, top]
        assert [seg.layer for seg in plan.video] == [0, 1]

    def test_muted_track_excluded(self, assets, video):
        tl = Timeline()
        v = tl.add_track("video").track_id
        muted = tl.add_track("video").track_id
        kept = Clip(video, 0.0, 2.0, 0.0, 2.0)
        hidden = Clip(video, 0.0, 6.0, 0.0, 6.0)
        tl.add_clip(v, kept)
        tl.add_clip(muted, hidden)
        tl.set_muted(muted, True)
        plan = _plan(tl, assets)
        assert plan.clip_ids == {kept.id}
        assert plan.duration == 2.0
        assert tl.get_track(muted).find_clip(hidden.id) is not None

    def test_opacity_curve_combines_track_and_clip(self, assets, video):
        tl = Timeline()
        tid = tl.add_track("video").track_id
        c = Clip(video, 1.0, 2.0, 0.0, 2.0)
        tl.add_clip(tid, c)
        tl.add_keyframe(tid, "opacity", 0.0, 0.5)
        tl.add_keyframe(tid, "opacity", 0.0, 0.5, clip_id=c.id)
        tl.add_keyframe(tid, "opacity", 2.0, 1.0, clip_id=c.id)
        seg = _plan(tl, assets).video[0]
        assert seg.opacity.value_at(1.0) == pytest.approx(0.25)
        assert seg.opacity.value_at(3.0) == pytest.approx(0.5)
        assert seg.opacity.times[0] == 1.0 and seg.opacity.times[-1] == 3.0

    def test_static_scale_and_position(self, assets, video):
        tl = Timeline()
        tid = tl.add_track("video").track_id
        tl.add_clip(tid, Clip(video, 0.0, 1.0, 0.0, 1.0, scale=0.5, position=(20, 10)))
        seg = _plan(tl, assets).video[0]
        assert seg.scale.is_constant and seg.scale.constant == 0.5
        assert seg.position_x.constant == 20.0
        assert seg.position_y.constant == 10.0

    def test_audio_volume_curve(self, assets, audio):
        tl = Timeline()
        tid = tl.add_track("audio").track_id
        tl.add_clip(tid, Clip(audio, 0.0, 4.0, 0.0, 4.0))
        tl.add_keyframe(tid, "volume", 0.0, 0.0)
        tl.add_keyframe(tid, "volume", 4.0, 1.0)
        plan = _plan(tl, assets)
        mix = plan.audio[0]
        assert mix.volume.value_at(2.0) == pytest.approx(0.5)
        assert not mix.volume.is_constant

    def test_speed_carried(self, assets, video):
        tl = Timeline()
        tid = tl.add_track("video").track_id
        tl.add_clip(tid, Clip(video, 0.0, 2.0, 0.0, 4.0))
        assert _plan(tl, assets).video[0].speed == 2.0


class TestRenderRange:
    def test_range_trims_and_shifts(self, assets, video):
        tl = Timeline()
        tid = tl.add_track("video").track_id
        tl.add_clip(tid, Clip(video, 2.0, 6.0, 1.0, 7.0))
        plan = _plan(tl, assets, start=4.0, end=6.0)
        seg = plan.video[0]
        assert plan.duration == 2.0
        assert (seg.start, seg.end) == (0.0, 2.0)
        assert (seg.source_in, seg.source_out) == (3.0, 5.0)

    def test_clip_outside_range_dropped(self, assets, video):
        tl = Timeline()
        tid = tl.add_track("video").track_id
        early = Clip(video, 0.0, 1.0, 0.0, 1.0)
        late = Clip(video, 5.0, 1.0, 0.0, 1.0)
        tl.add_clip(tid, early)
        tl.add_clip(tid, late)
        plan = _plan(tl, assets, start=4.0)
        assert plan.clip_ids == {late.id}
        assert plan.duration == 2.0

    def test_range_past_end(self, assets, video):
        tl = Timeline()
        tid = tl.add_track("video").track_id
        tl.add_clip(tid, Clip(video, 0.0, 1.0, 0.0, 1.0))
        with pytest.raises(CompositionError,
                           match=r"00:03.000-00:01.000 is empty \(timeline ends at 00:01.000\)"):
            _plan(tl, assets, start=3.0)


class TestCancellation:
    def test_cancelled_before_planning(self, assets, video):
        tl = Timeline()
        tid = tl.add_track("video").track_id
        tl.add_clip(tid, Clip(video, 0.0, 1.0, 0.0, 1.0))
        token = CancelToken()
        token.cancel()
        with pytest.raises(RenderCancelled):
            RenderPlanner(tl, assets, _config()).plan(token)


class TestParameterCurve:
    def test_breakpoints_collapse_linear_runs(self):
        times = np.linspace(0.0, 2.0, 21)
        values = np.where(times < 1.0, times, 1.0)
        curve = ParameterCurve("opacity", times, values)
        points = curve.breakpoints()
        assert [round(t, 6) for t, _ in points] == [0.0, 1.0, 2.0]

    def test_constant(self):
        curve = ParameterCurve("scale", np.array([0.0, 1.0]), np.array([2.0, 2.0]))
        assert curve.is_constant
        assert curve.constant == 2.0

    def test_breakpoints_follow_long_eased_ramp(self, assets):
        long_video = assets.add_asset("/m/long.mp4", AssetMetadata(duration=300.0))
        tl = Timeline()
        tid = tl.add_track("video").track_id
        tl.add_clip(tid, Clip(long_video, 0.0, 300.0, 0.0, 300.0))
        tl.add_keyframe(tid, "opacity", 0.0, 0.0, Easing.EASE_IN_OUT)
        tl.add_keyframe(tid, "opacity", 300.0, 1.0)
        curve = _plan(tl, assets).video[0].opacity
        points = curve.breakpoints()
        times, values = zip(*points)
        outline = np.interp(curve.times, times, values)
        assert np.max(np.abs(outline - curve.values)) <= 1e-4 + 1e-9
        assert len(points) < len(curve.times)
        assert curve.value_at(67.5) == pytest.approx(0.1012, abs=1e-3)

    def test_breakpoints_keep_endpoints(self):
        times = np.linspace(0.0, 1.0, 5)
        curve = ParameterCurve("scale", times, times ** 2)
        points = curve.breakpoints()
        assert points[0] == (0.0, 0.0)
        assert points[-1] == (1.0, 1.0)
