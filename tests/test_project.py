"""Tests for Project: history-backed editing, asset checks and rendering."""

import pytest
from moviepy import VideoFileClip

from splicekit.assets import AssetMetadata
from splicekit.config import RenderConfig
from splicekit.errors import (
    InvalidRangeError, MissingAssetError, OverlapError, TimelineError, UnknownAssetError,
)
from splicekit.project import Project
from splicekit.timeline import Clip


class TestUndo:
    def test_undo_on_fresh_project_is_noop(self, project):
        before = project.timeline.snapshot()
        modified = project.modified_at
        assert project.undo() is False
        assert project.timeline == before
        assert project.modified_at == modified

    def test_n_edits_then_n_undos_restores_timeline(self, project, video_asset, audio_asset):
        initial = project.timeline.snapshot()
        v = project.add_track("video")
        a = project.add_track("audio")
        c = project.add_clip(v, Clip.from_source(video_asset, 0.0, 0.0, 4.0))
        project.add_clip(a, Clip.from_source(audio_asset, 0.0, 0.0, 4.0))
        project.add_relationship(v, a, "locked")
        project.move_clip(v, c, 2.0)
        project.trim_clip(v, c, 1.0, 5.0)
        project.split_clip(v, c, 4.0)
        project.set_muted(a, True)
        project.add_keyframe(v, "opacity", 1.0, 0.5)
        edits = 10

        for _ in range(edits):
            assert project.undo()
        assert project.timeline == initial
        assert project.undo() is False

    def test_redo_reapplies(self, project, video_asset):
        v = project.add_track("video")
        c = project.add_clip(v, Clip.from_source(video_asset, 0.0, 0.0, 4.0))
        project.move_clip(v, c, 3.0)
        after = project.timeline.snapshot()
        project.undo()
        assert project.get_clip(v, c).timeline_start == 0.0
        assert project.redo()
        assert project.timeline == after
        assert project.redo() is False

    def test_failed_edit_records_nothing(self, project, video_asset):
        v = project.add_track("video")
        project.add_clip(v, Clip.from_source(video_asset, 0.0, 0.0, 4.0))
        depth = len(project.history.undo_stack)
        with pytest.raises(OverlapError):
            project.add_clip(v, Clip.from_source(video_asset, 2.0, 0.0, 4.0))
        assert len(project.history.undo_stack) == depth

    def test_noop_edit_records_nothing(self, project, video_asset):
        v = project.add_track("video")
        c = project.add_clip(v, Clip.from_source(video_asset, 1.0, 0.0, 4.0))
        depth = len(project.history.undo_stack)
        project.move_clip(v, c, 1.0)
        assert len(project.history.undo_stack) == depth

    def test_transaction_is_one_undo_step(self, project, video_asset):
        v = project.add_track("video")
        with project.transaction("lay out"):
            project.add_clip(v, Clip.from_source(video_asset, 0.0, 0.0, 2.0))
            project.add_clip(v, Clip.from_source(video_asset, 2.0, 0.0, 2.0))
        assert len(project.get_track(v).clips) == 2
        project.undo()
        assert project.get_track(v).clips == ()


class TestAssetChecks:
    def test_unknown_asset_rejected(self, project):
        v = project.add_track("video")
        with pytest.raises(UnknownAssetError, match="nope"):
            project.add_clip(v, Clip.from_source("nope", 0.0, 0.0, 1.0))
        assert project.get_track(v).clips == ()
        assert len(project.history.undo_stack) == 1

    def test_source_beyond_asset_rejected(self, project, video_asset):
        v = project.add_track("video")
        with pytest.raises(InvalidRangeError, match="exceeds asset"):
            project.add_clip(v, Clip.from_source(video_asset, 0.0, 15.0, 25.0))
        assert project.get_track(v).clips == ()

    def test_trim_beyond_asset_reverted(self, project, video_asset):
        v = project.add_track("video")
        c = project.add_clip(v, Clip.from_source(video_asset, 0.0, 10.0, 18.0))
        with pytest.raises(InvalidRangeError):
            project.trim_clip(v, c, 10.0, 22.0)
        assert project.get_clip(v, c).source_out == 18.0

    def test_audio_asset_on_video_track(self, project, audio_asset):
        v = project.add_track("video")
        with pytest.raises(TimelineError, match="cannot be placed"):
            project.add_clip(v, Clip.from_source(audio_asset, 0.0, 0.0, 1.0))

    def test_removed_asset_fails_at_render(self, project, video_asset, tmp_path):
        v = project.add_track("video")
        project.add_clip(v, Clip.from_source(video_asset, 0.0, 0.0, 1.0))
        assert project.remove_asset(video_asset)
        assert project.remove_asset(video_asset) is False
        with pytest.raises(MissingAssetError):
            project.plan(RenderConfig(tmp_path / "o.mp4", width=320, height=240))

    def test_same_path_twice_gives_distinct_assets(self, project):
        first = project.add_asset("/media/x.mp4", AssetMetadata(duration=1.0))
        second = project.add_asset(
            "/media/x.mp4", AssetMetadata(duration=1.0, extra={"purpose": "overlay"}),
        )
        assert first != second
        assert project.get_asset(second).extra["purpose"] == "overlay"


class TestAccessors:
    def test_returned_objects_are_copies(self, project, video_asset):
        v = project.add_track("video")
        c = project.add_clip(v, Clip.from_source(video_asset, 0.0, 0.0, 4.0))
        clip = project.get_clip(v, c)
        clip.timeline_start = 9.0
        project.get_track(v).name = "renamed"
        assert project.get_clip(v, c).timeline_start == 0.0
        assert project.get_track(v).name == "Video 1"

    def test_split_returns_right_half(self, project, video_asset):
        v = project.add_track("video")
        c = project.add_clip(v, Clip.from_source(video_asset, 0.0, 0.0, 4.0))
        right = project.split_clip(v, c, 1.5)
        assert right != c
        assert project.get_clip(v, right).timeline_start == 1.5
        assert project.get_clip(v, c).timeline_end == 1.5

    def test_evaluate_track_and_clip_parameters(self, project, video_asset):
        v = project.add_track("video")
        c = project.add_clip(v, Clip.from_source(video_asset, 2.0, 0.0, 4.0))
        project.add_keyframe(v, "opacity", 0.0, 0.0)
        project.add_keyframe(v, "opacity", 2.0, 1.0)
        project.add_keyframe(v, "scale", 0.0, 2.0, clip_id=c)
        assert project.evaluate(v, "opacity", 1.0) == pytest.approx(0.5)
        assert project.evaluate(v, "scale", 1.0, clip_id=c) == 2.0

    def test_duration(self, project, video_asset):
        v = project.add_track("video")
        project.add_clip(v, Clip.from_source(video_asset, 3.0, 0.0, 4.0))
        assert project.duration == 7.0

    def test_edits_touch_modified_at(self, project):
        modified = project.modified_at
        project.add_track("video")
        assert project.modified_at >= modified


class TestRender:
    def test_render_with_config(self, project, source_video, tmp_path):
        asset = project.import_asset(source_video)
        v = project.add_track("video")
        project.add_clip(v, Clip.from_source(asset, 0.0, 1.0, 3.0))
        project.add_clip(v, Clip.from_source(asset, 2.5, 0.0, 1.0))
        config = RenderConfig(tmp_path / "render" / "out", width=320, height=240, fps=10)

        result = project.render_with_config(config)

        assert result.output_path == tmp_path / "render" / "out.mp4"
        assert result.total_frames == 35
        with VideoFileClip(str(result.output_path)) as clip:
            assert clip.duration == pytest.approx(3.5, abs=0.3)
            assert tuple(clip.size) == (320, 240)

    def test_render_with_audio_track(self, project, source_video, source_audio, tmp_path):
        video = project.import_asset(source_video)
        tone = project.import_asset(source_audio, purpose="music")
        assert project.get_asset(tone).extra["purpose"] == "music"
        v = project.add_track("video")
        a = project.add_track("audio")
        project.add_clip(v, Clip.from_source(video, 0.0, 0.0, 2.0))
        project.add_clip(a, Clip.from_source(tone, 0.5, 0.0, 1.5))
        project.add_keyframe(a, "volume", 0.5, 0.0)
        project.add_keyframe(a, "volume", 2.0, 1.0)
        config = RenderConfig(tmp_path / "mix.mp4", width=320, height=240, fps=10)

        result = project.render_with_config(config)

        with VideoFileClip(str(result.output_path)) as clip:
            assert clip.audio is not None
            assert clip.duration == pytest.approx(2.0, abs=0.3)


def test_project_repr():
    assert "tracks=0" in repr(Project("demo"))
