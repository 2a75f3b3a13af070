"""Tests for media probing (runs the bundled ffmpeg through moviepy)."""

import pytest

from splicekit.probe import detect_kind, probe_asset


class TestDetectKind:
    def test_suffixes(self):
        assert detect_kind("a/b/clip.MP4") == "video"
        assert detect_kind("voice.wav") == "audio"
        assert detect_kind("logo.png") == "image"
        assert detect_kind("no_suffix") == "video"


class TestProbeAsset:
    def test_video(self, source_video):
        meta = probe_asset(source_video)
        assert meta.kind == "video"
        assert meta.duration == pytest.approx(5.0, abs=0.2)
        assert meta.dimensions == (320, 240)
        assert meta.extra["has_audio"] == "true"

    def test_audio(self, source_audio):
        meta = probe_asset(source_audio, extra={"purpose": "music"})
        assert meta.kind == "audio"
        assert meta.duration == pytest.approx(3.0, abs=0.1)
        assert meta.dimensions is None
        assert meta.extra == {"purpose": "music"}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Asset not found"):
            probe_asset(tmp_path / "gone.mp4")
