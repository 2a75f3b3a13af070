"""Tests for RenderConfig and the YAML render-settings loader."""

from pathlib import Path

import pytest
import yaml

from splicekit.config import RenderConfig, load_render_config, resolve_path_vars


def _write(tmp_path, data, name="render.yaml"):
    path = tmp_path / name
    path.write_text(yaml.dump(data))
    return path


class TestDefaults:
    def test_defaults(self):
        c = RenderConfig("out.mp4")
        assert c.resolution == (1920, 1080)
        assert c.fps == 30.0
        assert c.ffmpeg_video_codec == "libx264"
        assert c.ffmpeg_audio_codec == "aac"
        assert c.validate() is c

    def test_output_suffix_from_container(self):
        assert RenderConfig("renders/final", container="webm",
                            video_codec="vp9", audio_codec="opus").output == Path("renders/final.webm")
        assert RenderConfig("x.mkv").output == Path("x.mkv")

    def test_quality_maps_to_crf(self):
        assert RenderConfig("o.mp4", video_quality=100).crf == 0
        assert RenderConfig("o.mp4", video_quality=0).crf == 51
        assert RenderConfig("o.mp4", video_quality=80).crf == 10

    def test_audio_bitrate(self):
        assert RenderConfig("o.mp4", audio_quality=0).audio_bitrate == "64k"
        assert RenderConfig("o.mp4", audio_quality=100).audio_bitrate == "320k"

    def test_gpu_maps_to_nvenc(self):
        c = RenderConfig("o.mp4", use_gpu=True)
        assert c.ffmpeg_video_codec == "h264_nvenc"
        assert c.video_params()[0] == "-cq"

    def test_vp9_params(self):
        c = RenderConfig("o.webm", container="webm", video_codec="vp9", audio_codec="opus")
        assert c.video_params()[:4] == ["-crf", "10", "-b:v", "0"]

    def test_sample_rate_defaults_to_fps(self):
        assert RenderConfig("o.mp4", fps=24).sample_rate == 24
        assert RenderConfig("o.mp4", fps=24, curve_rate=5).sample_rate == 5


class TestValidate:
    def test_reports_every_problem(self):
        c = RenderConfig("", width=0, fps=0, video_quality=150)
        with pytest.raises(ValueError) as exc:
            c.validate()
        msg = str(exc.value)
        assert "output_path" in msg
        assert "width" in msg
        assert "fps" in msg
        assert "video_quality" in msg

    def test_unknown_codec(self):
        with pytest.raises(ValueError, match="invalid video_codec"):
            RenderConfig("o.mp4", video_codec="mpeg2").validate()

    def test_container_codec_mismatch(self):
        with pytest.raises(ValueError, match="cannot hold video codec"):
            RenderConfig("o.webm", container="webm", audio_codec="opus").validate()

    def test_odd_dimensions_for_h264(self):
        with pytest.raises(ValueError, match="even dimensions"):
            RenderConfig("o.mp4", width=321, height=240).validate()

    def test_range_order(self):
        with pytest.raises(ValueError, match="range end"):
            RenderConfig("o.mp4", start=5.0, end=2.0).validate()

    def test_gif_has_no_audio(self):
        c = RenderConfig("o.gif", container="gif")
        assert not c.has_audio
        assert c.ffmpeg_video_codec == "gif"


class TestResolvePathVars:
    def test_single_var(self):
        assert resolve_path_vars("${renders}/a.mp4", {"renders": "/r"}) == "/r/a.mp4"

    def test_unknown_var_raises(self):
        with pytest.raises(ValueError, match="Unknown path variable"):
            resolve_path_vars("${missing}/x", {})


class TestLoadRenderConfig:
    def test_full_file(self, tmp_path):
        path = _write(tmp_path, {
            "paths": {"renders": "/data/renders"},
            "output": "${renders}/final",
            "container": "mkv",
            "video": {"width": 1280, "height": 720, "fps": 25, "codec": "h265",
                      "quality": 60},
            "audio": {"codec": "opus", "quality": 50},
            "range": {"start": "00:05", "end": 12.5},
            "threads": 4,
        })
        c = load_render_config(path)
        assert c.output == Path("/data/renders/final.mkv")
        assert c.resolution == (1280, 720)
        assert c.fps == 25
        assert c.ffmpeg_video_codec == "libx265"
        assert c.ffmpeg_audio_codec == "libopus"
        assert (c.start, c.end) == (5.0, 12.5)
        assert c.threads == 4

    def test_minimal_file_uses_defaults(self, tmp_path):
        c = load_render_config(_write(tmp_path, {"output": "out.mp4"}))
        assert c.resolution == (1920, 1080)

    def test_missing_output(self, tmp_path):
        with pytest.raises(ValueError, match="missing required field 'output'"):
            load_render_config(_write(tmp_path, {"container": "mp4"}))

    def test_unknown_field(self, tmp_path):
        with pytest.raises(ValueError, match="unknown field"):
            load_render_config(_write(tmp_path, {"output": "o.mp4", "bitrate": 5}))

    def test_invalid_values_raise(self, tmp_path):
        with pytest.raises(ValueError, match="Invalid render config"):
            load_render_config(_write(tmp_path, {"output": "o.mp4", "video": {"fps": -1}}))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_render_config(tmp_path / "nope.yaml")
