"""Shared test fixtures for splicekit tests."""

import subprocess

import pytest
import imageio_ffmpeg

from splicekit.assets import AssetMetadata
from splicekit.project import Project

_FFMPEG = imageio_ffmpeg.get_ffmpeg_exe()


@pytest.fixture
def source_video(tmp_path):
    """Create a 5-second test video (320x240, 10fps) with audio using ffmpeg.

    Shared across the probe, encoder and project render tests.
    """
    out = tmp_path / "source.mp4"
    subprocess.run(
        [
            _FFMPEG, "-y",
            "-f", "lavfi", "-i", "color=c=blue:s=320x240:d=5:r=10",
            "-f", "lavfi", "-i", "anullsrc=r=44100:cl=mono",
            "-shortest",
            "-c:v", "libx264", "-crf", "28", "-pix_fmt", "yuv420p",
            "-c:a", "aac", "-b:a", "32k",
            str(out),
        ],
        check=True,
        capture_output=True,
    )
    return out


@pytest.fixture
def source_audio(tmp_path):
    """Create a 3-second 440Hz mono wav."""
    out = tmp_path / "tone.wav"
    subprocess.run(
        [
            _FFMPEG, "-y",
            "-f", "lavfi", "-i", "sine=frequency=440:duration=3:sample_rate=44100",
            str(out),
        ],
        check=True,
        capture_output=True,
    )
    return out


@pytest.fixture
def project():
    return Project("test")


@pytest.fixture
def video_asset(project):
    """A 20s 1920x1080 video asset registered without probing."""
    return project.add_asset(
        "/media/a.mp4", AssetMetadata(duration=20.0, dimensions=(1920, 1080)),
    )


@pytest.fixture
def audio_asset(project):
    """A 20s audio asset registered without probing."""
    return project.add_asset(
        "/media/a.wav", AssetMetadata(duration=20.0, kind="audio"),
    )
