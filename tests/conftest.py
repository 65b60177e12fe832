"""Shared fixtures: isolated settings, fake clocks and fake executables."""

import stat
import subprocess
from pathlib import Path

import pytest

from lyrebird.config_io import ENV_OVERRIDES
from lyrebird.models.settings import Settings


class FakeClock:
    """Monotonic clock whose sleep() advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep host environment overrides out of every test."""
    for name in list(ENV_OVERRIDES) + ["CONFIG_DIR", "LOG_FILE"]:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_settings(tmp_path):
    """Build Settings rooted in tmp_path; sections can be overridden."""

    def _make(**sections) -> Settings:
        data = {
            "paths": {
                "config_dir": str(tmp_path / "etc"),
                "state_dir": str(tmp_path / "state"),
                "log_dir": str(tmp_path / "log"),
                "run_dir": str(tmp_path / "run"),
            },
            "lock": {"timeout": 0},
            "discovery": {"stabilization_timeout": 0},
        }
        for section, values in sections.items():
            data.setdefault(section, {}).update(values)
        return Settings.model_validate(data)

    return _make


def write_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def fake_encoder(tmp_path):
    """Stand-in for ffmpeg: prints the RTSP output marker then idles."""
    return write_script(
        tmp_path / "fake-ffmpeg",
        "echo \"Output #0, rtsp, to 'fake':\"\nsleep 300\n",
    )


@pytest.fixture
def failing_encoder(tmp_path):
    """Stand-in for ffmpeg that fails to open its input."""
    return write_script(
        tmp_path / "broken-ffmpeg",
        'echo "plughw:9,0: No such file or directory"\necho "Error opening input files"\nexit 1\n',
    )


@pytest.fixture
def single_input_encoder(tmp_path):
    """Stand-in for ffmpeg that streams single devices but rejects a filter_complex graph."""
    return write_script(
        tmp_path / "single-input-ffmpeg",
        'case " $* " in\n'
        '  *" -filter_complex "*) echo "Error initializing complex filters"; exit 1 ;;\n'
        "esac\n"
        "echo \"Output #0, rtsp, to 'fake':\"\nsleep 300\n",
    )


@pytest.fixture
def fake_relay_binary(tmp_path):
    """Stand-in for mediamtx: stays alive until signalled."""
    return write_script(tmp_path / "fake-mediamtx", "sleep 300\n")


@pytest.fixture
def dead_pid() -> int:
    """A pid that is guaranteed not to be running."""
    proc = subprocess.Popen(["true"])
    proc.wait()
    return proc.pid
