"""
Unit tests for the command-line interface.

Commands run through main() against a config directory in tmp_path; logging
setup is patched so the test runner's handlers stay in place.
"""

import json
import os

import pytest
from unittest.mock import patch

from lyrebird import __version__
from lyrebird.cli import build_parser, main
from lyrebird.config_io import save_settings
from lyrebird.errors import ExitCode, NoDevicesFound
from lyrebird.models.device import AudioDevice
from lyrebird.models.stream import RelaySnapshot, Snapshot, StreamSnapshot, StreamState
from lyrebird.services.resources import ResourceLevel, ResourceUsage
from lyrebird.state_store import write_json, write_pid


@pytest.fixture(autouse=True)
def quiet_logging():
    with patch("lyrebird.cli.configure_logging"):
        yield


@pytest.fixture
def config_dir(tmp_path, make_settings):
    settings = make_settings()
    save_settings(settings, settings.paths.config_dir)
    return settings.paths.config_dir


@pytest.fixture
def settings(make_settings):
    return make_settings()


def run(config_dir, *args):
    return main(["--config-dir", str(config_dir), *args])


class TestParser:
    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["--version"])
        assert exc_info.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_stop_timeout(self):
        args = build_parser().parse_args(["stop", "--timeout", "5"])
        assert args.timeout == 5.0


class TestStatusCommand:
    """Tests for `lyrebird status`."""

    def test_not_running(self, config_dir, capsys):
        assert run(config_dir, "status") == ExitCode.GENERAL

        out = capsys.readouterr().out
        assert "Stream manager: not running" in out
        assert "No streams" in out

    def test_stale_snapshot_shows_stopped_streams(self, config_dir, settings, capsys, dead_pid):
        """Should not trust a snapshot left behind by a dead manager."""
        snapshot = Snapshot(
            manager_pid=dead_pid,
            updated_at="2026-01-01T00:00:00Z",
            relay=RelaySnapshot(running=True, pid=dead_pid),
            streams=[StreamSnapshot(
                name="mic",
                device_uuid="usb-2e88-4610-1-2",
                state=StreamState.RUNNING,
                pid=dead_pid,
                url="rtsp://localhost:8554/mic",
            )],
        )
        write_json(settings.snapshot_path, snapshot.model_dump(mode="json"))
        write_pid(settings.liveness_dir / "mic.pid", dead_pid)

        assert run(config_dir, "status", "--json") == ExitCode.GENERAL

        data = json.loads(capsys.readouterr().out)
        assert data["manager_pid"] is None
        assert data["streams"][0]["state"] == "stopped"
        assert data["streams"][0]["pid"] is None

    def test_running_instance(self, config_dir, settings, capsys):
        from lyrebird.lock_manager import LockManager

        lock = LockManager(settings.lock_path)
        lock.acquire(timeout=0)
        try:
            snapshot = Snapshot(
                manager_pid=os.getpid(),
                updated_at="2026-01-01T00:00:00Z",
                relay=RelaySnapshot(running=True, started_by_us=True),
                streams=[StreamSnapshot(
                    name="mic",
                    device_uuid="usb-2e88-4610-1-2",
                    state=StreamState.COOLDOWN,
                    restart_count=3,
                    url="rtsp://localhost:8554/mic",
                    last_error="exited with code 1",
                )],
            )
            write_json(settings.snapshot_path, snapshot.model_dump(mode="json"))

            assert run(config_dir, "status") == ExitCode.OK
        finally:
            lock.release()

        out = capsys.readouterr().out
        assert f"running (pid {os.getpid()})" in out
        assert "restarts=3" in out
        assert "rtsp://localhost:8554/mic" in out
        assert "last error: exited with code 1" in out


class TestConfigCommand:
    def test_prints_settings_and_streams(self, config_dir, settings, capsys):
        settings.identity_map_path.write_text("usb-2e88-4610-1-2=rode_ai_micro\n")
        settings.overrides_dir.mkdir(parents=True)
        (settings.overrides_dir / "rode_ai_micro.conf").write_text("sample_rate=44100\n")

        assert run(config_dir, "config") == ExitCode.OK

        out = capsys.readouterr().out
        assert "rtsp_port: 8554" in out
        assert "rode_ai_micro: uuid=usb-2e88-4610-1-2 rate=44100" in out
        assert not (settings.overrides_dir / "rode_ai_micro.conf.example").exists()

    def test_invalid_config_exit_code(self, tmp_path):
        (tmp_path / "lyrebird.yml").write_text("relay: [broken\n")
        assert run(tmp_path, "config") == ExitCode.CONFIG_ERROR


class TestDevicesCommand:
    @patch("lyrebird.cli.DeviceDiscovery")
    def test_lists_devices_with_stream_names(self, mock_discovery, config_dir, settings, capsys):
        mock_discovery.return_value.discover.return_value = [
            AudioDevice(
                bus_id="001",
                device_index=1,
                raw_name="Micro",
                description="RODE AI-Micro",
                usb_vendor_id="2e88",
                usb_product_id="4610",
                physical_port_path="1-2",
                is_usb=True,
            )
        ]

        assert run(config_dir, "devices") == ExitCode.OK

        out = capsys.readouterr().out
        assert "uuid=usb-2e88-4610-1-2" in out
        assert "stream=rode_ai_micro (new)" in out
        assert "rtsp://localhost:8554/rode_ai_micro" in out
        # Listing never claims names
        assert not settings.identity_map_path.exists()
        assert mock_discovery.call_args.kwargs["probe_capture"] is False

    @patch("lyrebird.cli.DeviceDiscovery")
    def test_no_devices(self, mock_discovery, config_dir, capsys):
        mock_discovery.return_value.discover.side_effect = NoDevicesFound("No usable capture devices found")

        assert run(config_dir, "devices") == ExitCode.NO_DEVICES
        assert "No usable capture devices" in capsys.readouterr().out


class TestControlCommands:
    def test_stop_when_not_running(self, config_dir, capsys):
        assert run(config_dir, "stop") == ExitCode.OK
        assert "not running" in capsys.readouterr().out

    def test_monitor_without_processes(self, config_dir, capsys):
        assert run(config_dir, "monitor") == ExitCode.OK
        assert "No running relay or pipelines" in capsys.readouterr().out

    def test_monitor_critical_usage_exit_code(self, settings, capsys):
        save_settings(settings, settings.paths.config_dir)
        write_pid(settings.liveness_dir / "mic.pid", os.getpid())
        usage = ResourceUsage(
            label="mic", pid=os.getpid(), open_fds=1200, level=ResourceLevel.CRITICAL,
            reasons=["open fds 1200 >= 1000"],
        )

        with patch("lyrebird.cli.ResourceMonitor") as mock_monitor:
            mock_monitor.return_value.check.return_value = [usage]
            assert run(settings.paths.config_dir, "monitor") == ExitCode.CRITICAL_RESOURCE

        out = capsys.readouterr().out
        assert "CRITICAL" in out
        assert "open fds 1200" in out

    def test_force_stop_without_instance(self, config_dir, capsys):
        assert run(config_dir, "force-stop") == ExitCode.OK
        assert "not running" in capsys.readouterr().out

    def test_start_missing_encoder(self, tmp_path, make_settings):
        settings = make_settings(encoder={"binary": "/nonexistent/ffmpeg"})
        save_settings(settings, settings.paths.config_dir)

        with patch("lyrebird.cli._install_signal_handlers"):
            assert run(settings.paths.config_dir, "start") == ExitCode.PREREQUISITE_MISSING
