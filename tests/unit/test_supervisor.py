"""
Unit tests for the stream supervisor state machine.

Processes are fake handles produced by an injected spawner; process-group
termination is patched out. Time comes from the FakeClock fixture.
"""

import subprocess
from concurrent.futures import Future

import pytest
from unittest.mock import patch

from lyrebird.errors import PrerequisiteMissing
from lyrebird.models.device import AudioDevice, DeviceIdentity
from lyrebird.models.settings import SupervisorSettings
from lyrebird.models.stream import StreamConfig, StreamState
from lyrebird.services.supervisor import CombinedStreamSupervisor, StreamSupervisor
from lyrebird.services.verification import VerificationOutcome, VerificationResult
from lyrebird.state_store import read_pid, write_pid

URL = "rtsp://localhost:8554/mic"

# Above the kernel's pid_max, so never a real process
FAKE_PID_BASE = 4_194_400


class FakeHandle:
    """Stands in for a ProcessHandle without a real process."""

    def __init__(self, pid: int):
        self.pid = pid
        self.pgid = pid
        self.popen = None
        self.alive = True

    def is_alive(self) -> bool:
        return self.alive

    @property
    def returncode(self):
        return None if self.alive else 1


class FakeSpawner:
    def __init__(self):
        self.handles: list[FakeHandle] = []
        self.commands: list[list[str]] = []
        self.error: Exception | None = None

    def __call__(self, cmd, log_path):
        if self.error is not None:
            raise self.error
        self.commands.append(cmd)
        handle = FakeHandle(FAKE_PID_BASE + len(self.handles))
        self.handles.append(handle)
        return handle

    @property
    def current(self) -> FakeHandle:
        return self.handles[-1]


class StubProbe:
    """Verification probe returning a fixed outcome."""

    def __init__(self, outcome=VerificationOutcome.CONFIRMED, detail=""):
        self.result = VerificationResult(outcome=outcome, detail=detail)
        self.calls = 0

    def verify(self, target, timeout):
        self.calls += 1
        return self.result


class FakeExecutor:
    """Collects submitted work without running it."""

    def __init__(self):
        self.futures: list[Future] = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.futures.append(future)
        return future


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def terminate():
    with patch("lyrebird.services.supervisor.terminate_group") as mock:
        yield mock


@pytest.fixture
def make_supervisor(tmp_path, clock, spawner, terminate):
    def _make(probe=None, **policy) -> StreamSupervisor:
        values = {"max_restarts": 5, "base_delay": 1, "max_delay": 8, "min_runtime": 60, "stability_window": 300}
        values.update(policy)
        return StreamSupervisor(
            identity=DeviceIdentity(uuid="usb-2e88-4610-1-2", friendly_name="mic"),
            device=AudioDevice(device_index=1, raw_name="Micro", is_usb=True),
            destination_url=URL,
            probe=probe or StubProbe(),
            policy=SupervisorSettings(**values),
            log_dir=tmp_path / "log",
            liveness_dir=tmp_path / "state" / "streams",
            overrides_dir=tmp_path / "devices",
            clock=clock,
            spawner=spawner,
        )

    return _make


def fail_and_cool(supervisor, spawner, clock):
    """Kill the current process, tick into COOLDOWN and return the delay."""
    spawner.current.alive = False
    supervisor.monitor()
    assert supervisor.state == StreamState.COOLDOWN
    delay = supervisor.last_delay
    clock.advance(delay)
    supervisor.monitor()
    return delay


class TestStart:
    """Tests for StreamSupervisor.start()."""

    def test_start_runs_and_records_liveness(self, make_supervisor, spawner):
        supervisor = make_supervisor()

        assert supervisor.start() is True

        assert supervisor.state == StreamState.RUNNING
        assert supervisor.pid == spawner.current.pid
        assert read_pid(supervisor.liveness_path) == spawner.current.pid
        assert spawner.commands[0][-1] == URL
        assert "plughw:1,0" in spawner.commands[0]
        assert supervisor.restart_count == 0
        assert supervisor.stream_process().pgid == spawner.current.pid

    def test_start_is_idempotent(self, make_supervisor, spawner):
        """Should not spawn twice or count a restart for a live pipeline."""
        supervisor = make_supervisor()
        supervisor.start()

        assert supervisor.start() is False
        assert len(spawner.handles) == 1
        assert supervisor.restart_count == 0

    def test_start_after_restarts_keeps_restart_count(self, make_supervisor, spawner, clock):
        """Should leave the counter alone when start() meets a pipeline that was restarted."""
        supervisor = make_supervisor()
        supervisor.start()
        fail_and_cool(supervisor, spawner, clock)
        fail_and_cool(supervisor, spawner, clock)
        assert supervisor.state == StreamState.RUNNING
        assert supervisor.restart_count == 2

        assert supervisor.start() is False

        assert supervisor.restart_count == 2
        assert len(spawner.handles) == 3
        assert supervisor.pid == spawner.current.pid

    def test_uses_given_config(self, make_supervisor, spawner):
        supervisor = make_supervisor()
        supervisor.start(config=StreamConfig(codec="mp3", sample_rate=44100))

        cmd = spawner.commands[0]
        assert "libmp3lame" in cmd
        assert cmd[cmd.index("-ar") + 1] == "44100"

    def test_overrides_applied_on_start(self, make_supervisor, spawner, tmp_path):
        (tmp_path / "devices").mkdir()
        (tmp_path / "devices" / "mic.conf").write_text("bitrate=64k\n")
        supervisor = make_supervisor()
        supervisor.start()

        assert supervisor.config.bitrate == "64k"
        assert "64k" in spawner.commands[0]

    def test_override_edit_applies_on_restart(self, make_supervisor, spawner, clock, tmp_path):
        supervisor = make_supervisor()
        supervisor.start()
        assert "64k" not in spawner.commands[0]

        (tmp_path / "devices").mkdir(exist_ok=True)
        (tmp_path / "devices" / "mic.conf").write_text("bitrate=64k\n")
        fail_and_cool(supervisor, spawner, clock)

        assert "64k" in spawner.commands[-1]
        assert supervisor.config.bitrate == "64k"

    def test_given_config_covers_one_run(self, make_supervisor, spawner, clock):
        supervisor = make_supervisor()
        supervisor.start(config=StreamConfig(codec="mp3"))
        assert "libmp3lame" in spawner.commands[0]

        fail_and_cool(supervisor, spawner, clock)

        assert "libmp3lame" not in spawner.commands[-1]

    def test_missing_encoder_is_prerequisite_error(self, make_supervisor, spawner):
        spawner.error = FileNotFoundError(2, "No such file", "ffmpeg")
        supervisor = make_supervisor()

        with pytest.raises(PrerequisiteMissing):
            supervisor.start()
        assert supervisor.state == StreamState.STOPPED

    def test_spawn_error_counts_as_failure(self, make_supervisor, spawner):
        spawner.error = PermissionError(13, "Permission denied")
        supervisor = make_supervisor()

        assert supervisor.start() is False
        assert supervisor.state == StreamState.FAILED
        assert supervisor.consecutive_flaps == 1

        spawner.error = None
        supervisor.monitor()
        assert supervisor.state == StreamState.COOLDOWN

    def test_stale_liveness_file_discarded(self, make_supervisor, spawner, dead_pid):
        supervisor = make_supervisor()
        write_pid(supervisor.liveness_path, dead_pid)

        assert supervisor.start() is True
        assert read_pid(supervisor.liveness_path) == spawner.current.pid

    def test_orphan_pipeline_adopted(self, make_supervisor, spawner, terminate):
        """Should adopt a live pipeline from a previous run instead of spawning."""
        orphan = subprocess.Popen(["sh", "-c", "sleep 30; true", URL], start_new_session=True)
        try:
            supervisor = make_supervisor()
            write_pid(supervisor.liveness_path, orphan.pid)

            assert supervisor.start() is False
            assert supervisor.state == StreamState.RUNNING
            assert supervisor.pid == orphan.pid
            assert spawner.handles == []

            supervisor.stop()
            handle = terminate.call_args.args[0]
            assert handle.pid == orphan.pid
        finally:
            orphan.kill()
            orphan.wait()


class TestVerification:
    """Tests for startup verification handling."""

    def test_failed_verification_schedules_restart(self, make_supervisor, spawner, terminate):
        probe = StubProbe(VerificationOutcome.FAILED, "Error opening input files")
        supervisor = make_supervisor(probe=probe)

        supervisor.start()

        assert supervisor.state == StreamState.FAILED
        assert supervisor.last_error == "Error opening input files"
        assert not supervisor.liveness_path.exists()
        terminate.assert_called_once()

        supervisor.monitor()
        assert supervisor.state == StreamState.COOLDOWN
        assert supervisor.restart_count == 1

    def test_assumed_healthy_counts_as_running(self, make_supervisor):
        supervisor = make_supervisor(probe=StubProbe(VerificationOutcome.ASSUMED_HEALTHY))
        supervisor.start()
        assert supervisor.state == StreamState.RUNNING

    def test_executor_verification(self, make_supervisor):
        """Should stay VERIFYING until the worker result is applied."""
        executor = FakeExecutor()
        supervisor = make_supervisor()

        assert supervisor.start(executor=executor) is True
        assert supervisor.state == StreamState.VERIFYING

        supervisor.monitor()
        assert supervisor.state == StreamState.VERIFYING

        executor.futures[0].set_result(VerificationResult(outcome=VerificationOutcome.CONFIRMED))
        supervisor.monitor()
        assert supervisor.state == StreamState.RUNNING

    def test_verify_blocks_on_pending_result(self, make_supervisor):
        executor = FakeExecutor()
        supervisor = make_supervisor()
        supervisor.start(executor=executor)
        executor.futures[0].set_result(VerificationResult(outcome=VerificationOutcome.CONFIRMED))

        assert supervisor.verify() is True

    def test_probe_exception_is_failure(self, make_supervisor):
        executor = FakeExecutor()
        supervisor = make_supervisor()
        supervisor.start(executor=executor)
        executor.futures[0].set_exception(RuntimeError("probe crashed"))

        assert supervisor.verify() is False
        assert supervisor.state == StreamState.FAILED

    def test_result_after_stop_is_ignored(self, make_supervisor):
        executor = FakeExecutor()
        supervisor = make_supervisor()
        supervisor.start(executor=executor)
        supervisor.stop()

        executor.futures[0].set_result(VerificationResult(outcome=VerificationOutcome.CONFIRMED))
        supervisor.monitor()

        assert supervisor.state == StreamState.STOPPED
        assert supervisor.verify() is False


class TestRestartPolicy:
    """Tests for flap detection, backoff and the restart budget."""

    def test_flapping_backoff_doubles_to_cap(self, make_supervisor, spawner, clock):
        supervisor = make_supervisor(base_delay=1, max_delay=8)
        supervisor.start()

        delays = [fail_and_cool(supervisor, spawner, clock) for _ in range(4)]

        assert delays == [2, 4, 8, 8]
        assert supervisor.restart_count == 4
        assert supervisor.state == StreamState.RUNNING
        assert len(spawner.handles) == 5

    def test_long_run_restarts_after_base_delay(self, make_supervisor, spawner, clock):
        supervisor = make_supervisor(base_delay=3, max_delay=30, min_runtime=60)
        supervisor.start()
        clock.advance(120)

        assert fail_and_cool(supervisor, spawner, clock) == 3
        assert supervisor.consecutive_flaps == 0

    def test_no_respawn_before_cooldown_expires(self, make_supervisor, spawner, clock):
        supervisor = make_supervisor()
        supervisor.start()
        spawner.current.alive = False
        supervisor.monitor()

        clock.advance(supervisor.last_delay - 0.5)
        supervisor.monitor()

        assert supervisor.state == StreamState.COOLDOWN
        assert len(spawner.handles) == 1

    def test_exhausted_budget_stops_for_good(self, make_supervisor, spawner, clock):
        """Should stop and never respawn once max_restarts is reached."""
        supervisor = make_supervisor(max_restarts=2)
        supervisor.start()
        fail_and_cool(supervisor, spawner, clock)
        fail_and_cool(supervisor, spawner, clock)

        spawner.current.alive = False
        supervisor.monitor()

        assert supervisor.state == StreamState.STOPPED
        assert supervisor.exhausted is True
        assert supervisor.snapshot().exhausted is True

        for _ in range(5):
            clock.advance(1000)
            supervisor.monitor()
        assert len(spawner.handles) == 3
        assert supervisor.state == StreamState.STOPPED

    def test_stability_window_resets_restart_count(self, make_supervisor, spawner, clock):
        supervisor = make_supervisor(stability_window=300)
        supervisor.start()
        fail_and_cool(supervisor, spawner, clock)
        assert supervisor.restart_count == 1

        clock.advance(299)
        supervisor.monitor()
        assert supervisor.restart_count == 1

        clock.advance(1)
        supervisor.monitor()
        assert supervisor.restart_count == 0
        assert supervisor.consecutive_flaps == 0
        assert supervisor.state == StreamState.RUNNING

    def test_snapshot_reflects_failure(self, make_supervisor, spawner):
        supervisor = make_supervisor()
        supervisor.start()
        spawner.current.alive = False
        supervisor.monitor()

        snapshot = supervisor.snapshot()
        assert snapshot.state == StreamState.COOLDOWN
        assert snapshot.pid is None
        assert snapshot.last_error == "exited with code 1"
        assert snapshot.url == URL


class TestStop:
    """Tests for StreamSupervisor.stop()."""

    def test_stop_terminates_and_clears_liveness(self, make_supervisor, spawner, terminate):
        supervisor = make_supervisor()
        supervisor.start()
        handle = spawner.current

        supervisor.stop()

        terminate.assert_called_once()
        assert terminate.call_args.args[0] is handle
        assert supervisor.state == StreamState.STOPPED
        assert supervisor.pid is None
        assert not supervisor.liveness_path.exists()

    def test_double_stop_is_safe(self, make_supervisor, terminate):
        supervisor = make_supervisor()
        supervisor.start()
        supervisor.stop()
        supervisor.stop()

        assert terminate.call_count == 1
        assert supervisor.state == StreamState.STOPPED

    def test_stop_during_cooldown_cancels_restart(self, make_supervisor, spawner, clock):
        supervisor = make_supervisor()
        supervisor.start()
        spawner.current.alive = False
        supervisor.monitor()

        supervisor.stop()
        clock.advance(1000)
        supervisor.monitor()

        assert supervisor.state == StreamState.STOPPED
        assert len(spawner.handles) == 1

    def test_restart_after_stop(self, make_supervisor, spawner):
        supervisor = make_supervisor()
        supervisor.start()
        supervisor.stop()

        assert supervisor.start() is True
        assert len(spawner.handles) == 2


class TestDeviceMove:
    """Tests for StreamSupervisor.update_device()."""

    def test_running_pipeline_follows_new_card_index(self, make_supervisor, spawner, terminate):
        supervisor = make_supervisor()
        supervisor.start()
        first = spawner.current

        moved = AudioDevice(device_index=3, raw_name="Micro", is_usb=True)
        assert supervisor.update_device(moved) is True

        assert terminate.call_args.args[0] is first
        assert "plughw:3,0" in spawner.commands[-1]
        assert supervisor.state == StreamState.RUNNING
        assert supervisor.restart_count == 0
        assert read_pid(supervisor.liveness_path) == spawner.current.pid

    def test_same_card_index_is_a_no_op(self, make_supervisor, spawner):
        supervisor = make_supervisor()
        supervisor.start()

        assert supervisor.update_device(AudioDevice(device_index=1, raw_name="Micro", is_usb=True)) is False
        assert len(spawner.handles) == 1

    def test_move_during_cooldown_used_by_next_spawn(self, make_supervisor, spawner, clock):
        supervisor = make_supervisor()
        supervisor.start()
        spawner.current.alive = False
        supervisor.monitor()
        assert supervisor.state == StreamState.COOLDOWN

        assert supervisor.update_device(AudioDevice(device_index=3, raw_name="Micro", is_usb=True)) is False
        assert len(spawner.handles) == 1

        clock.advance(supervisor.last_delay)
        supervisor.monitor()
        assert "plughw:3,0" in spawner.commands[-1]

    def test_exhausted_stream_stays_stopped(self, make_supervisor, spawner):
        supervisor = make_supervisor(max_restarts=0)
        supervisor.start()
        spawner.current.alive = False
        supervisor.monitor()
        assert supervisor.exhausted

        assert supervisor.update_device(AudioDevice(device_index=3, raw_name="Micro", is_usb=True)) is False
        assert supervisor.state == StreamState.STOPPED
        assert len(spawner.handles) == 1


COMBINED_URL = "rtsp://localhost:8554/combined_audio"


@pytest.fixture
def make_combined(tmp_path, clock, spawner, terminate):
    def _make(method="amerge", count=2) -> CombinedStreamSupervisor:
        members = [
            (
                DeviceIdentity(uuid=f"usb-0d8c-0014-1-{i + 2}", friendly_name=f"mic{i + 1}"),
                AudioDevice(device_index=i + 1, raw_name=f"Mic{i + 1}", is_usb=True),
            )
            for i in range(count)
        ]
        return CombinedStreamSupervisor(
            name="combined_audio",
            members=members,
            method=method,
            destination_url=COMBINED_URL,
            probe=StubProbe(),
            policy=SupervisorSettings(max_restarts=5, base_delay=1, max_delay=8),
            log_dir=tmp_path / "log",
            liveness_dir=tmp_path / "state" / "streams",
            overrides_dir=tmp_path / "devices",
            clock=clock,
            spawner=spawner,
        )

    return _make


class TestCombinedSupervisor:
    """Tests for CombinedStreamSupervisor."""

    def test_one_pipeline_for_every_device(self, make_combined, spawner):
        supervisor = make_combined()

        assert supervisor.start() is True

        cmd = spawner.commands[0]
        assert cmd.count("-i") == 2
        assert "plughw:1,0" in cmd and "plughw:2,0" in cmd
        assert cmd[cmd.index("-filter_complex") + 1].startswith("[0:a][1:a]amerge=inputs=2")
        assert cmd[-1] == COMBINED_URL
        assert supervisor.liveness_path.name == "combined_audio.pid"
        assert supervisor.snapshot().device_uuid == "combined-combined_audio"
        assert supervisor.member_key == (("usb-0d8c-0014-1-2", "plughw:1,0"), ("usb-0d8c-0014-1-3", "plughw:2,0"))

    def test_settings_from_first_device(self, make_combined, spawner, tmp_path):
        (tmp_path / "devices").mkdir()
        (tmp_path / "devices" / "mic1.conf").write_text("codec=mp3\n")
        (tmp_path / "devices" / "mic2.conf").write_text("codec=aac\n")

        make_combined(method="amix").start()

        cmd = spawner.commands[0]
        assert "libmp3lame" in cmd
        assert "amix=inputs=2" in cmd[cmd.index("-filter_complex") + 1]

    def test_restart_keeps_all_inputs(self, make_combined, spawner, clock):
        supervisor = make_combined(count=3)
        supervisor.start()

        fail_and_cool(supervisor, spawner, clock)

        assert spawner.commands[-1].count("-i") == 3
        assert supervisor.restart_count == 1

    def test_needs_a_device(self, make_combined):
        with pytest.raises(ValueError):
            make_combined(count=0)
