"""
Unit tests for pipeline startup verification probes.
"""

from unittest.mock import Mock

from lyrebird.services.verification import (
    LogMarkerProbe,
    RelayPathProbe,
    VerificationOutcome,
    VerificationTarget,
    read_log,
)


def make_target(log_path, alive=True, offset=0):
    return VerificationTarget(
        stream_name="mic",
        log_path=log_path,
        log_offset=offset,
        is_alive=lambda: alive,
    )


class TestLogMarkerProbe:
    """Tests for LogMarkerProbe."""

    def test_success_marker_confirms(self, tmp_path, clock):
        log = tmp_path / "mic.log"
        log.write_text("Input #0, alsa\nOutput #0, rtsp, to 'rtsp://localhost:8554/mic':\n")
        probe = LogMarkerProbe(clock=clock, sleep=clock.sleep)

        result = probe.verify(make_target(log), timeout=5)

        assert result.outcome == VerificationOutcome.CONFIRMED
        assert result.ok

    def test_error_marker_fails(self, tmp_path, clock):
        log = tmp_path / "mic.log"
        log.write_text("plughw:3,0: Device or resource busy\nError opening input files: I/O error\n")
        probe = LogMarkerProbe(clock=clock, sleep=clock.sleep)

        result = probe.verify(make_target(log), timeout=5)

        assert result.outcome == VerificationOutcome.FAILED
        assert "Error opening input files" in result.detail
        assert not result.ok

    def test_silence_until_timeout_assumes_healthy(self, tmp_path, clock):
        log = tmp_path / "mic.log"
        log.write_text("")
        probe = LogMarkerProbe(clock=clock, sleep=clock.sleep)
        start = clock()

        result = probe.verify(make_target(log), timeout=5)

        assert result.outcome == VerificationOutcome.ASSUMED_HEALTHY
        assert result.ok
        assert clock() - start >= 5

    def test_missing_log_assumes_healthy(self, tmp_path, clock):
        probe = LogMarkerProbe(clock=clock, sleep=clock.sleep)
        result = probe.verify(make_target(tmp_path / "none.log"), timeout=1)
        assert result.outcome == VerificationOutcome.ASSUMED_HEALTHY

    def test_dead_process_fails_with_log_tail(self, tmp_path, clock):
        log = tmp_path / "mic.log"
        log.write_text("starting\ncannot open audio device\n")
        probe = LogMarkerProbe(clock=clock, sleep=clock.sleep)

        result = probe.verify(make_target(log, alive=False), timeout=5)

        assert result.outcome == VerificationOutcome.FAILED
        assert "exited" in result.detail
        assert "cannot open audio device" in result.detail

    def test_previous_run_output_ignored(self, tmp_path, clock):
        """Should only scan output written since the current spawn."""
        log = tmp_path / "mic.log"
        old = "Output #0, rtsp, to 'old':\n"
        log.write_text(old + "Error opening input files\n")
        probe = LogMarkerProbe(clock=clock, sleep=clock.sleep)

        result = probe.verify(make_target(log, offset=len(old)), timeout=5)

        assert result.outcome == VerificationOutcome.FAILED


class TestRelayPathProbe:
    """Tests for RelayPathProbe."""

    def test_ready_path_confirms(self, tmp_path, clock):
        client = Mock()
        client.path_ready.side_effect = [False, False, True]
        probe = RelayPathProbe(client, clock=clock, sleep=clock.sleep)

        result = probe.verify(make_target(tmp_path / "mic.log"), timeout=5)

        assert result.outcome == VerificationOutcome.CONFIRMED
        client.path_ready.assert_called_with("mic")
        assert client.path_ready.call_count == 3

    def test_never_ready_assumes_healthy(self, tmp_path, clock):
        client = Mock()
        client.path_ready.return_value = False
        probe = RelayPathProbe(client, clock=clock, sleep=clock.sleep)

        result = probe.verify(make_target(tmp_path / "mic.log"), timeout=2)

        assert result.outcome == VerificationOutcome.ASSUMED_HEALTHY


class TestReadLog:
    def test_reads_from_offset(self, tmp_path):
        log = tmp_path / "mic.log"
        log.write_bytes(b"abc\xffdef")
        assert read_log(log, 3).endswith("def")
        assert read_log(tmp_path / "missing.log") == ""
