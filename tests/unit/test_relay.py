"""
Unit tests for relay server management.

The HTTP control API is mocked at httpx.get; process lifecycle tests use a
stand-in relay binary that just sleeps.
"""

import httpx
import pytest
import yaml
from unittest.mock import Mock, patch

from lyrebird.errors import PrerequisiteMissing, RelayUnreachable
from lyrebird.services.relay import PUBLISHER_PATH_PATTERN, RelayApiClient, RelayServer
from lyrebird.state_store import pid_alive, read_pid


def response(status=200, payload=None):
    mock = Mock()
    mock.status_code = status
    mock.json.return_value = payload or {}
    return mock


class TestRelayApiClient:
    """Tests for RelayApiClient."""

    @patch("lyrebird.services.relay.httpx.get")
    def test_ready_when_api_answers(self, mock_get):
        mock_get.return_value = response(200, {"items": []})
        client = RelayApiClient("localhost", 9997)

        assert client.is_ready() is True
        mock_get.assert_called_once_with("http://localhost:9997/v3/paths/list", timeout=2.0)

    @patch("lyrebird.services.relay.httpx.get")
    def test_not_ready_on_connection_error(self, mock_get):
        mock_get.side_effect = httpx.ConnectError("refused")
        assert RelayApiClient("localhost", 9997).is_ready() is False

    @patch("lyrebird.services.relay.httpx.get")
    def test_not_ready_on_error_status(self, mock_get):
        mock_get.return_value = response(500)
        assert RelayApiClient("localhost", 9997).is_ready() is False

    @patch("lyrebird.services.relay.httpx.get")
    def test_path_ready(self, mock_get):
        mock_get.return_value = response(200, {"name": "mic", "ready": True})
        client = RelayApiClient("localhost", 9997)

        assert client.path_ready("mic") is True
        assert mock_get.call_args.args[0] == "http://localhost:9997/v3/paths/get/mic"

    @patch("lyrebird.services.relay.httpx.get")
    def test_path_without_publisher(self, mock_get):
        mock_get.return_value = response(404)
        assert RelayApiClient("localhost", 9997).path_ready("mic") is False


class FakeClient:
    """Relay API client whose readiness is controlled by the test."""

    base_url = "http://localhost:9997"

    def __init__(self, ready=False):
        self.ready = ready

    def is_ready(self):
        return self.ready


@pytest.fixture
def make_relay(tmp_path, clock):
    def _make(binary, client, **kwargs):
        kwargs.setdefault("ready_timeout", 2.0)
        kwargs.setdefault("stop_grace", 2.0)
        return RelayServer(
            binary=str(binary),
            config_path=tmp_path / "etc" / "mediamtx.yml",
            pid_path=tmp_path / "run" / "mediamtx.pid",
            log_path=tmp_path / "log" / "mediamtx.log",
            client=client,
            clock=clock,
            sleep=clock.sleep,
            **kwargs,
        )

    return _make


class TestRelayConfig:
    """Tests for the generated relay configuration."""

    def test_rendered_config(self, make_relay, fake_relay_binary):
        relay = make_relay(fake_relay_binary, FakeClient(), rtsp_port=8555, api_port=9000)
        path = relay.write_config()

        body = path.read_text()
        assert body.startswith("# Generated by lyrebird")
        config = yaml.safe_load(body)
        assert config["rtspAddress"] == ":8555"
        assert config["apiAddress"] == ":9000"
        assert config["api"] is True
        assert config["hls"] is False
        assert config["paths"][PUBLISHER_PATH_PATTERN]["source"] == "publisher"


class TestRelayLifecycle:
    """Tests for RelayServer start/stop/ownership."""

    def test_existing_relay_is_used_not_owned(self, make_relay, fake_relay_binary):
        relay = make_relay(fake_relay_binary, FakeClient(ready=True))

        assert relay.ensure_running() is False
        assert relay.started_by_us is False
        assert not relay.pid_path.exists()

        with patch("lyrebird.services.relay.terminate_group") as terminate:
            relay.stop()
        terminate.assert_not_called()

    def test_missing_binary(self, make_relay, tmp_path):
        relay = make_relay(tmp_path / "no-such-mediamtx", FakeClient())
        with pytest.raises(PrerequisiteMissing):
            relay.ensure_running()

    def test_start_and_stop_owned_relay(self, make_relay, fake_relay_binary):
        client = FakeClient()
        relay = make_relay(fake_relay_binary, client)
        client.ready = True
        # ensure_running sees "ready" only after our spawn
        with patch.object(client, "is_ready", side_effect=[False, True]):
            assert relay.ensure_running() is True

        pid = read_pid(relay.pid_path)
        assert pid is not None and pid_alive(pid)
        assert relay.started_by_us is True
        assert relay.config_path.exists()
        assert relay.check() is True

        relay.stop()
        assert not pid_alive(pid)
        assert not relay.pid_path.exists()
        assert relay.started_by_us is False

    def test_not_ready_in_time_is_unreachable(self, make_relay, fake_relay_binary):
        relay = make_relay(fake_relay_binary, FakeClient(ready=False), ready_timeout=1.0)

        with pytest.raises(RelayUnreachable) as exc_info:
            relay.ensure_running()

        assert "not ready" in str(exc_info.value)
        assert not relay.pid_path.exists()

    def test_dead_process_fails_check(self, make_relay, fake_relay_binary):
        client = FakeClient()
        relay = make_relay(fake_relay_binary, client)
        with patch.object(client, "is_ready", side_effect=[False, True]):
            relay.ensure_running()

        relay._process.popen.kill()
        relay._process.popen.wait()
        client.ready = True

        assert relay.check() is False
        relay.stop()
