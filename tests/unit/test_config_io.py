"""
Unit tests for settings loading and per-device stream overrides.

Tests lyrebird.yml defaults, validation, environment overrides, and the
override-file overlay that produces each pipeline's StreamConfig.
"""

import pytest

from lyrebird.config_io import (
    load_settings,
    normalize_override_key,
    parse_settings,
    resolve_stream_config,
    save_settings,
)
from lyrebird.errors import ConfigError, ExitCode
from lyrebird.models.stream import StreamConfig


class TestLoadSettings:
    """Tests for load_settings()."""

    def test_missing_file_yields_defaults(self, tmp_path):
        """Should return defaults without writing anything."""
        settings = load_settings(tmp_path)

        assert settings.relay.rtsp_port == 8554
        assert settings.relay.api_port == 9997
        assert settings.encoder.defaults == StreamConfig()
        assert settings.paths.config_dir == tmp_path
        assert not (tmp_path / "lyrebird.yml").exists()

    def test_create_writes_defaults(self, tmp_path):
        settings = load_settings(tmp_path, create=True)

        path = tmp_path / "lyrebird.yml"
        assert path.exists()
        assert load_settings(tmp_path) == settings

    def test_partial_file_merges_with_defaults(self, tmp_path):
        (tmp_path / "lyrebird.yml").write_text(
            "relay:\n"
            "  rtsp_port: 9554\n"
            "encoder:\n"
            "  defaults:\n"
            "    codec: aac\n"
            "    bitrate: 192k\n"
            "supervisor:\n"
        )
        settings = load_settings(tmp_path)

        assert settings.relay.rtsp_port == 9554
        assert settings.relay.api_port == 9997
        assert settings.encoder.defaults.codec == "aac"
        assert settings.encoder.defaults.sample_rate == 48000
        assert settings.supervisor.max_restarts == 50
        assert settings.stream_url("mic") == "rtsp://localhost:9554/mic"

    def test_invalid_yaml(self, tmp_path):
        (tmp_path / "lyrebird.yml").write_text("relay: [unclosed\n")

        with pytest.raises(ConfigError) as exc_info:
            load_settings(tmp_path)
        assert exc_info.value.exit_code == ExitCode.CONFIG_ERROR

    def test_invalid_values(self, tmp_path):
        (tmp_path / "lyrebird.yml").write_text("supervisor:\n  base_delay: 100\n  max_delay: 10\n")

        with pytest.raises(ConfigError):
            load_settings(tmp_path)

    def test_non_mapping_root_uses_defaults(self, tmp_path):
        settings = parse_settings("- just\n- a list\n", tmp_path)
        assert settings.relay.host == "localhost"

    def test_unknown_keys_ignored(self, tmp_path):
        settings = parse_settings("relay:\n  future_option: true\nnew_section: {}\n", tmp_path)
        assert settings.relay.rtsp_port == 8554

    def test_environment_overrides(self, tmp_path, monkeypatch):
        """Should apply binary and directory overrides after the file."""
        (tmp_path / "lyrebird.yml").write_text("relay:\n  binary: /opt/mediamtx\n")
        monkeypatch.setenv("MEDIAMTX_BINARY", "/usr/bin/mediamtx")
        monkeypatch.setenv("FFMPEG_BINARY", "/usr/bin/ffmpeg")
        monkeypatch.setenv("STATE_DIR", str(tmp_path / "state"))

        settings = load_settings(tmp_path)

        assert settings.relay.binary == "/usr/bin/mediamtx"
        assert settings.encoder.binary == "/usr/bin/ffmpeg"
        assert settings.liveness_dir == tmp_path / "state" / "streams"

    def test_stream_mode_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MEDIAMTX_STREAM_MODE", "combined")
        monkeypatch.setenv("MEDIAMTX_COMBINE_METHOD", "amix")
        monkeypatch.setenv("MEDIAMTX_COMBINED_PATH", "all_mics")
        monkeypatch.setenv("MEDIAMTX_ENABLE_FALLBACK", "false")
        monkeypatch.setenv("USB_STABILIZATION_DELAY", "12")

        settings = load_settings(tmp_path)

        assert settings.streams.mode == "combined"
        assert settings.streams.combine_method == "amix"
        assert settings.streams.combined_path == "all_mics"
        assert settings.streams.fallback is False
        assert settings.streams.max_combined_devices == 20
        assert settings.discovery.stabilization_timeout == 12

    @pytest.mark.parametrize("text", [
        "streams:\n  mode: mixed\n",
        "streams:\n  combine_method: concat\n",
        "streams:\n  combined_path: 'all mics'\n",
        "streams:\n  max_combined_devices: 0\n",
    ])
    def test_invalid_stream_mode_settings(self, tmp_path, text):
        with pytest.raises(ConfigError):
            parse_settings(text, tmp_path)

    def test_config_dir_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CONFIG_DIR", str(tmp_path))
        assert load_settings().paths.config_dir == tmp_path

    def test_save_round_trip(self, tmp_path, make_settings):
        settings = make_settings(relay={"max_restarts": 9})
        save_settings(settings, tmp_path)

        loaded = load_settings(tmp_path)
        assert loaded.relay.max_restarts == 9
        assert loaded.paths.state_dir == settings.paths.state_dir


class TestNormalizeOverrideKey:
    """Tests for normalize_override_key()."""

    @pytest.mark.parametrize("key,expected", [
        ("sample_rate", "sample_rate"),
        ("SAMPLE_RATE", "sample_rate"),
        ("AUDIO_SAMPLE_RATE", "sample_rate"),
        (" audio_bitrate ", "bitrate"),
    ])
    def test_normalizes(self, key, expected):
        assert normalize_override_key(key) == expected


class TestResolveStreamConfig:
    """Tests for resolve_stream_config()."""

    def test_no_override_returns_defaults_and_writes_example(self, tmp_path):
        defaults = StreamConfig(codec="aac")
        config = resolve_stream_config(tmp_path, "mic", defaults)

        assert config == defaults
        example = tmp_path / "mic.conf.example"
        assert example.exists()
        assert "sample_rate=48000" in example.read_text()
        assert not (tmp_path / "mic.conf").exists()

    def test_example_not_written_when_disabled(self, tmp_path):
        resolve_stream_config(tmp_path, "mic", StreamConfig(), write_example=False)
        assert list(tmp_path.iterdir()) == []

    def test_overrides_applied(self, tmp_path):
        (tmp_path / "mic.conf").write_text(
            "# studio mic\n"
            "AUDIO_SAMPLE_RATE=44100\n"
            "channels=1\n"
            "bitrate=96k\n"
            "filter_chain=\"highpass=f=80,volume=1.5\"\n"
            "channel_split_mode=left\n"
        )
        config = resolve_stream_config(tmp_path, "mic", StreamConfig(codec="mp3"))

        assert config.sample_rate == 44100
        assert config.channels == 1
        assert config.bitrate == "96k"
        assert config.codec == "mp3"
        assert config.filter_chain == "highpass=f=80,volume=1.5"
        assert config.channel_split_mode == "left"

    def test_unknown_keys_ignored(self, tmp_path):
        (tmp_path / "mic.conf").write_text("sample_rate=16000\nmystery_knob=11\n")
        config = resolve_stream_config(tmp_path, "mic", StreamConfig())
        assert config.sample_rate == 16000

    @pytest.mark.parametrize("line", [
        "sample_rate=12345",
        "sample_rate=fast",
        "codec=flac",
        "bitrate=loud",
        "channels=0",
    ])
    def test_invalid_override_falls_back_to_defaults(self, tmp_path, line):
        """Should keep the stream running on defaults when an override is bad."""
        (tmp_path / "mic.conf").write_text(f"{line}\n")
        defaults = StreamConfig()

        assert resolve_stream_config(tmp_path, "mic", defaults) == defaults

    def test_config_is_frozen(self, tmp_path):
        config = resolve_stream_config(tmp_path, "mic", StreamConfig())
        with pytest.raises(Exception):
            config.sample_rate = 44100
