"""Global settings model loaded from lyrebird.yml.

Every section has complete defaults, so an empty or missing config file
yields a working setup for a stock MediaMTX install. Unknown keys are
ignored so that older releases accept newer config files.

Layout:
    paths:       config/state/log directories
    relay:       MediaMTX binary, ports, restart budget
    encoder:     ffmpeg binary, verification, default StreamConfig
    supervisor:  restart budget and backoff
    streams:     individual or combined publishing
    discovery:   rescan interval, capture probe, USB settle wait, known device names
    health:      loop interval and resource thresholds
    api:         optional HTTP status API
"""
from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .device import FRIENDLY_NAME_PATTERN
from .stream import StreamConfig


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PathSettings(_Section):
    config_dir: Path = Path("/etc/lyrebird")
    state_dir: Path = Path("/var/lib/lyrebird")
    log_dir: Path = Path("/var/log/lyrebird")
    run_dir: Path = Path("/run/lyrebird")


class RelaySettings(_Section):
    binary: str = "/usr/local/bin/mediamtx"
    host: str = "localhost"
    rtsp_port: int = Field(default=8554, ge=1, le=65535)
    api_port: int = Field(default=9997, ge=1, le=65535)
    metrics_port: int = Field(default=9998, ge=1, le=65535)
    log_level: Literal["error", "warn", "info", "debug"] = "info"
    ready_timeout: float = Field(default=60.0, gt=0, description="Seconds to wait for the API after spawn")
    probe_timeout: float = Field(default=2.0, gt=0, description="Per-request HTTP timeout")
    max_restarts: int = Field(default=5, ge=0)
    restart_cooldown: float = Field(default=10.0, ge=0)
    stop_grace: float = Field(default=10.0, ge=0)
    manage_config: bool = Field(default=True, description="Write mediamtx.yml before starting the relay")


class EncoderSettings(_Section):
    binary: str = "ffmpeg"
    verification: Literal["log", "relay"] = "log"
    verify_timeout: float = Field(default=5.0, gt=0)
    defaults: StreamConfig = Field(default_factory=StreamConfig)


class SupervisorSettings(_Section):
    max_restarts: int = Field(default=50, ge=0)
    base_delay: float = Field(default=10.0, ge=0)
    max_delay: float = Field(default=300.0, ge=0)
    min_runtime: float = Field(default=60.0, ge=0, description="Runs shorter than this count as flapping")
    stability_window: float = Field(default=300.0, ge=0, description="Continuous runtime that resets restart_count")
    stop_grace: float = Field(default=10.0, ge=0)

    @model_validator(mode="after")
    def validate_delays(self) -> SupervisorSettings:
        if self.max_delay < self.base_delay:
            raise ValueError("supervisor.max_delay must be >= supervisor.base_delay")
        return self


class DiscoverySettings(_Section):
    interval: float = Field(default=60.0, gt=0)
    include_non_usb: bool = False
    probe_capture: bool = True
    probe_timeout: float = Field(default=3.0, gt=0)
    unlock_busy: bool = True
    known_devices: dict[str, str] = Field(
        default_factory=dict,
        description="'vvvv:pppp' or raw card id → stream name"
    )
    require_devices: bool = Field(default=False, description="Exit with NO_DEVICES when start finds nothing")
    stabilization_timeout: float = Field(
        default=5.0, ge=0, description="Max seconds to wait for USB enumeration to settle at start (0 disables)"
    )
    stabilization_interval: float = Field(default=2.0, gt=0)


class StreamModeSettings(_Section):
    mode: Literal["individual", "combined"] = "individual"
    combine_method: Literal["amerge", "amix"] = "amerge"
    combined_path: str = "combined_audio"
    fallback: bool = Field(default=True, description="Publish individual streams if the combined one fails")
    max_combined_devices: int = Field(default=20, ge=1)

    @field_validator("combined_path")
    @classmethod
    def validate_combined_path(cls, value: str) -> str:
        if not FRIENDLY_NAME_PATTERN.match(value):
            raise ValueError(f"Invalid combined stream path '{value}'")
        return value


class HealthSettings(_Section):
    interval: float = Field(default=5.0, gt=0)
    resource_check_interval: float = Field(default=60.0, gt=0)
    fd_warning: int = 500
    fd_critical: int = 1000
    cpu_warning: float = 20.0
    cpu_critical: float = 40.0


class ApiSettings(_Section):
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = Field(default=8088, ge=1, le=65535)


class LockSettings(_Section):
    timeout: float = Field(default=30.0, ge=0)


class Settings(_Section):
    """Complete manager configuration."""

    paths: PathSettings = Field(default_factory=PathSettings)
    relay: RelaySettings = Field(default_factory=RelaySettings)
    encoder: EncoderSettings = Field(default_factory=EncoderSettings)
    supervisor: SupervisorSettings = Field(default_factory=SupervisorSettings)
    streams: StreamModeSettings = Field(default_factory=StreamModeSettings)
    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    lock: LockSettings = Field(default_factory=LockSettings)

    # ------------------------------------------------------------------
    # Derived file locations
    # ------------------------------------------------------------------

    @property
    def identity_map_path(self) -> Path:
        return self.paths.config_dir / "device_map.conf"

    @property
    def blacklist_path(self) -> Path:
        return self.paths.config_dir / "device_blacklist.conf"

    @property
    def overrides_dir(self) -> Path:
        return self.paths.config_dir / "devices"

    @property
    def relay_config_path(self) -> Path:
        return self.paths.config_dir / "mediamtx.yml"

    @property
    def liveness_dir(self) -> Path:
        return self.paths.state_dir / "streams"

    @property
    def relay_pid_path(self) -> Path:
        return self.paths.run_dir / "mediamtx.pid"

    @property
    def lock_path(self) -> Path:
        return self.paths.run_dir / "lyrebird.lock"

    @property
    def snapshot_path(self) -> Path:
        return self.paths.state_dir / "status.json"

    def stream_url(self, name: str) -> str:
        return f"rtsp://{self.relay.host}:{self.relay.rtsp_port}/{name}"
