"""Stream data models for LyreBird.

Defines Pydantic v2 models for pipeline configuration and state:
- StreamConfig: Immutable encoder settings resolved once per pipeline start
- StreamState: Supervisor state machine states
- StreamProcess: Live pipeline process record owned by one supervisor
- StreamSnapshot / RelaySnapshot / Snapshot: Status views for CLI and API

Field Validation:
- Sample rate must be one ALSA/ffmpeg can negotiate
- Codec must be opus, aac or mp3
- Bitrate is an ffmpeg bitrate string (e.g. 128k)
"""
from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..config import encoder_defaults as defaults

BITRATE_PATTERN = re.compile(r"^\d+(\.\d+)?[kKmM]?$")

# ============================================================================
# Stream Configuration
# ============================================================================

class StreamConfig(BaseModel):
    """Resolved encoder settings for one pipeline run.

    Built by overlaying a per-device override file onto the defaults and
    passed by value into the supervisor. Frozen: a running pipeline never
    sees configuration changes until it is restarted.
    """

    model_config = ConfigDict(frozen=True)

    sample_rate: int = Field(default=defaults.DEFAULT_SAMPLE_RATE, examples=[48000])
    channels: int = Field(default=defaults.DEFAULT_CHANNELS, ge=1, le=8)
    codec: Literal["opus", "aac", "mp3"] = defaults.DEFAULT_CODEC
    bitrate: str = Field(default=defaults.DEFAULT_BITRATE, examples=["128k"])
    filter_chain: str = Field(
        default="",
        description="Extra ffmpeg audio filters appended after resampling"
    )
    channel_split_mode: Literal["none", "left", "right", "mono"] = defaults.DEFAULT_CHANNEL_SPLIT_MODE
    thread_queue: int = Field(default=defaults.DEFAULT_THREAD_QUEUE, ge=8, le=65536)

    @field_validator("sample_rate")
    @classmethod
    def validate_sample_rate(cls, value: int) -> int:
        if value not in defaults.SUPPORTED_SAMPLE_RATES:
            raise ValueError(f"Unsupported sample rate {value}")
        return value

    @field_validator("bitrate")
    @classmethod
    def validate_bitrate(cls, value: str) -> str:
        value = value.strip()
        if not BITRATE_PATTERN.match(value):
            raise ValueError(f"Invalid bitrate '{value}'")
        return value

    @field_validator("filter_chain")
    @classmethod
    def validate_filter_chain(cls, value: str) -> str:
        value = value.strip()
        # Passed as a single argv element, but a newline would corrupt the
        # override file on rewrite.
        if "\n" in value or "\r" in value:
            raise ValueError("Filter chain must be a single line")
        return value

    @classmethod
    def from_overrides(
        cls,
        overrides: dict[str, str],
        base: StreamConfig | None = None,
    ) -> StreamConfig:
        """Overlay string overrides onto a base config.

        Unknown keys are ignored so that newer override files keep working
        with older releases.

        Args:
            overrides: Parsed key=value pairs (keys already normalized)
            base: Defaults to overlay onto (built-in defaults if omitted)

        Returns:
            New validated StreamConfig

        Raises:
            pydantic.ValidationError: If an override value is invalid
        """
        merged: dict[str, Any] = (base or cls()).model_dump()
        for key, value in overrides.items():
            if key in cls.model_fields:
                merged[key] = value
        return cls.model_validate(merged)


# ============================================================================
# Supervisor State
# ============================================================================

class StreamState(str, Enum):
    """Pipeline supervisor states.

    STOPPED → STARTING → VERIFYING → RUNNING → FAILED → COOLDOWN → STARTING
    STOPPED is terminal (explicit stop or restart budget exhausted).
    """

    STOPPED = "stopped"
    STARTING = "starting"
    VERIFYING = "verifying"
    RUNNING = "running"
    FAILED = "failed"
    COOLDOWN = "cooldown"


class StreamProcess(BaseModel):
    """Record of the live encoder process behind one stream."""

    stream_name: str
    pid: int
    pgid: int
    log_path: str
    state: StreamState = StreamState.STARTING
    restart_count: int = Field(default=0, ge=0)
    last_started_at: datetime


# ============================================================================
# Status Snapshots
# ============================================================================

class StreamSnapshot(BaseModel):
    """Point-in-time view of one supervised stream."""

    name: str
    device_uuid: str
    state: StreamState
    pid: int | None = None
    restart_count: int = 0
    exhausted: bool = False
    url: str
    last_started_at: datetime | None = None
    last_error: str | None = None


class RelaySnapshot(BaseModel):
    """Point-in-time view of the relay server."""

    running: bool
    pid: int | None = None
    started_by_us: bool = False
    restart_attempts: int = 0
    paused: bool = Field(default=False, description="Pipeline supervision paused while relay is down")


class Snapshot(BaseModel):
    """Complete orchestrator status written each health-loop tick."""

    manager_pid: int | None = None
    updated_at: datetime
    relay: RelaySnapshot
    streams: list[StreamSnapshot] = Field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return any(s.exhausted for s in self.streams)
