"""Pipeline startup verification probes.

A probe decides, within a bounded time, whether a freshly spawned pipeline
came up. The supervisor only depends on the VerificationProbe interface so
an encoder with a structured status channel can replace log scraping
without touching the state machine.

Implementations:
    - LogMarkerProbe: scans the pipeline log for a success or error marker
    - RelayPathProbe: asks the relay API whether the path has a publisher

Timeout Policy:
    If neither success nor failure is observed before the deadline the
    pipeline is assumed healthy (some encoders print nothing on success).
    A process that exits during the window fails immediately.

Threading:
    verify() blocks for up to ``timeout`` and is run from a worker thread.
    It only reads the log file and polls liveness; it never mutates the
    supervisor.

Logging Strategy:
    DEBUG - Probe polling
    INFO  - Confirmed startup
    WARN  - Assumed healthy after timeout
    ERROR - Error marker found, process exited
"""
from __future__ import annotations

import logging
import time
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Final

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from .relay import RelayApiClient

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

SUCCESS_MARKER: Final[str] = "Output #0, rtsp"
"""Printed by ffmpeg once the RTSP muxer is open."""

ERROR_MARKER: Final[str] = "Error "

POLL_INTERVAL: Final[float] = 0.5

# ============================================================================
# Result Types
# ============================================================================

class VerificationOutcome(str, Enum):
    CONFIRMED = "confirmed"
    ASSUMED_HEALTHY = "assumed_healthy"
    FAILED = "failed"


class VerificationResult(BaseModel):
    outcome: VerificationOutcome
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome != VerificationOutcome.FAILED


class VerificationTarget(BaseModel):
    """What a probe needs to know about the pipeline under test."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    stream_name: str
    log_path: Path
    log_offset: int = 0
    is_alive: Callable[[], bool]


# ============================================================================
# Probe Interface
# ============================================================================

class VerificationProbe:
    """Base class for startup verification strategies."""

    name = "base"

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self.poll_interval = poll_interval

    def check(self, target: VerificationTarget) -> VerificationResult | None:
        """One poll. Return a result to finish, or None to keep waiting."""
        raise NotImplementedError

    def verify(self, target: VerificationTarget, timeout: float) -> VerificationResult:
        """Poll until a verdict or the deadline.

        Args:
            target: Pipeline under test
            timeout: Seconds to wait for a verdict

        Returns:
            CONFIRMED, FAILED, or ASSUMED_HEALTHY on timeout
        """
        deadline = self._clock() + timeout
        while True:
            if not target.is_alive():
                detail = f"process exited during startup{self._log_tail(target)}"
                logger.error(f"[{target.stream_name}] {detail}")
                return VerificationResult(outcome=VerificationOutcome.FAILED, detail=detail)

            result = self.check(target)
            if result is not None:
                return result

            if self._clock() >= deadline:
                logger.warning(
                    f"[{target.stream_name}] No startup confirmation after {timeout:.0f}s, "
                    f"assuming healthy"
                )
                return VerificationResult(outcome=VerificationOutcome.ASSUMED_HEALTHY)

            self._sleep(self.poll_interval)

    def _log_tail(self, target: VerificationTarget, lines: int = 3) -> str:
        text = read_log(target.log_path, target.log_offset)
        tail = [line for line in text.splitlines() if line.strip()][-lines:]
        return f": {' | '.join(tail)}" if tail else ""


def read_log(path: Path, offset: int = 0) -> str:
    """Read a pipeline log from a byte offset, tolerating absence."""
    try:
        with open(path, "rb") as f:
            f.seek(offset)
            return f.read().decode("utf-8", errors="replace")
    except FileNotFoundError:
        return ""


# ============================================================================
# Log Marker Probe
# ============================================================================

class LogMarkerProbe(VerificationProbe):
    """Scrape the encoder log for explicit success/error markers."""

    name = "log"

    def __init__(
        self,
        success_marker: str = SUCCESS_MARKER,
        error_marker: str = ERROR_MARKER,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.success_marker = success_marker
        self.error_marker = error_marker

    def check(self, target: VerificationTarget) -> VerificationResult | None:
        text = read_log(target.log_path, target.log_offset)
        if self.success_marker in text:
            logger.info(f"[{target.stream_name}] Encoder output confirmed")
            return VerificationResult(outcome=VerificationOutcome.CONFIRMED)

        for line in text.splitlines():
            if self.error_marker in line:
                logger.error(f"[{target.stream_name}] Encoder error: {line.strip()}")
                return VerificationResult(outcome=VerificationOutcome.FAILED, detail=line.strip())

        logger.debug(f"[{target.stream_name}] No marker yet ({len(text)} bytes of log)")
        return None


# ============================================================================
# Relay Path Probe
# ============================================================================

class RelayPathProbe(VerificationProbe):
    """Ask the relay whether the stream's path has an active publisher."""

    name = "relay"

    def __init__(self, client: RelayApiClient, **kwargs) -> None:
        super().__init__(**kwargs)
        self.client = client

    def check(self, target: VerificationTarget) -> VerificationResult | None:
        if self.client.path_ready(target.stream_name):
            logger.info(f"[{target.stream_name}] Relay reports path ready")
            return VerificationResult(outcome=VerificationOutcome.CONFIRMED)
        return None
