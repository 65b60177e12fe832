"""Media relay server (MediaMTX) management.

The relay is an external binary: this module generates its configuration,
spawns it in its own process group, probes its HTTP control API for
readiness and liveness, and stops it. It never implements the RTSP protocol.

Ownership:
    The orchestrator only stops a relay it started itself. A relay that was
    already serving when the manager came up (e.g. its own systemd unit) is
    used as-is and left running on shutdown.

Generated Config:
    RTSP on :8554 (tcp+udp), API on :9997, metrics on :9998, all other
    protocols off, and one regex path accepting any publisher so pipelines
    can publish to any stream name without per-path config.

Logging Strategy:
    DEBUG - API probes, config rendering
    INFO  - Start/stop, readiness
    WARN  - Probe failures, unresponsive relay
    ERROR - Startup failures
"""
from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path
from typing import Any, Callable, Final

import httpx
import yaml
from pydantic import BaseModel

from ..errors import PrerequisiteMissing, RelayUnreachable
from ..state_store import atomic_write, read_live_pid, remove, write_pid
from ..utils.process import ProcessHandle, adopt, spawn_group, terminate_group

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

PATHS_LIST_ENDPOINT: Final[str] = "/v3/paths/list"
PATH_GET_ENDPOINT: Final[str] = "/v3/paths/get/{name}"

PUBLISHER_PATH_PATTERN: Final[str] = "~^[a-zA-Z0-9_-]+$"
"""Regex path accepting any valid stream name from any publisher."""

READY_POLL_INTERVAL: Final[float] = 0.5

# ============================================================================
# API Client
# ============================================================================

class RelayApiClient:
    """Thin client for the relay's HTTP control API.

    All calls return a value rather than raising on transport errors; a
    relay that cannot be reached is simply not ready.
    """

    def __init__(self, host: str, api_port: int, timeout: float = 2.0) -> None:
        self.base_url = f"http://{host}:{api_port}"
        self.timeout = timeout

        # Health polling every few seconds would flood INFO logs
        logging.getLogger("httpx").setLevel(logging.WARNING)

    def _get(self, path: str) -> httpx.Response | None:
        try:
            return httpx.get(f"{self.base_url}{path}", timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.debug(f"Relay API {path} unreachable: {e}")
            return None

    def is_ready(self) -> bool:
        response = self._get(PATHS_LIST_ENDPOINT)
        return response is not None and response.status_code == 200

    def path_ready(self, name: str) -> bool:
        """True if the relay has an active publisher on ``name``."""
        response = self._get(PATH_GET_ENDPOINT.format(name=name))
        if response is None or response.status_code != 200:
            return False
        try:
            return response.json().get("ready") is True
        except ValueError:
            return False


# ============================================================================
# Relay Server
# ============================================================================

class RelayServerHandle(BaseModel):
    """Identity of the relay process as reported in status snapshots."""

    pid: int | None = None
    config_path: Path
    started_by_us: bool = False


class RelayServer:
    """Lifecycle of the single relay server process.

    Args:
        binary: Relay executable
        config_path: Generated config file
        pid_path: Relay pid file
        log_path: Relay stdout/stderr log
        client: API client used for readiness and liveness
        rtsp_port / api_port / metrics_port: Listener ports
        log_level: Relay log level
        ready_timeout: Seconds to wait for the API after spawn
        stop_grace: Seconds between SIGTERM and SIGKILL
        manage_config: Regenerate config_path before each start
    """

    def __init__(
        self,
        binary: str,
        config_path: Path,
        pid_path: Path,
        log_path: Path,
        client: RelayApiClient,
        rtsp_port: int = 8554,
        api_port: int = 9997,
        metrics_port: int = 9998,
        log_level: str = "info",
        ready_timeout: float = 60.0,
        stop_grace: float = 10.0,
        manage_config: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.binary = binary
        self.config_path = Path(config_path)
        self.pid_path = Path(pid_path)
        self.log_path = Path(log_path)
        self.client = client
        self.rtsp_port = rtsp_port
        self.api_port = api_port
        self.metrics_port = metrics_port
        self.log_level = log_level
        self.ready_timeout = ready_timeout
        self.stop_grace = stop_grace
        self.manage_config = manage_config
        self._clock = clock
        self._sleep = sleep
        self._process: ProcessHandle | None = None
        self.started_by_us = False

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def render_config(self) -> dict[str, Any]:
        return {
            "logLevel": self.log_level,
            "readTimeout": "30s",
            "writeTimeout": "30s",
            "api": True,
            "apiAddress": f":{self.api_port}",
            "metrics": True,
            "metricsAddress": f":{self.metrics_port}",
            "rtsp": True,
            "rtspAddress": f":{self.rtsp_port}",
            "rtspTransports": ["tcp", "udp"],
            "rtmp": False,
            "hls": False,
            "webrtc": False,
            "srt": False,
            "paths": {
                PUBLISHER_PATH_PATTERN: {
                    "source": "publisher",
                    "sourceOnDemand": False,
                },
            },
        }

    def write_config(self) -> Path:
        """Atomically write the relay config."""
        body = yaml.safe_dump(self.render_config(), sort_keys=False, default_flow_style=False)
        atomic_write(self.config_path, "# Generated by lyrebird; local edits are overwritten\n" + body)
        logger.info(f"Relay config written: {self.config_path}")
        return self.config_path

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def pid(self) -> int | None:
        if self._process is not None and self._process.is_alive():
            return self._process.pid
        return read_live_pid(self.pid_path)

    @property
    def handle(self) -> RelayServerHandle:
        return RelayServerHandle(pid=self.pid, config_path=self.config_path, started_by_us=self.started_by_us)

    def check(self) -> bool:
        """Liveness: our process (if we own one) is alive and the API answers."""
        if self._process is not None and not self._process.is_alive():
            logger.warning(f"Relay process {self._process.pid} exited (code {self._process.returncode})")
            return False
        return self.client.is_ready()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _resolve_binary(self) -> str:
        path = shutil.which(self.binary)
        if path is None:
            raise PrerequisiteMissing(f"Relay binary not found: {self.binary}")
        return path

    def wait_ready(self, timeout: float) -> bool:
        """Poll the API until it answers, the process dies, or timeout."""
        deadline = self._clock() + timeout
        while self._clock() < deadline:
            if self._process is not None and not self._process.is_alive():
                return False
            if self.client.is_ready():
                return True
            self._sleep(READY_POLL_INTERVAL)
        return self.client.is_ready()

    def ensure_running(self) -> bool:
        """Use a serving relay or start one.

        Returns:
            True if this call started the relay

        Raises:
            PrerequisiteMissing: Relay binary not installed
            RelayUnreachable: Relay failed to become ready
        """
        if self.client.is_ready():
            logger.info(f"Relay already serving on {self.client.base_url} (pid {self.pid or 'unknown'})")
            return False
        self.start()
        return True

    def start(self) -> None:
        """Spawn the relay and wait for its API.

        Raises:
            PrerequisiteMissing: Relay binary not installed
            RelayUnreachable: Process exited or API not ready in time
        """
        binary = self._resolve_binary()

        stale = read_live_pid(self.pid_path)
        if stale is not None and self._process is None:
            handle = adopt(stale)
            if handle is not None:
                logger.warning(f"Stopping unresponsive relay pid {stale} before restart")
                terminate_group(handle, self.stop_grace, label="relay", clock=self._clock, sleep=self._sleep)

        if self.manage_config:
            self.write_config()

        logger.info(f"Starting relay: {binary} {self.config_path}")
        try:
            self._process = spawn_group([binary, str(self.config_path)], self.log_path)
        except OSError as e:
            raise RelayUnreachable(f"Cannot start relay {binary}: {e}") from e
        write_pid(self.pid_path, self._process.pid)
        self.started_by_us = True

        if not self.wait_ready(self.ready_timeout):
            code = self._process.returncode
            self.stop(force=True)
            reason = f"exited with code {code}" if code is not None else f"not ready after {self.ready_timeout:.0f}s"
            logger.error(f"Relay {reason}; see {self.log_path}")
            raise RelayUnreachable(
                f"Relay {reason}: API {self.client.base_url}{PATHS_LIST_ENDPOINT} "
                f"(check port {self.api_port}/{self.rtsp_port} availability and {self.log_path})"
            )
        logger.info(f"Relay ready (pid {self._process.pid})")

    def stop(self, force: bool = False) -> None:
        """Stop the relay if we started it (or unconditionally with force)."""
        if not (self.started_by_us or force):
            logger.info("Leaving externally managed relay running")
            return

        handle = self._process
        if handle is None:
            pid = read_live_pid(self.pid_path)
            handle = adopt(pid) if pid is not None else None

        if handle is not None:
            terminate_group(handle, self.stop_grace, label="relay", clock=self._clock, sleep=self._sleep)
        remove(self.pid_path)
        self._process = None
        self.started_by_us = False

    def restart(self) -> None:
        """Stop whatever relay we can find and start a fresh one."""
        logger.info("Restarting relay")
        self.stop(force=True)
        self.start()
