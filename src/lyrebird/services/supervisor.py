"""Supervision of exactly one capture → relay pipeline.

State machine:
    STOPPED → STARTING → VERIFYING → RUNNING → FAILED → COOLDOWN → STARTING …
    STOPPED is terminal: explicit stop() or restart budget exhausted.

Ownership:
    A supervisor owns its encoder process group, its liveness file
    (``<state_dir>/streams/<name>.pid``) and its log. It is never
    self-scheduled: only the orchestrator's health loop (via monitor()) or an
    explicit start()/stop() mutates it, so no internal locking is needed.

Restart Policy:
    - A run shorter than ``min_runtime`` is a flap; consecutive flaps double
      the cooldown (capped at ``max_delay``). A run that lasted past
      ``min_runtime`` restarts after ``base_delay``.
    - ``restart_count`` grows by one per scheduled restart and resets to zero
      once a run lasts past ``stability_window``.
    - At ``max_restarts`` the supervisor stops for good and reports itself
      exhausted.

Logging Strategy:
    DEBUG - Ticks, idempotent no-ops
    INFO  - Spawn, running, stop
    WARN  - Exits, cooldowns, orphan adoption
    ERROR - Verification failures, exhausted restart budget
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import Executor, Future
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Final

from .. import metrics
from ..config_io import resolve_stream_config
from ..errors import PrerequisiteMissing
from ..models.device import AudioDevice, DeviceIdentity
from ..models.settings import SupervisorSettings
from ..models.stream import StreamConfig, StreamProcess, StreamSnapshot, StreamState
from ..state_store import read_pid, remove, write_pid
from ..utils.encoder import build_combined_command, build_encoder_command
from ..utils.process import ProcessHandle, adopt, process_cmdline, spawn_group, terminate_group
from .verification import (
    VerificationOutcome,
    VerificationProbe,
    VerificationResult,
    VerificationTarget,
)

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

LOG_MAX_BYTES: Final[int] = 10 * 1024 * 1024
"""Rotate a pipeline log at 10MB before the next spawn."""

EXIT_REAP_GRACE: Final[float] = 2.0
"""Grace for stray group members after the leader has already exited."""

# ============================================================================
# Stream Supervisor
# ============================================================================

class StreamSupervisor:
    """Lifecycle of one encoder pipeline.

    Args:
        identity: Device identity (friendly_name is the stream name)
        device: Capture device
        destination_url: Relay publish URL
        probe: Startup verification strategy
        policy: Restart/backoff settings
        log_dir: Directory for pipeline logs
        liveness_dir: Directory for pid files
        overrides_dir: Directory of per-device override files
        defaults: Global default StreamConfig
        encoder_binary: ffmpeg executable
        verify_timeout: Seconds allowed for verification
        clock: Monotonic clock (injectable for tests)
        spawner: Process spawner (injectable for tests)
    """

    def __init__(
        self,
        identity: DeviceIdentity,
        device: AudioDevice,
        destination_url: str,
        probe: VerificationProbe,
        policy: SupervisorSettings,
        log_dir: Path,
        liveness_dir: Path,
        overrides_dir: Path,
        defaults: StreamConfig | None = None,
        encoder_binary: str = "ffmpeg",
        verify_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        spawner: Callable[[list[str], Path], ProcessHandle] = spawn_group,
    ) -> None:
        self.identity = identity
        self.device = device
        self.destination_url = destination_url
        self.probe = probe
        self.policy = policy
        self.log_path = Path(log_dir) / f"{identity.friendly_name}.log"
        self.liveness_path = Path(liveness_dir) / f"{identity.friendly_name}.pid"
        self.overrides_dir = Path(overrides_dir)
        self.defaults = defaults or StreamConfig()
        self.encoder_binary = encoder_binary
        self.verify_timeout = verify_timeout
        self._clock = clock
        self._spawn_process = spawner

        self.state = StreamState.STOPPED
        self.restart_count = 0
        self.consecutive_flaps = 0
        self.exhausted = False
        self.last_error: str | None = None
        self.last_delay: float | None = None
        self.last_started_at: datetime | None = None
        self.config: StreamConfig | None = None
        self.cooldown_until: float | None = None
        self._failure_reason = "exited"

        self._process: ProcessHandle | None = None
        self._started_at: float | None = None
        self._executor: Executor | None = None
        self._verification: Future | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self.identity.friendly_name

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def is_alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    def _set_state(self, state: StreamState) -> None:
        if state != self.state:
            logger.debug(f"[{self.name}] {self.state.value} → {state.value}")
        self.state = state
        metrics.set_stream_state(self.name, state.value)

    def stream_process(self) -> StreamProcess | None:
        """Current process record, if a process is owned."""
        if self._process is None or self.last_started_at is None:
            return None
        return StreamProcess(
            stream_name=self.name,
            pid=self._process.pid,
            pgid=self._process.pgid,
            log_path=str(self.log_path),
            state=self.state,
            restart_count=self.restart_count,
            last_started_at=self.last_started_at,
        )

    def snapshot(self) -> StreamSnapshot:
        return StreamSnapshot(
            name=self.name,
            device_uuid=self.identity.uuid,
            state=self.state,
            pid=self.pid if self.is_alive() else None,
            restart_count=self.restart_count,
            exhausted=self.exhausted,
            url=self.destination_url,
            last_started_at=self.last_started_at,
            last_error=self.last_error,
        )

    def resolve_config(self) -> StreamConfig:
        return resolve_stream_config(self.overrides_dir, self.name, self.defaults)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def _recorded_live_process(self) -> ProcessHandle | None:
        """Adopt a live pipeline recorded in the liveness file, if it is ours."""
        pid = read_pid(self.liveness_path)
        if pid is None:
            return None
        cmdline = process_cmdline(pid)
        if self.destination_url in cmdline:
            return adopt(pid)
        if cmdline:
            logger.warning(f"[{self.name}] Liveness pid {pid} belongs to another program, discarding")
        remove(self.liveness_path)
        return None

    def start(self, config: StreamConfig | None = None, executor: Executor | None = None) -> bool:
        """Start the pipeline unless a live one is already recorded.

        Idempotent: with a live process (ours, or an orphan from a previous
        manager run that is adopted) this is a no-op and restart_count is
        left untouched.

        Args:
            config: Settings for this run (resolved from overrides if omitted)
            executor: Runs verification off the caller's thread; without
                one, verification blocks here

        Returns:
            True if a new process was spawned

        Raises:
            PrerequisiteMissing: Encoder binary not found
        """
        if self.is_alive():
            logger.debug(f"[{self.name}] Already running (pid {self.pid}), start is a no-op")
            return False

        adopted = self._recorded_live_process()
        if adopted is not None:
            logger.warning(f"[{self.name}] Adopting running pipeline pid {adopted.pid}")
            self._process = adopted
            self._started_at = self._clock()
            self.last_started_at = self.last_started_at or datetime.now(timezone.utc)
            self.exhausted = False
            self._set_state(StreamState.RUNNING)
            return False

        self.exhausted = False
        self._executor = executor
        return self._spawn(config)

    def _rotate_log(self) -> None:
        try:
            if self.log_path.stat().st_size > LOG_MAX_BYTES:
                self.log_path.replace(self.log_path.with_name(self.log_path.name + ".1"))
                logger.debug(f"[{self.name}] Rotated {self.log_path}")
        except FileNotFoundError:
            pass

    def build_command(self, config: StreamConfig) -> list[str]:
        return build_encoder_command(
            self.device.alsa_device, config, self.destination_url, binary=self.encoder_binary
        )

    def _spawn(self, config: StreamConfig | None = None) -> bool:
        """Spawn one encoder run.

        Overrides are read again on every spawn so an edited device file
        applies to the next restart. An explicit ``config`` covers this run
        only.
        """
        self._set_state(StreamState.STARTING)
        self.config = config or self.resolve_config()
        cmd = self.build_command(self.config)

        self._rotate_log()
        try:
            log_offset = self.log_path.stat().st_size
        except FileNotFoundError:
            log_offset = 0

        try:
            self._process = self._spawn_process(cmd, self.log_path)
        except FileNotFoundError as e:
            self.last_error = f"encoder binary not found: {self.encoder_binary}"
            self._set_state(StreamState.STOPPED)
            raise PrerequisiteMissing(self.last_error) from e
        except OSError as e:
            logger.error(f"[{self.name}] Spawn failed: {e}")
            self.last_error = f"spawn failed: {e}"
            self._started_at = self._clock()
            self.consecutive_flaps += 1
            self._set_state(StreamState.FAILED)
            return False

        self._started_at = self._clock()
        self.last_started_at = datetime.now(timezone.utc)
        write_pid(self.liveness_path, self._process.pid)
        metrics.stream_starts_total.labels(stream=self.name).inc()
        logger.info(
            f"[{self.name}] Started pid {self._process.pid} → {self.destination_url} "
            f"(attempt {self.restart_count + 1})"
        )

        self._set_state(StreamState.VERIFYING)
        target = VerificationTarget(
            stream_name=self.name,
            log_path=self.log_path,
            log_offset=log_offset,
            is_alive=self._process.is_alive,
        )
        if self._executor is not None:
            self._verification = self._executor.submit(self.probe.verify, target, self.verify_timeout)
        else:
            self._apply_verification(self.probe.verify(target, self.verify_timeout))
        return True

    def update_device(self, device: AudioDevice) -> bool:
        """Point the supervisor at a re-enumerated capture device.

        After a replug the same physical device can come back under a new
        ALSA card index. A live pipeline still bound to the old card is
        restarted on the new one at once; otherwise the next spawn picks it
        up. Neither case counts against the restart budget.

        Returns:
            True if a live pipeline was restarted
        """
        previous, self.device = self.device, device
        if previous.alsa_device == device.alsa_device:
            return False

        logger.warning(f"[{self.name}] Device moved from {previous.alsa_device} to {device.alsa_device}")
        if self._process is None or self.state not in (StreamState.VERIFYING, StreamState.RUNNING):
            return False

        self._verification = None
        terminate_group(self._process, self.policy.stop_grace, label=self.name)
        self._process = None
        remove(self.liveness_path)
        return self._spawn()

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self) -> bool:
        """Block until the pending verification (if any) completes.

        Returns:
            True if the pipeline is running afterwards
        """
        if self._verification is not None:
            future, self._verification = self._verification, None
            self._apply_verification(self._verification_result(future))
        return self.state == StreamState.RUNNING

    def _verification_result(self, future: Future) -> VerificationResult:
        try:
            return future.result()
        except Exception as e:
            logger.error(f"[{self.name}] Verification error: {e}", exc_info=True)
            return VerificationResult(outcome=VerificationOutcome.FAILED, detail=str(e))

    def _apply_verification(self, result: VerificationResult) -> None:
        if self.state != StreamState.VERIFYING:
            # stop() raced the worker; the result is stale
            return
        metrics.stream_verifications_total.labels(stream=self.name, outcome=result.outcome.value).inc()
        if result.ok:
            self._set_state(StreamState.RUNNING)
            return

        self.last_error = result.detail or "verification failed"
        logger.error(f"[{self.name}] Startup verification failed: {self.last_error}")
        self._handle_exit(reason="verify_failed")

    # ------------------------------------------------------------------
    # Monitor / Recover
    # ------------------------------------------------------------------

    def monitor(self) -> StreamState:
        """Advance the state machine by one health-loop tick.

        Returns:
            State after the tick
        """
        if self.state == StreamState.VERIFYING and self._verification is not None:
            if self._verification.done():
                future, self._verification = self._verification, None
                self._apply_verification(self._verification_result(future))

        if self.state == StreamState.RUNNING:
            if not self.is_alive():
                code = self._process.returncode if self._process is not None else None
                self.last_error = f"exited with code {code}" if code is not None else "process gone"
                logger.warning(f"[{self.name}] Pipeline {self.last_error}")
                self._handle_exit(reason="exited")
            elif self.restart_count and self._runtime() >= self.policy.stability_window:
                logger.info(
                    f"[{self.name}] Stable for {self.policy.stability_window:.0f}s, "
                    f"resetting restart count ({self.restart_count} → 0)"
                )
                self.restart_count = 0
                self.consecutive_flaps = 0

        if self.state == StreamState.FAILED:
            self.recover()

        if self.state == StreamState.COOLDOWN and self.cooldown_until is not None:
            if self._clock() >= self.cooldown_until:
                self.cooldown_until = None
                self._spawn()

        return self.state

    def _runtime(self) -> float:
        return self._clock() - self._started_at if self._started_at is not None else 0.0

    def _handle_exit(self, reason: str) -> None:
        """Record a dead (or failed) run and move to FAILED."""
        runtime = self._runtime()
        if runtime < self.policy.min_runtime:
            self.consecutive_flaps += 1
            logger.warning(
                f"[{self.name}] Ran {runtime:.1f}s (< {self.policy.min_runtime:.0f}s), "
                f"flap #{self.consecutive_flaps}"
            )
        else:
            self.consecutive_flaps = 0

        if self._process is not None:
            terminate_group(self._process, EXIT_REAP_GRACE, label=self.name)
            self._process = None
        remove(self.liveness_path)
        self._failure_reason = reason
        self._set_state(StreamState.FAILED)

    def next_delay(self) -> float:
        """Cooldown before the next restart attempt."""
        if self.consecutive_flaps == 0:
            return self.policy.base_delay
        return min(self.policy.base_delay * (2 ** self.consecutive_flaps), self.policy.max_delay)

    def recover(self) -> StreamState:
        """Schedule a restart or give up.

        Returns:
            COOLDOWN, or STOPPED when the restart budget is exhausted
        """
        if self.state != StreamState.FAILED:
            return self.state

        if self.restart_count >= self.policy.max_restarts:
            self.exhausted = True
            logger.error(
                f"[{self.name}] Restart budget exhausted ({self.restart_count}/"
                f"{self.policy.max_restarts}); stream stopped. Last error: {self.last_error}"
            )
            self._set_state(StreamState.STOPPED)
            return self.state

        delay = self.next_delay()
        self.restart_count += 1
        self.last_delay = delay
        self.cooldown_until = self._clock() + delay
        metrics.stream_restarts_total.labels(
            stream=self.name, reason=self._failure_reason
        ).inc()
        logger.warning(
            f"[{self.name}] Restart {self.restart_count}/{self.policy.max_restarts} in {delay:.0f}s"
        )
        self._set_state(StreamState.COOLDOWN)
        return self.state

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Terminate the pipeline group and remove the liveness file.

        Idempotent. A pending verification result is discarded.
        """
        self._verification = None
        self.cooldown_until = None

        handle = self._process
        if handle is None:
            handle = self._recorded_live_process()

        if handle is not None:
            logger.info(f"[{self.name}] Stopping pid {handle.pid}")
            terminate_group(handle, self.policy.stop_grace, label=self.name)
        self._process = None
        remove(self.liveness_path)

        if self.state != StreamState.STOPPED:
            self._set_state(StreamState.STOPPED)


# ============================================================================
# Combined Stream Supervisor
# ============================================================================

class CombinedStreamSupervisor(StreamSupervisor):
    """One pipeline that publishes several capture devices on one relay path.

    Every member device is an input of a single encoder whose filter graph
    merges (``amerge``, one channel group per device) or mixes (``amix``,
    stereo) them. Rate, channels and codec come from the first member's
    overrides. Membership is fixed for the life of the supervisor; the
    orchestrator replaces it when the device set changes.

    Args:
        name: Relay path of the combined stream
        members: (identity, device) pairs in input order
        method: "amerge" or "amix"
        **kwargs: Remaining StreamSupervisor arguments
    """

    def __init__(
        self,
        name: str,
        members: list[tuple[DeviceIdentity, AudioDevice]],
        method: str = "amerge",
        **kwargs,
    ) -> None:
        if not members:
            raise ValueError("A combined stream needs at least one device")
        identity = DeviceIdentity(uuid=f"combined-{name}", friendly_name=name, persistent=False)
        super().__init__(identity=identity, device=members[0][1], **kwargs)
        self.members = list(members)
        self.method = method

    @property
    def member_key(self) -> tuple[tuple[str, str], ...]:
        """Identity and ALSA device of every input; changes when a device moves."""
        return tuple((identity.uuid, device.alsa_device) for identity, device in self.members)

    def resolve_config(self) -> StreamConfig:
        return resolve_stream_config(self.overrides_dir, self.members[0][0].friendly_name, self.defaults)

    def build_command(self, config: StreamConfig) -> list[str]:
        return build_combined_command(
            [device.alsa_device for _, device in self.members],
            config,
            self.destination_url,
            method=self.method,
            binary=self.encoder_binary,
        )
