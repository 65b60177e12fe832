"""Stream orchestrator: lock, relay, discovery and the health loop.

Owns the single-instance lock, the relay server and one StreamSupervisor per
discovered device, or in combined mode one CombinedStreamSupervisor for all
of them. Everything that mutates supervisors happens on the thread
that calls tick(); verification runs in a small worker pool and its results
are applied by the supervisors on the next tick.

Health Loop (one tick):
    1. Relay liveness. If the relay is down, pipeline supervision is paused
       (nothing is torn down, counters are kept) and the relay is restarted
       with a growing cooldown, up to ``relay.max_restarts`` attempts. Past
       the budget the tick raises RelayUnreachable.
    2. Every supervisor's monitor().
    3. Periodic discovery adds newly attached devices. A known device is only
       touched when it came back under a new ALSA card index; its pipeline is
       then restarted on the new card. In combined mode a changed device set
       rebuilds the combined pipeline.
    4. Periodic resource check of the relay and pipelines.
    5. Status snapshot written to ``status.json``.

Failure Semantics:
    - Discovery and verification failures are transient and retried
    - Lock contention and relay outage past its budget are fatal
    - One exhausted pipeline only degrades its own stream
    - A combined pipeline that fails its first verification or exhausts its
      budget is replaced by individual streams when ``streams.fallback`` is on

Logging Strategy:
    DEBUG - Tick details, skipped devices
    INFO  - Lifecycle, new devices, relay recovery
    WARN  - Relay down, empty discovery, orphan cleanup
    ERROR - Fatal conditions, critical resource usage
"""
from __future__ import annotations

import logging
import os
import shutil
import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Final

from pydantic import ValidationError

from .. import metrics
from ..errors import ConfigError, DiscoveryUnavailable, NoDevicesFound, PrerequisiteMissing, RelayUnreachable
from ..lock_manager import LockHandle, LockManager
from ..models.device import AudioDevice
from ..models.settings import Settings
from ..models.stream import RelaySnapshot, Snapshot, StreamState
from ..state_store import pid_alive, read_json, read_live_pid, read_pid, remove, write_json
from ..utils.process import adopt, process_cmdline, terminate_group
from .identity import DeviceDiscovery, IdentityResolver
from .relay import RelayApiClient, RelayServer
from .resources import ResourceLevel, ResourceMonitor, ResourceUsage
from .supervisor import CombinedStreamSupervisor, StreamSupervisor
from .verification import LogMarkerProbe, RelayPathProbe, VerificationProbe

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

VERIFY_WORKERS: Final[int] = 4

STOP_POLL_INTERVAL: Final[float] = 0.5
"""Seconds between checks while waiting for another instance to exit."""

# ============================================================================
# Orchestrator
# ============================================================================

class Orchestrator:
    """Top-level lifecycle for the relay and every pipeline.

    Collaborators default to production implementations built from
    ``settings`` and can be replaced for tests.

    Args:
        settings: Validated manager settings
        relay: Relay server manager
        discovery: Device discovery
        resolver: Identity resolver
        lock: Single-instance lock
        probe: Startup verification probe shared by all supervisors
        resources: Resource monitor
        clock: Monotonic clock
        sleep: Sleep used while waiting for USB devices to settle
    """

    def __init__(
        self,
        settings: Settings,
        relay: RelayServer | None = None,
        discovery: DeviceDiscovery | None = None,
        resolver: IdentityResolver | None = None,
        lock: LockManager | None = None,
        probe: VerificationProbe | None = None,
        resources: ResourceMonitor | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        client = RelayApiClient(settings.relay.host, settings.relay.api_port, settings.relay.probe_timeout)
        self.relay = relay or RelayServer(
            binary=settings.relay.binary,
            config_path=settings.relay_config_path,
            pid_path=settings.relay_pid_path,
            log_path=settings.paths.log_dir / "mediamtx.log",
            client=client,
            rtsp_port=settings.relay.rtsp_port,
            api_port=settings.relay.api_port,
            metrics_port=settings.relay.metrics_port,
            log_level=settings.relay.log_level,
            ready_timeout=settings.relay.ready_timeout,
            stop_grace=settings.relay.stop_grace,
            manage_config=settings.relay.manage_config,
        )
        self.discovery = discovery or DeviceDiscovery(
            blacklist_path=settings.blacklist_path,
            include_non_usb=settings.discovery.include_non_usb,
            probe_capture=settings.discovery.probe_capture,
            probe_timeout=settings.discovery.probe_timeout,
            unlock_busy=settings.discovery.unlock_busy,
            ffmpeg_binary=settings.encoder.binary,
        )
        self.resolver = resolver or IdentityResolver(
            settings.identity_map_path,
            known_devices=settings.discovery.known_devices,
        )
        self.lock = lock or LockManager(settings.lock_path)
        if probe is None:
            probe = RelayPathProbe(client) if settings.encoder.verification == "relay" else LogMarkerProbe()
        self.probe = probe
        health = settings.health
        self.resources = resources or ResourceMonitor(
            fd_warning=health.fd_warning,
            fd_critical=health.fd_critical,
            cpu_warning=health.cpu_warning,
            cpu_critical=health.cpu_critical,
        )
        self._clock = clock
        self._sleep = sleep

        self.supervisors: dict[str, StreamSupervisor] = {}
        self.combined: CombinedStreamSupervisor | None = None
        self.fallback_active = False
        self.paused = False
        self.relay_up = False
        self.relay_restart_attempts = 0
        self._lock_handle: LockHandle | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._next_relay_attempt = 0.0
        self._next_discovery = 0.0
        self._next_resource_check = 0.0

    @property
    def running(self) -> bool:
        return self._lock_handle is not None

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def check_prerequisites(self) -> None:
        """Raise PrerequisiteMissing if the encoder cannot be found."""
        if shutil.which(self.settings.encoder.binary) is None:
            raise PrerequisiteMissing(
                f"Encoder binary not found: {self.settings.encoder.binary} "
                f"(install ffmpeg or set encoder.binary / FFMPEG_BINARY)"
            )

    def _ensure_dirs(self) -> None:
        paths = self.settings.paths
        for directory in (
            paths.config_dir,
            paths.state_dir,
            paths.log_dir,
            paths.run_dir,
            self.settings.liveness_dir,
            self.settings.overrides_dir,
        ):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise PrerequisiteMissing(f"Cannot create directory {directory}: {e}") from e

    def start(self) -> Snapshot:
        """Acquire the lock, bring up the relay and start every pipeline.

        Returns:
            Initial snapshot

        Raises:
            AlreadyRunning / LockTimeout: Lock not obtained
            PrerequisiteMissing: Encoder or relay binary missing
            RelayUnreachable: Relay did not become ready
            NoDevicesFound: Nothing to stream and discovery.require_devices
        """
        if self.running:
            logger.info("Orchestrator already started")
            return self.status()

        self.check_prerequisites()
        self._ensure_dirs()
        self._lock_handle = self.lock.acquire_or_raise(self.settings.lock.timeout)

        logger.info("=" * 60)
        logger.info(f"Stream manager starting (pid {os.getpid()})")
        logger.info("=" * 60)

        try:
            started = self.relay.ensure_running()
            logger.info(f"Relay {'started' if started else 'already running'}")
            metrics.set_relay_up(True)
            self.relay_up = True
            self.paused = False
            self.relay_restart_attempts = 0

            self._executor = ThreadPoolExecutor(max_workers=VERIFY_WORKERS, thread_name_prefix="verify")
            self.wait_for_devices()
            self.discover(initial=True)
            self._cleanup_stale_liveness()

            # Wait for the initial verifications so start reports real states
            for supervisor in list(self.supervisors.values()):
                supervisor.verify()

            combined = self.combined
            if combined is not None and combined.state != StreamState.RUNNING and self.settings.streams.fallback:
                for supervisor in self.fall_back_to_individual():
                    supervisor.verify()
        except BaseException:
            self.stop()
            raise

        now = self._clock()
        self._next_discovery = now + self.settings.discovery.interval
        self._next_resource_check = now + self.settings.health.resource_check_interval

        snapshot = self.write_snapshot()
        running = sum(1 for s in snapshot.streams if s.state == StreamState.RUNNING)
        logger.info(f"Stream manager started: {running}/{len(snapshot.streams)} stream(s) running")
        for stream in snapshot.streams:
            logger.info(f"  {stream.name}: {stream.url} [{stream.state.value}]")
        return snapshot

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def wait_for_devices(self) -> None:
        """Give USB enumeration time to settle before the first discovery."""
        timeout = self.settings.discovery.stabilization_timeout
        if timeout <= 0:
            return
        logger.info(f"Waiting up to {timeout:.0f}s for USB devices to settle")
        self.discovery.wait_for_stable(
            timeout,
            interval=self.settings.discovery.stabilization_interval,
            clock=self._clock,
            sleep=self._sleep,
        )

    def discover(self, initial: bool = False) -> list[StreamSupervisor]:
        """Run a discovery pass and start supervisors for new devices.

        A known device keeps its pipeline; only a changed card index is
        passed on to its supervisor.

        Returns:
            Supervisors created by this pass

        Raises:
            NoDevicesFound: Nothing usable on the initial pass with
                discovery.require_devices
            ConfigError: Combined stream path collides with a device stream
        """
        try:
            devices = self.discovery.discover()
        except NoDevicesFound as e:
            metrics.discovery_devices.set(0)
            metrics.discovery_failures_total.labels(reason="no_devices").inc()
            if initial and self.settings.discovery.require_devices:
                raise
            if initial or not self.supervisors:
                logger.warning(f"{e}; will retry every {self.settings.discovery.interval:.0f}s")
            return []
        except DiscoveryUnavailable as e:
            metrics.discovery_failures_total.labels(reason="unavailable").inc()
            if initial and self.settings.discovery.require_devices:
                raise NoDevicesFound(str(e)) from e
            logger.warning(f"Discovery unavailable: {e}")
            return []

        metrics.discovery_devices.set(len(devices))
        if self.settings.streams.mode == "combined" and not self.fallback_active:
            supervisor = self._update_combined(devices)
            return [supervisor] if supervisor is not None else []

        created = []
        for device in devices:
            supervisor = self._add_device(device)
            if supervisor is not None:
                created.append(supervisor)
        if created and not initial:
            logger.info(f"Discovery added {len(created)} new stream(s)")
        return created

    def _supervisor_options(self) -> dict:
        return dict(
            probe=self.probe,
            policy=self.settings.supervisor,
            log_dir=self.settings.paths.log_dir,
            liveness_dir=self.settings.liveness_dir,
            overrides_dir=self.settings.overrides_dir,
            defaults=self.settings.encoder.defaults,
            encoder_binary=self.settings.encoder.binary,
            verify_timeout=self.settings.encoder.verify_timeout,
            clock=self._clock,
        )

    def _add_device(self, device: AudioDevice) -> StreamSupervisor | None:
        uuid, _ = self.resolver.compute_uuid(device)
        known = self.supervisors.get(uuid)
        if known is not None:
            logger.debug(f"{uuid} already supervised")
            known.update_device(device)
            return None

        identity = self.resolver.resolve(device)
        supervisor = StreamSupervisor(
            identity=identity,
            device=device,
            destination_url=self.settings.stream_url(identity.friendly_name),
            **self._supervisor_options(),
        )
        self.supervisors[identity.uuid] = supervisor
        logger.info(f"Supervising {identity.friendly_name} ({identity.uuid}) on {device.alsa_device}")
        supervisor.start(executor=self._executor)
        return supervisor

    # ------------------------------------------------------------------
    # Combined stream
    # ------------------------------------------------------------------

    def _update_combined(self, devices: list[AudioDevice]) -> CombinedStreamSupervisor | None:
        """Start the combined pipeline, or rebuild it when the device set changed."""
        streams = self.settings.streams
        limit = streams.max_combined_devices
        if len(devices) > limit:
            logger.warning(f"{len(devices)} devices exceed the combined limit of {limit}, using the first {limit}")
            devices = devices[:limit]

        members = [(self.resolver.resolve(device), device) for device in devices]
        for identity, _ in members:
            if identity.friendly_name == streams.combined_path:
                raise ConfigError(
                    f"Combined stream path '{streams.combined_path}' is also the stream name of "
                    f"{identity.uuid}; set streams.combined_path (MEDIAMTX_COMBINED_PATH) to another name"
                )

        key = tuple((identity.uuid, device.alsa_device) for identity, device in members)
        if self.combined is not None:
            if self.combined.member_key == key:
                return None
            logger.info(f"Capture devices changed, rebuilding combined stream {self.combined.name}")
            self.combined.stop()
            self.supervisors.pop(self.combined.identity.uuid, None)

        supervisor = CombinedStreamSupervisor(
            name=streams.combined_path,
            members=members,
            method=streams.combine_method,
            destination_url=self.settings.stream_url(streams.combined_path),
            **self._supervisor_options(),
        )
        self.combined = supervisor
        self.supervisors[supervisor.identity.uuid] = supervisor
        logger.info(
            f"Supervising combined stream {supervisor.name} ({streams.combine_method}) on "
            f"{', '.join(device.alsa_device for _, device in members)}"
        )
        supervisor.start(executor=self._executor)
        return supervisor

    def fall_back_to_individual(self) -> list[StreamSupervisor]:
        """Replace the combined pipeline with one stream per member device.

        Stays in effect until the next full restart.

        Returns:
            Supervisors created for the member devices
        """
        combined, self.combined = self.combined, None
        self.fallback_active = True
        if combined is None:
            return []

        logger.warning(
            f"Combined stream {combined.name} failed ({combined.last_error}), "
            f"falling back to {len(combined.members)} individual stream(s)"
        )
        combined.stop()
        self.supervisors.pop(combined.identity.uuid, None)

        created = []
        for _, device in combined.members:
            supervisor = self._add_device(device)
            if supervisor is not None:
                created.append(supervisor)
        return created

    def _cleanup_stale_liveness(self) -> None:
        """Remove liveness files that no current supervisor owns."""
        owned = {s.liveness_path for s in self.supervisors.values()}
        for path in sorted(self.settings.liveness_dir.glob("*.pid")):
            if path in owned:
                continue
            pid = read_live_pid(path)
            if pid is not None:
                url = self.settings.stream_url(path.stem)
                if url in process_cmdline(pid):
                    handle = adopt(pid)
                    if handle is not None:
                        logger.warning(f"Stopping orphaned pipeline {path.stem} (pid {pid})")
                        terminate_group(handle, self.settings.supervisor.stop_grace, label=path.stem)
            logger.debug(f"Removing stale liveness file {path}")
            remove(path)

    # ------------------------------------------------------------------
    # Health loop
    # ------------------------------------------------------------------

    def _check_relay(self) -> bool:
        """Relay liveness and restart budget. Returns True when healthy."""
        if self.relay.check():
            if self.paused:
                logger.info("Relay is back, resuming pipeline supervision")
                self.paused = False
            self.relay_restart_attempts = 0
            self.relay_up = True
            metrics.set_relay_up(True)
            return True

        self.relay_up = False
        metrics.set_relay_up(False)
        now = self._clock()
        if not self.paused:
            logger.warning("Relay is down, pausing pipeline supervision")
            self.paused = True
            self._next_relay_attempt = now

        if now < self._next_relay_attempt:
            return False

        limit = self.settings.relay.max_restarts
        if self.relay_restart_attempts >= limit:
            metrics.relay_restarts_total.labels(status="exhausted").inc()
            logger.error(f"Relay restart budget exhausted ({self.relay_restart_attempts}/{limit})")
            raise RelayUnreachable(
                f"Relay unreachable after {self.relay_restart_attempts} restart attempts "
                f"(API {self.relay.client.base_url}, log {self.relay.log_path})"
            )

        self.relay_restart_attempts += 1
        logger.warning(f"Restarting relay (attempt {self.relay_restart_attempts}/{limit})")
        try:
            self.relay.restart()
        except RelayUnreachable as e:
            metrics.relay_restarts_total.labels(status="failed").inc()
            logger.warning(f"Relay restart failed: {e}")
            self._next_relay_attempt = now + self.settings.relay.restart_cooldown * self.relay_restart_attempts
            return False

        metrics.relay_restarts_total.labels(status="success").inc()
        self.relay_up = True
        metrics.set_relay_up(True)
        logger.info("Relay restarted, resuming pipeline supervision")
        self.paused = False
        return True

    def tick(self) -> Snapshot:
        """Run one health-loop iteration.

        Raises:
            RelayUnreachable: Relay restart budget exhausted
        """
        with metrics.health_tick_duration_seconds.time():
            if self._check_relay():
                for supervisor in list(self.supervisors.values()):
                    supervisor.monitor()

                if self.combined is not None and self.combined.exhausted and self.settings.streams.fallback:
                    self.fall_back_to_individual()

                now = self._clock()
                if now >= self._next_discovery:
                    self._next_discovery = now + self.settings.discovery.interval
                    self.discover()

                if now >= self._next_resource_check:
                    self._next_resource_check = now + self.settings.health.resource_check_interval
                    self.check_resources()

            self._update_counts()
            return self.write_snapshot()

    def run(self, stop_event: threading.Event) -> None:
        """Run the health loop until stop_event is set.

        Raises:
            RelayUnreachable: Relay could not be kept alive
        """
        interval = self.settings.health.interval
        logger.info(f"Health loop running every {interval:.0f}s")
        while not stop_event.is_set():
            try:
                self.tick()
            except RelayUnreachable:
                raise
            except (OSError, ValidationError) as e:
                logger.error(f"Health tick failed: {e}", exc_info=True)
            stop_event.wait(interval)
        logger.info("Health loop stopped")

    def _update_counts(self) -> None:
        running = sum(1 for s in self.supervisors.values() if s.state == StreamState.RUNNING)
        exhausted = sum(1 for s in self.supervisors.values() if s.exhausted)
        metrics.update_stream_counts(running, exhausted)

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def process_table(self) -> dict[str, int]:
        """Label → pid for the relay and every live pipeline."""
        table: dict[str, int] = {}
        relay_pid = self.relay.pid
        if relay_pid is not None:
            table["relay"] = relay_pid
        for supervisor in self.supervisors.values():
            if supervisor.is_alive() and supervisor.pid is not None:
                table[supervisor.name] = supervisor.pid
        return table

    def check_resources(self) -> list[ResourceUsage]:
        """Sample resources; restart a relay we own when it is critical."""
        usages = self.resources.check(self.process_table())
        for usage in usages:
            if usage.label == "relay" and usage.level == ResourceLevel.CRITICAL:
                if self.relay.started_by_us:
                    logger.error(f"Restarting relay on critical usage: {'; '.join(usage.reasons)}")
                    try:
                        self.relay.restart()
                        metrics.relay_restarts_total.labels(status="success").inc()
                    except RelayUnreachable as e:
                        metrics.relay_restarts_total.labels(status="failed").inc()
                        logger.error(f"Relay restart after critical usage failed: {e}")
                else:
                    logger.error("Relay usage is critical but it is externally managed; not restarting")
        return usages

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> Snapshot:
        relay = self.relay.handle
        return Snapshot(
            manager_pid=os.getpid() if self.running else None,
            updated_at=datetime.now(timezone.utc),
            relay=RelaySnapshot(
                running=self.relay_up,
                pid=relay.pid,
                started_by_us=relay.started_by_us,
                restart_attempts=self.relay_restart_attempts,
                paused=self.paused,
            ),
            streams=[s.snapshot() for s in list(self.supervisors.values())],
        )

    def write_snapshot(self) -> Snapshot:
        snapshot = self.status()
        try:
            write_json(self.settings.snapshot_path, snapshot.model_dump(mode="json"))
        except OSError as e:
            logger.warning(f"Could not write status snapshot {self.settings.snapshot_path}: {e}")
        return snapshot

    # ------------------------------------------------------------------
    # Stop / Restart
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Stop every pipeline, the relay if we started it, and release the lock.

        Idempotent and safe to call from cleanup paths.
        """
        if self.supervisors:
            logger.info(f"Stopping {len(self.supervisors)} stream(s)")
        for supervisor in self.supervisors.values():
            try:
                supervisor.stop()
            except OSError as e:
                logger.error(f"[{supervisor.name}] Stop failed: {e}")

        if self.relay.started_by_us:
            try:
                self.relay.stop()
                self.relay_up = False
            except OSError as e:
                logger.error(f"Relay stop failed: {e}")

        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

        if self._lock_handle is not None:
            handle, self._lock_handle = self._lock_handle, None
            # Final snapshot reports no manager so status readers see the stop
            self.write_snapshot()
            self.lock.release(handle)
            logger.info("Stream manager stopped")

    def restart(self) -> Snapshot:
        """Full stop followed by start. Restart counters start from zero."""
        logger.info("Restarting stream manager")
        self.stop()
        self.supervisors.clear()
        self.combined = None
        self.fallback_active = False
        return self.start()


# ============================================================================
# Out-of-process control (CLI)
# ============================================================================

def read_snapshot(settings: Settings) -> Snapshot | None:
    """Last snapshot written by a running (or stopped) instance."""
    data = read_json(settings.snapshot_path)
    if data is None:
        return None
    try:
        return Snapshot.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Ignoring invalid status snapshot: {e}")
        return None


def stop_running_instance(
    settings: Settings,
    timeout: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Ask the running orchestrator to shut down and wait for it.

    Returns:
        True if an instance was running and has exited
    """
    lock = LockManager(settings.lock_path)
    pid = lock.read_holder()
    if pid is None:
        logger.info("No running stream manager")
        return False

    logger.info(f"Sending SIGTERM to stream manager pid {pid}")
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return True

    deadline = clock() + timeout
    while pid_alive(pid):
        if clock() >= deadline:
            logger.warning(f"Stream manager pid {pid} did not exit within {timeout:.0f}s, sending SIGKILL")
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            force_cleanup(settings)
            break
        sleep(STOP_POLL_INTERVAL)
    return True


def force_cleanup(settings: Settings) -> int:
    """Kill every recorded pipeline and relay and remove their state files.

    Used after a manager was killed without running its own cleanup.

    Returns:
        Number of process groups terminated
    """
    killed = 0
    grace = settings.supervisor.stop_grace
    for path in sorted(settings.liveness_dir.glob("*.pid")):
        pid = read_live_pid(path)
        handle = adopt(pid) if pid is not None else None
        if handle is not None:
            logger.warning(f"Terminating pipeline {path.stem} (pid {pid})")
            terminate_group(handle, grace, label=path.stem)
            killed += 1
        remove(path)

    relay_pid = read_live_pid(settings.relay_pid_path)
    handle = adopt(relay_pid) if relay_pid is not None else None
    if handle is not None:
        logger.warning(f"Terminating relay (pid {relay_pid})")
        terminate_group(handle, settings.relay.stop_grace, label="relay")
        killed += 1
    remove(settings.relay_pid_path)

    lock_marker = settings.lock_path.with_name(settings.lock_path.name + ".pid")
    holder = read_pid(lock_marker)
    if holder is not None and not pid_alive(holder):
        remove(lock_marker)
    return killed
