"""Command-line interface for the LyreBird stream manager.

Commands:
    start       Run the orchestrator in the foreground until SIGTERM/SIGINT
    stop        Ask the running instance to shut down and wait for it
    restart     stop, then start
    status      Show the last snapshot of the running instance
    force-stop  SIGKILL the running instance and clean up its processes
    config      Print effective settings and per-device overrides
    devices     List capture devices and their stream names
    monitor     Report relay and pipeline resource usage
    serve       Run the HTTP status API

Exit Codes:
    0 OK, 1 general, 2 critical resource, 3 prerequisite missing,
    4 config error, 5 lock contention, 6 no devices, 7 relay unreachable

Logging Strategy:
    Logs go to stderr (and LOG_FILE if set); command output goes to stdout.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Callable

from . import __version__
from .config_io import dump_settings, load_settings, resolve_stream_config
from .errors import CriticalResource, ExitCode, LyrebirdError, NoDevicesFound
from .lock_manager import LockManager
from .logging_config import configure_logging
from .models.settings import Settings
from .models.stream import Snapshot, StreamState
from .services import container
from .services.identity import DeviceDiscovery, IdentityResolver
from .services.orchestrator import Orchestrator, force_cleanup, read_snapshot, stop_running_instance
from .services.resources import ResourceLevel, ResourceMonitor
from .state_store import read_live_pid

logger = logging.getLogger(__name__)

# ============================================================================
# start / stop / restart
# ============================================================================

def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _handler(signum: int, frame) -> None:
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)


def cmd_start(args: argparse.Namespace, settings: Settings) -> int:
    stop_event = threading.Event()
    _install_signal_handlers(stop_event)

    orchestrator = Orchestrator(settings)
    server = None
    try:
        orchestrator.start()
        if settings.api.enabled:
            from .main import run_api_in_thread

            container.status_source = orchestrator
            server, _ = run_api_in_thread(settings.api.host, settings.api.port)
        orchestrator.run(stop_event)
    finally:
        if server is not None:
            server.should_exit = True
        orchestrator.stop()
    return ExitCode.OK


def cmd_stop(args: argparse.Namespace, settings: Settings) -> int:
    if stop_running_instance(settings, timeout=args.timeout):
        print("Stream manager stopped")
    else:
        print("Stream manager is not running")
    return ExitCode.OK


def cmd_restart(args: argparse.Namespace, settings: Settings) -> int:
    stop_running_instance(settings, timeout=args.timeout)
    return cmd_start(args, settings)


def cmd_force_stop(args: argparse.Namespace, settings: Settings) -> int:
    pid = LockManager(settings.lock_path).read_holder()
    if pid is not None:
        logger.warning(f"Killing stream manager pid {pid}")
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    killed = force_cleanup(settings)
    print(f"Force-stopped: manager {'pid ' + str(pid) if pid else 'not running'}, {killed} process group(s) terminated")
    return ExitCode.OK


# ============================================================================
# status / config / devices / monitor
# ============================================================================

def format_snapshot(snapshot: Snapshot) -> str:
    lines = []
    if snapshot.manager_pid:
        lines.append(f"Stream manager: running (pid {snapshot.manager_pid})")
    else:
        lines.append("Stream manager: not running")
    relay = snapshot.relay
    relay_state = "running" if relay.running else "down"
    if relay.paused:
        relay_state += f", supervision paused (restart attempts {relay.restart_attempts})"
    owner = "managed" if relay.started_by_us else "external"
    lines.append(f"Relay: {relay_state} (pid {relay.pid or '-'}, {owner})")
    lines.append(f"Updated: {snapshot.updated_at.isoformat(timespec='seconds')}")

    if not snapshot.streams:
        lines.append("No streams")
    for stream in snapshot.streams:
        state = "EXHAUSTED" if stream.exhausted else stream.state.value
        lines.append(
            f"  {stream.name:<24} {state:<10} pid={stream.pid or '-':<8} "
            f"restarts={stream.restart_count:<3} {stream.url}"
        )
        if stream.last_error and stream.state != StreamState.RUNNING:
            lines.append(f"  {'':<24} last error: {stream.last_error}")
    return "\n".join(lines)


def cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    holder = LockManager(settings.lock_path).read_holder()
    snapshot = read_snapshot(settings)
    if snapshot is None:
        snapshot = container.SnapshotReader(settings).status()
    if holder is None:
        snapshot.manager_pid = None
        # Without a manager only the liveness files tell the truth
        for stream in snapshot.streams:
            stream.pid = read_live_pid(settings.liveness_dir / f"{stream.name}.pid")
            if stream.pid is None:
                stream.state = StreamState.STOPPED

    if args.json:
        print(json.dumps(snapshot.model_dump(mode="json"), indent=2))
    else:
        print(format_snapshot(snapshot))
    return ExitCode.OK if holder is not None else ExitCode.GENERAL


def cmd_config(args: argparse.Namespace, settings: Settings) -> int:
    print(f"# {settings.paths.config_dir / 'lyrebird.yml'}")
    print(dump_settings(settings))
    mapping = IdentityResolver(settings.identity_map_path).load_map()
    print(f"# Streams ({settings.identity_map_path})")
    if not mapping:
        print("#   none yet")
    for uuid, name in sorted(mapping.items(), key=lambda item: item[1]):
        config = resolve_stream_config(settings.overrides_dir, name, settings.encoder.defaults, write_example=False)
        print(
            f"{name}: uuid={uuid} rate={config.sample_rate} channels={config.channels} "
            f"codec={config.codec} bitrate={config.bitrate} split={config.channel_split_mode}"
        )
    return ExitCode.OK


def cmd_devices(args: argparse.Namespace, settings: Settings) -> int:
    discovery = DeviceDiscovery(
        blacklist_path=settings.blacklist_path,
        include_non_usb=settings.discovery.include_non_usb,
        # Listing must not disturb devices already streaming
        probe_capture=False,
        unlock_busy=False,
        ffmpeg_binary=settings.encoder.binary,
    )
    resolver = IdentityResolver(settings.identity_map_path, known_devices=settings.discovery.known_devices)
    try:
        devices = discovery.discover()
    except NoDevicesFound as e:
        print(str(e))
        return ExitCode.NO_DEVICES

    mapping = resolver.load_map()
    for device in devices:
        uuid, persistent = resolver.compute_uuid(device)
        name = mapping.get(uuid)
        marker = ""
        if name is None:
            name = resolver.known_name(device) or resolver.generated_name(device)
            marker = " (new)"
        scope = "" if persistent else " [this boot only]"
        print(
            f"card {device.device_index} [{device.raw_name}] {device.description}\n"
            f"    uuid={uuid}{scope} usb={device.usb_id or '-'} port={device.physical_port_path or '-'}\n"
            f"    stream={name}{marker} url={settings.stream_url(name)}"
        )
    return ExitCode.OK


def cmd_monitor(args: argparse.Namespace, settings: Settings) -> int:
    health = settings.health
    monitor = ResourceMonitor(
        fd_warning=health.fd_warning,
        fd_critical=health.fd_critical,
        cpu_warning=health.cpu_warning,
        cpu_critical=health.cpu_critical,
    )
    processes: dict[str, int] = {}
    relay_pid = read_live_pid(settings.relay_pid_path)
    if relay_pid is not None:
        processes["relay"] = relay_pid
    for path in sorted(settings.liveness_dir.glob("*.pid")):
        pid = read_live_pid(path)
        if pid is not None:
            processes[path.stem] = pid

    if not processes:
        print("No running relay or pipelines")
        return ExitCode.OK

    usages = monitor.check(processes)
    for usage in usages:
        memory_mb = f"{usage.memory_bytes / (1024 * 1024):.1f}MB" if usage.memory_bytes is not None else "?"
        print(
            f"{usage.label:<24} pid={usage.pid:<8} fds={usage.open_fds if usage.open_fds is not None else '?':<6} "
            f"cpu={usage.cpu_percent if usage.cpu_percent is not None else '?'}% rss={memory_mb} "
            f"{usage.level.value.upper()}"
        )
        for reason in usage.reasons:
            print(f"    {reason}")
    critical = [u.label for u in usages if u.level == ResourceLevel.CRITICAL]
    if critical:
        raise CriticalResource(f"Critical resource usage: {', '.join(critical)}")
    return ExitCode.OK


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    from .main import run_api

    container.status_source = container.SnapshotReader(settings)
    run_api(args.host or settings.api.host, args.port or settings.api.port)
    return ExitCode.OK


# ============================================================================
# Entry point
# ============================================================================

COMMANDS: dict[str, Callable[[argparse.Namespace, Settings], int]] = {
    "start": cmd_start,
    "stop": cmd_stop,
    "restart": cmd_restart,
    "status": cmd_status,
    "force-stop": cmd_force_stop,
    "config": cmd_config,
    "devices": cmd_devices,
    "monitor": cmd_monitor,
    "serve": cmd_serve,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lyrebird",
        description="Supervise USB audio capture pipelines publishing to an RTSP relay.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config-dir", type=Path, help="Directory holding lyrebird.yml (default: $CONFIG_DIR)")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR (default: $LOG_LEVEL)")
    parser.add_argument("--log-file", help="Also log to this rotated file (default: $LOG_FILE)")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("start", help="Run the stream manager in the foreground")
    for name, help_text in (("stop", "Stop the running stream manager"), ("restart", "Restart the stream manager")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--timeout", type=float, default=30.0, help="Seconds to wait for shutdown")
    status = sub.add_parser("status", help="Show stream status")
    status.add_argument("--json", action="store_true", help="Print the raw snapshot")
    sub.add_parser("force-stop", help="Kill the stream manager and every process it started")
    sub.add_parser("config", help="Print effective configuration")
    sub.add_parser("devices", help="List capture devices and stream names")
    sub.add_parser("monitor", help="Report process resource usage")
    serve = sub.add_parser("serve", help="Run the HTTP status API")
    serve.add_argument("--host", help="Listen address (default: api.host)")
    serve.add_argument("--port", type=int, help="Listen port (default: api.port)")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_file)

    try:
        settings = load_settings(args.config_dir, create=args.command in ("start", "restart"))
        return int(COMMANDS[args.command](args, settings))
    except LyrebirdError as e:
        logger.error(str(e))
        return int(e.exit_code)
    except KeyboardInterrupt:
        return int(ExitCode.OK)


if __name__ == "__main__":
    sys.exit(main())
