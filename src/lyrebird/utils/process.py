"""Process-group ownership for supervised subprocesses.

Every pipeline and the relay server run in their own session (and therefore
their own process group), so that a shell wrapper and all of its children
can be signaled as a unit. All termination goes through terminate_group();
nothing is ever killed by name pattern.

Logging Strategy:
    DEBUG - Spawn details, signal delivery
    INFO  - Graceful exits
    WARN  - Escalation to SIGKILL
"""
from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Callable, Final

import psutil

from ..state_store import pid_alive

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

WAIT_POLL_INTERVAL: Final[float] = 0.1

# ============================================================================
# Process Handle
# ============================================================================

class ProcessHandle:
    """A spawned (or adopted) process group leader.

    ``popen`` is None for processes adopted from a liveness file written by
    a previous manager run; liveness is then checked by pid.
    """

    def __init__(self, pid: int, pgid: int, popen: subprocess.Popen | None = None) -> None:
        self.pid = pid
        self.pgid = pgid
        self.popen = popen

    def __repr__(self) -> str:
        return f"ProcessHandle(pid={self.pid}, pgid={self.pgid}, adopted={self.popen is None})"

    def is_alive(self) -> bool:
        if self.popen is not None:
            return self.popen.poll() is None
        return pid_alive(self.pid)

    def group_alive(self) -> bool:
        """True while any member of the process group survives."""
        if self.is_alive():
            return True
        try:
            os.killpg(self.pgid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    @property
    def returncode(self) -> int | None:
        return self.popen.returncode if self.popen is not None else None


def spawn_group(cmd: list[str], log_path: Path, env: dict[str, str] | None = None) -> ProcessHandle:
    """Start cmd in a new session with stdout/stderr appended to log_path.

    Raises:
        FileNotFoundError: Executable not found
        OSError: Spawn or log file failure
    """
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "ab") as log_handle:
        popen = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=log_handle,
            stderr=subprocess.STDOUT,
            start_new_session=True,
            close_fds=True,
            env=env,
        )
    logger.debug(f"Spawned pid {popen.pid}: {cmd[0]} (log {log_path})")
    # start_new_session makes the child its own group leader
    return ProcessHandle(pid=popen.pid, pgid=popen.pid, popen=popen)


def adopt(pid: int) -> ProcessHandle | None:
    """Build a handle for a live process we did not spawn in this run."""
    try:
        pgid = os.getpgid(pid)
    except ProcessLookupError:
        return None
    return ProcessHandle(pid=pid, pgid=pgid)


def process_cmdline(pid: int) -> list[str]:
    try:
        return psutil.Process(pid).cmdline()
    except psutil.Error:
        return []


def _signal_group(handle: ProcessHandle, sig: signal.Signals) -> None:
    try:
        if handle.pgid == os.getpgid(0):
            # Never signal our own group (adopted process sharing it)
            os.kill(handle.pid, sig)
        else:
            os.killpg(handle.pgid, sig)
        logger.debug(f"Sent {sig.name} to group {handle.pgid}")
    except ProcessLookupError:
        pass


def _wait_gone(
    handle: ProcessHandle,
    timeout: float,
    clock: Callable[[], float],
    sleep: Callable[[float], None],
) -> bool:
    deadline = clock() + timeout
    while handle.group_alive():
        if clock() >= deadline:
            return False
        sleep(WAIT_POLL_INTERVAL)
    return True


def terminate_group(
    handle: ProcessHandle,
    grace: float,
    label: str = "",
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """SIGTERM the group, wait up to ``grace``, then SIGKILL.

    Always reaps the direct child when we spawned it. Safe on a group that
    has already exited.
    """
    name = label or f"pid {handle.pid}"
    if handle.group_alive():
        _signal_group(handle, signal.SIGTERM)
        if _wait_gone(handle, grace, clock, sleep):
            logger.info(f"{name} exited after SIGTERM")
        else:
            logger.warning(f"{name} still alive after {grace:.0f}s, sending SIGKILL")
            _signal_group(handle, signal.SIGKILL)
            _wait_gone(handle, max(grace, 1.0), clock, sleep)

    if handle.popen is not None:
        try:
            handle.popen.wait(timeout=1.0)
        except subprocess.TimeoutExpired:
            logger.warning(f"{name} could not be reaped")
