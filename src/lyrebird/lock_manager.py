"""Single-instance lock for the orchestrator.

Advisory ``fcntl.flock`` on a lock file is the primary mechanism; the OS
drops it automatically when the holder dies. The holder's pid is also
written to an adjacent marker file (``<lock>.pid``) for diagnostics and for
``stop`` / ``status`` to find the running instance.

Stale Holder Recovery:
    If the lock is busy but the marker names a pid that is no longer alive
    (for example an orphaned child inherited the lock descriptor), the lock
    and marker files are removed and acquisition is retried exactly once.

Typed Results:
    acquire() returns Acquired(handle), HeldByOther(pid) or TimedOut(waited)
    instead of a boolean. acquire_or_raise() converts the failures into
    AlreadyRunning / LockTimeout for callers that prefer exceptions.

Logging Strategy:
    DEBUG - Acquisition attempts, release
    INFO  - Lock acquired
    WARN  - Stale lock recovery, contention
    ERROR - Lock file I/O failures
"""
from __future__ import annotations

import errno
import fcntl
import logging
import os
import time
from pathlib import Path
from typing import Callable, Final, Union

from pydantic import BaseModel

from .errors import AlreadyRunning, LockTimeout
from .state_store import pid_alive, read_pid, remove, write_pid

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

POLL_INTERVAL: Final[float] = 0.2
"""Seconds between non-blocking lock attempts."""

# ============================================================================
# Result Types
# ============================================================================

class LockHandle(BaseModel):
    """Proof of lock ownership."""

    held_pid: int
    lock_path: Path
    marker_path: Path


class Acquired(BaseModel):
    handle: LockHandle


class HeldByOther(BaseModel):
    pid: int | None = None


class TimedOut(BaseModel):
    waited: float


LockResult = Union[Acquired, HeldByOther, TimedOut]

# ============================================================================
# Lock Manager
# ============================================================================

class LockManager:
    """File-backed mutual exclusion: one orchestrator per host.

    Args:
        lock_path: Lock file path (marker is ``<lock_path>.pid``)
        clock: Monotonic clock (injectable for tests)
        sleep: Sleep function (injectable for tests)
    """

    def __init__(
        self,
        lock_path: Path,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.lock_path = Path(lock_path)
        self.marker_path = self.lock_path.with_name(self.lock_path.name + ".pid")
        self._clock = clock
        self._sleep = sleep
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def read_holder(self) -> int | None:
        """Return the pid of the live lock holder, if any."""
        pid = read_pid(self.marker_path)
        return pid if pid_alive(pid) else None

    def _try_lock(self) -> int | None:
        """One non-blocking attempt. Returns the locked fd or None if busy."""
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            os.close(fd)
            if e.errno in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                return None
            raise

        # The file may have been unlinked by stale recovery in another
        # process between open() and flock(); only the current inode counts.
        try:
            current = os.stat(self.lock_path).st_ino
        except FileNotFoundError:
            current = None
        if current != os.fstat(fd).st_ino:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            return None
        return fd

    def _clear_stale(self, pid: int) -> None:
        logger.warning(f"Clearing stale lock held by dead pid {pid}: {self.lock_path}")
        remove(self.lock_path)
        remove(self.marker_path)

    def acquire(self, timeout: float) -> LockResult:
        """Acquire the lock, waiting up to ``timeout`` seconds.

        Args:
            timeout: Maximum seconds to wait (0 for a single attempt)

        Returns:
            Acquired, HeldByOther or TimedOut
        """
        if self._fd is not None:
            logger.debug("Lock already held by this instance")
            return Acquired(handle=self._handle())

        start = self._clock()
        deadline = start + timeout
        stale_retry_used = False

        while True:
            try:
                fd = self._try_lock()
            except OSError as e:
                logger.error(f"Cannot open lock file {self.lock_path}: {e}")
                raise

            if fd is not None:
                previous = read_pid(self.marker_path)
                if previous and previous != os.getpid() and not pid_alive(previous):
                    logger.warning(f"Replacing stale lock marker from dead pid {previous}")
                self._fd = fd
                write_pid(self.marker_path, os.getpid())
                logger.info(f"Lock acquired: {self.lock_path} (pid {os.getpid()})")
                return Acquired(handle=self._handle())

            holder = read_pid(self.marker_path)
            if holder is not None and not pid_alive(holder) and not stale_retry_used:
                stale_retry_used = True
                self._clear_stale(holder)
                continue

            now = self._clock()
            if now >= deadline:
                waited = now - start
                if holder is not None and pid_alive(holder):
                    logger.warning(f"Lock held by running instance pid {holder}")
                    return HeldByOther(pid=holder)
                logger.warning(f"Timed out after {waited:.1f}s waiting for {self.lock_path}")
                return TimedOut(waited=waited)

            logger.debug(f"Lock busy (holder={holder}), retrying")
            self._sleep(min(POLL_INTERVAL, max(deadline - now, 0.0)))

    def acquire_or_raise(self, timeout: float) -> LockHandle:
        """Acquire the lock or raise.

        Raises:
            AlreadyRunning: Another live instance holds the lock
            LockTimeout: Lock not obtained before the deadline
        """
        result = self.acquire(timeout)
        if isinstance(result, Acquired):
            return result.handle
        if isinstance(result, HeldByOther):
            raise AlreadyRunning(result.pid)
        raise LockTimeout(
            f"Could not acquire {self.lock_path} within {result.waited:.0f}s"
        )

    def release(self, handle: LockHandle | None = None) -> None:
        """Release the lock. Safe to call repeatedly; never blocks."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None

        if read_pid(self.marker_path) == os.getpid():
            try:
                remove(self.marker_path)
            except OSError as e:
                logger.warning(f"Could not remove lock marker {self.marker_path}: {e}")
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug(f"Lock released: {self.lock_path}")

    def _handle(self) -> LockHandle:
        return LockHandle(
            held_pid=os.getpid(),
            lock_path=self.lock_path,
            marker_path=self.marker_path,
        )
