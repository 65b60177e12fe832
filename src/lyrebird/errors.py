"""Domain exceptions and process exit codes.

Every fatal condition maps to a distinct exit code so that service managers
and operators can tell a lock conflict from a missing binary without reading
logs.

Error Categories:
    - Transient: NoDevicesFound, DiscoveryUnavailable (retried next cycle)
    - Fatal: AlreadyRunning, LockTimeout, RelayUnreachable,
      PrerequisiteMissing, ConfigError, CriticalResource
"""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit codes for the command-line interface."""

    OK = 0
    GENERAL = 1
    CRITICAL_RESOURCE = 2
    PREREQUISITE_MISSING = 3
    CONFIG_ERROR = 4
    LOCK_FAILED = 5
    NO_DEVICES = 6
    RELAY_UNREACHABLE = 7


class LyrebirdError(Exception):
    """Base class for all stream manager errors."""

    exit_code: ExitCode = ExitCode.GENERAL


class PrerequisiteMissing(LyrebirdError):
    """A required external binary or directory is unavailable."""

    exit_code = ExitCode.PREREQUISITE_MISSING


class ConfigError(LyrebirdError):
    """Configuration file could not be parsed or validated."""

    exit_code = ExitCode.CONFIG_ERROR


class AlreadyRunning(LyrebirdError):
    """Another live orchestrator instance holds the lock."""

    exit_code = ExitCode.LOCK_FAILED

    def __init__(self, pid: int | None) -> None:
        self.pid = pid
        holder = f"pid {pid}" if pid else "unknown pid"
        super().__init__(f"Stream manager already running ({holder})")


class LockTimeout(LyrebirdError):
    """Lock could not be acquired before the deadline."""

    exit_code = ExitCode.LOCK_FAILED


class NoDevicesFound(LyrebirdError):
    """Discovery pass completed but no usable capture device was found."""

    exit_code = ExitCode.NO_DEVICES


class DiscoveryUnavailable(LyrebirdError):
    """The device registry could not be read at all."""

    exit_code = ExitCode.NO_DEVICES


class RelayUnreachable(LyrebirdError):
    """Relay server could not be started or restarted within its budget."""

    exit_code = ExitCode.RELAY_UNREACHABLE


class CriticalResource(LyrebirdError):
    """A supervised process crossed a critical resource threshold."""

    exit_code = ExitCode.CRITICAL_RESOURCE
