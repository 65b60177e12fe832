"""Resource usage checks for the relay and pipeline processes.

Measures open file descriptors, CPU and resident memory with psutil and
classifies each sample against warning/critical thresholds. A leaking relay
(FDs climbing with every reconnecting publisher) is the classic failure this
catches before the kernel does.

Levels:
    ok       - below warning thresholds
    warning  - logged, nothing else
    critical - logged; the orchestrator restarts a critical relay, and
               `lyrebird monitor` exits with CRITICAL_RESOURCE

Logging Strategy:
    DEBUG - Every sample
    WARN  - Warning thresholds
    ERROR - Critical thresholds
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Final

import psutil
from pydantic import BaseModel, Field

from .. import metrics

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

CPU_SAMPLE_INTERVAL: Final[float] = 0.5
"""Seconds psutil measures CPU over for a single sample."""

# ============================================================================
# Models
# ============================================================================

class ResourceLevel(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


class ResourceUsage(BaseModel):
    """One resource sample for one process."""

    label: str
    pid: int
    open_fds: int | None = None
    cpu_percent: float | None = None
    memory_bytes: int | None = None
    threads: int | None = None
    level: ResourceLevel = ResourceLevel.OK
    reasons: list[str] = Field(default_factory=list)


# ============================================================================
# Resource Monitor
# ============================================================================

class ResourceMonitor:
    """Sample and classify process resource usage.

    Args:
        fd_warning / fd_critical: Open descriptor thresholds
        cpu_warning / cpu_critical: CPU percent thresholds
        cpu_interval: Seconds per CPU sample (0 for a non-blocking reading
            relative to the previous call)
    """

    def __init__(
        self,
        fd_warning: int = 500,
        fd_critical: int = 1000,
        cpu_warning: float = 20.0,
        cpu_critical: float = 40.0,
        cpu_interval: float = CPU_SAMPLE_INTERVAL,
    ) -> None:
        self.fd_warning = fd_warning
        self.fd_critical = fd_critical
        self.cpu_warning = cpu_warning
        self.cpu_critical = cpu_critical
        self.cpu_interval = cpu_interval

    def sample(self, label: str, pid: int) -> ResourceUsage | None:
        """Measure one process. Returns None if it has gone away."""
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                memory = proc.memory_info().rss
                threads = proc.num_threads()
                try:
                    fds: int | None = proc.num_fds()
                except (psutil.AccessDenied, AttributeError):
                    fds = None
            cpu = proc.cpu_percent(interval=self.cpu_interval)
        except psutil.NoSuchProcess:
            logger.debug(f"{label}: pid {pid} gone before sampling")
            return None
        except psutil.AccessDenied as e:
            logger.debug(f"{label}: access denied sampling pid {pid}: {e}")
            return ResourceUsage(label=label, pid=pid)

        usage = ResourceUsage(
            label=label,
            pid=pid,
            open_fds=fds,
            cpu_percent=cpu,
            memory_bytes=memory,
            threads=threads,
        )
        self.classify(usage)
        self._record(usage)
        return usage

    def classify(self, usage: ResourceUsage) -> ResourceLevel:
        """Set usage.level/reasons from the thresholds."""
        level = ResourceLevel.OK
        reasons: list[str] = []

        if usage.open_fds is not None:
            if usage.open_fds > self.fd_critical:
                level = ResourceLevel.CRITICAL
                reasons.append(f"open FDs {usage.open_fds} > {self.fd_critical}")
            elif usage.open_fds > self.fd_warning:
                level = ResourceLevel.WARNING
                reasons.append(f"open FDs {usage.open_fds} > {self.fd_warning}")

        if usage.cpu_percent is not None:
            if usage.cpu_percent > self.cpu_critical:
                level = ResourceLevel.CRITICAL
                reasons.append(f"CPU {usage.cpu_percent:.1f}% > {self.cpu_critical:.0f}%")
            elif usage.cpu_percent > self.cpu_warning:
                if level == ResourceLevel.OK:
                    level = ResourceLevel.WARNING
                reasons.append(f"CPU {usage.cpu_percent:.1f}% > {self.cpu_warning:.0f}%")

        usage.level = level
        usage.reasons = reasons
        return level

    def _record(self, usage: ResourceUsage) -> None:
        if usage.open_fds is not None:
            metrics.process_open_fds.labels(process=usage.label).set(usage.open_fds)
        if usage.cpu_percent is not None:
            metrics.process_cpu_percent.labels(process=usage.label).set(usage.cpu_percent)
        if usage.memory_bytes is not None:
            metrics.process_memory_bytes.labels(process=usage.label).set(usage.memory_bytes)

        logger.debug(
            f"{usage.label} pid {usage.pid}: fds={usage.open_fds} cpu={usage.cpu_percent}% "
            f"rss={usage.memory_bytes} threads={usage.threads}"
        )
        if usage.level == ResourceLevel.CRITICAL:
            logger.error(f"{usage.label} critical resource usage: {'; '.join(usage.reasons)}")
        elif usage.level == ResourceLevel.WARNING:
            logger.warning(f"{usage.label} high resource usage: {'; '.join(usage.reasons)}")

    def check(self, processes: dict[str, int]) -> list[ResourceUsage]:
        """Sample every labelled pid; vanished processes are skipped."""
        results = []
        for label, pid in processes.items():
            usage = self.sample(label, pid)
            if usage is not None:
                results.append(usage)
        return results
