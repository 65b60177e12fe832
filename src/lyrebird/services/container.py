"""Service container for the status API.

Holds the status source the API reads from, so the route modules never
import the orchestrator or the CLI directly.

Status Sources:
    - In-process: the running Orchestrator (``lyrebird start`` with
      ``api.enabled``) answers status() from live supervisors
    - Standalone: ``lyrebird serve`` installs a SnapshotReader that answers
      from the ``status.json`` written each health-loop tick

Logging Strategy:
    DEBUG - Source injection
    ERROR - Source not initialized
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Protocol

from ..models.settings import Settings
from ..models.stream import RelaySnapshot, Snapshot
from ..state_store import pid_alive
from .orchestrator import read_snapshot

logger = logging.getLogger(__name__)


class StatusSource(Protocol):
    def status(self) -> Snapshot: ...


class SnapshotReader:
    """Status from the snapshot file of another (or no) running instance."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def status(self) -> Snapshot:
        snapshot = read_snapshot(self.settings)
        if snapshot is None:
            return Snapshot(updated_at=datetime.now(timezone.utc), relay=RelaySnapshot(running=False))
        if not pid_alive(snapshot.manager_pid):
            # Manager gone: the recorded pipelines are no longer supervised
            snapshot.manager_pid = None
        return snapshot


# ============================================================================
# Global Singleton Instance
# ============================================================================

status_source: StatusSource | None = None
"""Orchestrator or SnapshotReader installed at startup."""


def get_status_source() -> StatusSource:
    """FastAPI dependency returning the installed status source.

    Raises:
        RuntimeError: If called before startup installed a source
    """
    if status_source is None:
        logger.error("Status source requested before initialization")
        raise RuntimeError("Status source not initialized. Application startup may have failed.")
    logger.debug("Injecting status source")
    return status_source
