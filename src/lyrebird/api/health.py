"""Health check endpoints.

Health Status Levels:
    - healthy: Relay up and every stream running (or no streams yet)
    - degraded: Relay up, some streams restarting or exhausted
    - unhealthy: Relay down, supervision paused, or manager not running (503)

Logging Strategy:
    DEBUG - Health check calls
    WARN  - Degraded/unhealthy results

Usage:
    >>> GET /health
    {
        "status": "degraded",
        "manager_pid": 4242,
        "relay": {"running": true, "paused": false, ...},
        "metrics": {"total": 2, "running": 1, "exhausted": 1},
        "errors": ["blue_yeti: restart budget exhausted (exited with code 1)"]
    }

    >>> GET /health/live
    {"status": "alive"}
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal

from fastapi import APIRouter, Depends, status

from ..models.stream import Snapshot, StreamState
from ..services.container import StatusSource, get_status_source
from .errors import raise_service_unavailable

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

HealthStatus = Literal["healthy", "degraded", "unhealthy"]
ProbeStatus = Literal["alive"]


def calculate_health_status(snapshot: Snapshot) -> tuple[HealthStatus, List[str]]:
    """Classify a snapshot.

    Returns:
        (overall_status, error_messages)
    """
    errors: List[str] = []

    if snapshot.manager_pid is None:
        errors.append("stream manager is not running")
    if not snapshot.relay.running:
        errors.append("relay is not running")
    if snapshot.relay.paused:
        errors.append("pipeline supervision paused while relay recovers")
    if errors:
        return "unhealthy", errors

    for stream in snapshot.streams:
        if stream.exhausted:
            errors.append(f"{stream.name}: restart budget exhausted ({stream.last_error or 'unknown error'})")
        elif stream.state != StreamState.RUNNING:
            errors.append(f"{stream.name}: {stream.state.value}")

    return ("degraded", errors) if errors else ("healthy", [])


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(source: StatusSource = Depends(get_status_source)) -> Dict[str, Any]:
    """Overall status with per-stream counts and error messages.

    Raises:
        HTTPException 503: Manager not running or relay down
    """
    logger.debug("Processing health check")
    snapshot = source.status()
    overall_status, errors = calculate_health_status(snapshot)

    response: Dict[str, Any] = {
        "status": overall_status,
        "manager_pid": snapshot.manager_pid,
        "updated_at": snapshot.updated_at.isoformat(),
        "relay": snapshot.relay.model_dump(),
        "metrics": {
            "total": len(snapshot.streams),
            "running": sum(1 for s in snapshot.streams if s.state == StreamState.RUNNING),
            "exhausted": sum(1 for s in snapshot.streams if s.exhausted),
        },
    }
    if errors:
        response["errors"] = errors
        logger.warning(f"Health check: {overall_status} - {'; '.join(errors)}")
    if overall_status == "unhealthy":
        raise_service_unavailable("Stream manager unhealthy", details=response)
    return response


@router.get("/health/live", status_code=status.HTTP_200_OK)
async def liveness_check() -> Dict[str, ProbeStatus]:
    """Process liveness only; no dependency checks."""
    logger.debug("Liveness check called")
    return {"status": "alive"}
