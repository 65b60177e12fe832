"""Prometheus metrics for observability.

Provides metrics for:
- Relay server (up, restarts)
- Stream supervision (state, starts, restarts, verification outcomes)
- Discovery (devices found, failed passes)
- Health loop (tick duration)
- Process resources (FDs, CPU, memory)
- HTTP status API requests

Exposed by the status API at /metrics.

Logging Strategy:
    DEBUG - Module initialization
    ERROR - Metric generation failures
"""
from __future__ import annotations

import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from . import __version__

logger = logging.getLogger(__name__)

# ============================================================================
# Application Info
# ============================================================================

app_info = Info("lyrebird_app", "Application information")
app_info.info({
    "version": __version__,
    "name": "LyreBird",
    "description": "USB audio capture to RTSP relay stream manager"
})

# ============================================================================
# Relay Metrics
# ============================================================================

relay_up = Gauge("lyrebird_relay_up", "Relay server reachable (1) or down (0)")
relay_restarts_total = Counter("lyrebird_relay_restarts_total", "Relay restart attempts", ["status"])

# ============================================================================
# Stream Metrics
# ============================================================================

STREAM_STATES = ("stopped", "starting", "verifying", "running", "failed", "cooldown")

stream_state = Gauge(
    "lyrebird_stream_state",
    "Current supervisor state (1 for the active state)",
    ["stream", "state"]
)

stream_starts_total = Counter("lyrebird_stream_starts_total", "Pipeline spawns", ["stream"])

stream_restarts_total = Counter(
    "lyrebird_stream_restarts_total",
    "Pipeline restarts scheduled",
    ["stream", "reason"]  # exited, verify_failed
)

stream_verifications_total = Counter(
    "lyrebird_stream_verifications_total",
    "Startup verification outcomes",
    ["stream", "outcome"]  # confirmed, assumed_healthy, failed
)

streams_exhausted = Gauge("lyrebird_streams_exhausted", "Streams stopped after exhausting restarts")
streams_running = Gauge("lyrebird_streams_running", "Streams in running state")

# ============================================================================
# Discovery & Health Loop Metrics
# ============================================================================

discovery_devices = Gauge("lyrebird_discovery_devices", "Devices found by the last discovery pass")
discovery_failures_total = Counter("lyrebird_discovery_failures_total", "Failed discovery passes", ["reason"])

health_tick_duration_seconds = Histogram(
    "lyrebird_health_tick_duration_seconds",
    "Health loop tick duration",
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 60.0)
)

# ============================================================================
# Process Resource Metrics
# ============================================================================

process_open_fds = Gauge("lyrebird_process_open_fds", "Open file descriptors", ["process"])
process_cpu_percent = Gauge("lyrebird_process_cpu_percent", "CPU usage percent", ["process"])
process_memory_bytes = Gauge("lyrebird_process_memory_bytes", "Resident memory", ["process"])

# ============================================================================
# HTTP Request Metrics
# ============================================================================

http_requests_total = Counter(
    "lyrebird_http_requests_total",
    "Status API requests",
    ["method", "endpoint", "status"]
)

# ============================================================================
# Metrics Export
# ============================================================================

def get_metrics() -> tuple[bytes, int, dict[str, str]]:
    """Generate Prometheus metrics in text format.

    Returns:
        (body, status_code, headers) for a FastAPI Response
    """
    try:
        return (generate_latest(REGISTRY), 200, {"Content-Type": CONTENT_TYPE_LATEST})
    except Exception as e:
        logger.error(f"Metrics generation failed: {e}", exc_info=True)
        return (b"# Error\n", 500, {"Content-Type": "text/plain"})


# ============================================================================
# Helper Functions
# ============================================================================

def set_stream_state(stream: str, state: str) -> None:
    """Set the one-hot state gauge for a stream."""
    for candidate in STREAM_STATES:
        stream_state.labels(stream=stream, state=candidate).set(1 if candidate == state else 0)


def update_stream_counts(running: int, exhausted: int) -> None:
    streams_running.set(running)
    streams_exhausted.set(exhausted)


def set_relay_up(up: bool) -> None:
    relay_up.set(1 if up else 0)


def track_http_request(method: str, endpoint: str, status_code: int) -> None:
    http_requests_total.labels(method=method, endpoint=endpoint, status=str(status_code)).inc()


logger.debug("Prometheus metrics initialized")
