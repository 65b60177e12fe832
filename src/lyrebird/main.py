"""FastAPI status API for LyreBird.

Read-only HTTP view of the stream manager: health, per-stream status and
Prometheus metrics. Pipeline lifecycle is never driven from here.

Deployment:
    - In-process: ``lyrebird start`` with ``api.enabled`` runs uvicorn in a
      daemon thread next to the health loop (status from live supervisors)
    - Standalone: ``lyrebird serve`` (status from status.json)

Endpoints:
    GET /health              healthy / degraded / unhealthy
    GET /health/live         process liveness
    GET /api/streams         all streams
    GET /api/streams/{name}  one stream
    GET /metrics             Prometheus text format

Logging Strategy:
    INFO  - API startup/shutdown, listen address
    DEBUG - Status source selection
    ERROR - Server thread failures
"""
from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI, Response
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .api import health, streams
from .api.errors import general_exception_handler, http_exception_handler, validation_exception_handler
from .api.middleware import RequestIDMiddleware
from .config_io import load_settings
from .metrics import get_metrics
from .services import container

logger = logging.getLogger(__name__)

# ============================================================================
# Application Lifespan
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Install a snapshot reader when no orchestrator registered itself."""
    if container.status_source is None:
        settings = load_settings()
        container.status_source = container.SnapshotReader(settings)
        logger.debug(f"Status API reading {settings.snapshot_path}")
    else:
        logger.debug(f"Status API using {type(container.status_source).__name__}")

    logger.info("Status API ready")
    yield
    logger.info("Status API shutting down")


# ============================================================================
# FastAPI Application
# ============================================================================

app = FastAPI(
    title="LyreBird",
    description="Status API for the USB audio to RTSP stream manager.",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url=None,
)

app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore
app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore
app.add_exception_handler(Exception, general_exception_handler)

app.add_middleware(RequestIDMiddleware)

app.include_router(health.router, tags=["health"])
app.include_router(streams.router, prefix="/api/streams", tags=["streams"])


@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    body, status_code, headers = get_metrics()
    return Response(content=body, status_code=status_code, headers=headers)


# ============================================================================
# Server
# ============================================================================

def build_server(host: str, port: int) -> uvicorn.Server:
    # log_config=None keeps uvicorn on our root handlers
    config = uvicorn.Config(app, host=host, port=port, log_config=None, access_log=False)
    return uvicorn.Server(config)


def run_api(host: str, port: int) -> None:
    """Serve in the foreground until interrupted."""
    logger.info(f"Status API listening on http://{host}:{port}")
    build_server(host, port).run()


def run_api_in_thread(host: str, port: int) -> tuple[uvicorn.Server, threading.Thread]:
    """Serve from a daemon thread; set ``server.should_exit`` to stop it."""
    server = build_server(host, port)

    def _serve() -> None:
        try:
            server.run()
        except (OSError, SystemExit) as e:
            logger.error(f"Status API stopped: {e}")

    thread = threading.Thread(target=_serve, name="status-api", daemon=True)
    thread.start()
    logger.info(f"Status API listening on http://{host}:{port}")
    return server, thread
