"""Read-only stream status endpoints.

The API never starts or stops pipelines; lifecycle belongs to the
orchestrator's control loop and the CLI.

Logging Strategy:
    DEBUG - Listing calls
    INFO  - Unknown stream lookups (via error handler)
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from ..models.stream import StreamSnapshot
from ..services.container import StatusSource, get_status_source
from .errors import raise_not_found

logger = logging.getLogger(__name__)

router = APIRouter(tags=["streams"])


@router.get("", response_model=list[StreamSnapshot])
async def list_streams(source: StatusSource = Depends(get_status_source)) -> list[StreamSnapshot]:
    """Every supervised stream with its state and RTSP URL."""
    snapshot = source.status()
    logger.debug(f"Listing {len(snapshot.streams)} stream(s)")
    return snapshot.streams


@router.get("/{name}", response_model=StreamSnapshot)
async def get_stream(name: str, source: StatusSource = Depends(get_status_source)) -> StreamSnapshot:
    for stream in source.status().streams:
        if stream.name == name:
            return stream
    raise_not_found("stream", name)
