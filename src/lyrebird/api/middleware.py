"""Request ID and request metrics middleware.

Assigns a UUID4 request ID (or accepts X-Request-ID from the client),
echoes it on the response and counts every request in
``lyrebird_http_requests_total``.

Logging Strategy:
    DEBUG - Successful requests with duration (status polling is frequent)
    WARN  - Client errors (4xx)
    ERROR - Server errors (5xx), unhandled exceptions
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..metrics import track_http_request

logger = logging.getLogger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag each request with an ID, log it and record it in metrics.

    Args:
        app: ASGI application
        header_name: HTTP header carrying the request ID
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID") -> None:
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get(self.header_name) or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.monotonic()

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.monotonic() - start_time) * 1000
            logger.error(
                f"Request {request_id} failed after {duration_ms:.2f}ms: {type(e).__name__}: {e}",
                exc_info=True,
                extra={"request_id": request_id}
            )
            track_http_request(request.method, request.url.path, 500)
            raise

        response.headers[self.header_name] = request_id
        duration_ms = (time.monotonic() - start_time) * 1000
        status_code = response.status_code
        if status_code >= 500:
            log_level = logging.ERROR
        elif status_code >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.DEBUG
        logger.log(
            log_level,
            f"{request.method} {request.url.path} {status_code} ({duration_ms:.2f}ms)",
            extra={"request_id": request_id, "status_code": status_code}
        )
        track_http_request(request.method, request.url.path, status_code)
        return response
