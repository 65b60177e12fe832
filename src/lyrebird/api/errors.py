"""Standardized error responses for the status API.

Error Response Format:
    {
        "code": "NOT_FOUND",
        "message": "Stream not found",
        "details": {"resource": "stream", "id": "blue_yeti"}
    }

Logging Strategy:
    DEBUG - Error creation
    INFO  - Client errors (4xx)
    WARN  - Validation errors, service unavailable
    ERROR - Server errors (5xx), unexpected exceptions
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[dict[str, Any]] = Field(None, description="Additional error details")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "code": "NOT_FOUND",
                    "message": "Stream not found",
                    "details": {"resource": "stream", "id": "blue_yeti"}
                }
            ]
        }
    }


class ErrorCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


def create_error_response(
    code: ErrorCode | str,
    message: str,
    details: Optional[dict[str, Any]] = None
) -> ErrorResponse:
    code_str = code.value if isinstance(code, ErrorCode) else code
    logger.debug(f"Creating error response: code={code_str}, message={message}")
    return ErrorResponse(code=code_str, message=message, details=details)


# ============================================================================
# Specialized Error Raisers
# ============================================================================

def raise_not_found(resource: str, resource_id: str) -> None:
    """Raise a standardized 404 error.

    Raises:
        HTTPException: 404 with ErrorResponse detail
    """
    logger.debug(f"Resource not found: {resource} with id={resource_id}")
    error = create_error_response(
        code=ErrorCode.NOT_FOUND,
        message=f"{resource.capitalize()} not found",
        details={"resource": resource, "id": resource_id}
    )
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=error.model_dump())


def raise_service_unavailable(
    message: str = "Service temporarily unavailable",
    details: Optional[dict[str, Any]] = None
) -> None:
    """Raise a standardized 503 error (no status source, manager down).

    Raises:
        HTTPException: 503 with ErrorResponse detail
    """
    logger.warning(f"Service unavailable: {message}, details={details}")
    error = create_error_response(code=ErrorCode.SERVICE_UNAVAILABLE, message=message, details=details)
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=error.model_dump())


# ============================================================================
# Global Exception Handlers
# ============================================================================

async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError
) -> JSONResponse:
    logger.warning(f"Validation failed: {request.method} {request.url.path} ({len(exc.errors())} error(s))")
    error = create_error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message="Request validation failed",
        details={"errors": exc.errors()}
    )
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=error.model_dump())


async def http_exception_handler(
    request: Request,
    exc: HTTPException
) -> JSONResponse:
    """Pass standardized details through, wrap anything else."""
    if exc.status_code >= 500:
        logger.error(f"Server error: {request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")
    else:
        logger.info(f"Client error: {request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")

    if isinstance(exc.detail, dict) and "code" in exc.detail:
        return JSONResponse(status_code=exc.status_code, content=exc.detail)

    code = ErrorCode.NOT_FOUND if exc.status_code == status.HTTP_404_NOT_FOUND else ErrorCode.INTERNAL_ERROR
    error = create_error_response(code=code, message=str(exc.detail) if exc.detail else "An error occurred")
    return JSONResponse(status_code=exc.status_code, content=error.model_dump())


async def general_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Log the full trace, return a generic 500."""
    logger.error(
        f"Unhandled exception: {request.method} {request.url.path} "
        f"-> {type(exc).__name__}: {exc}",
        exc_info=exc
    )
    error = create_error_response(code=ErrorCode.INTERNAL_ERROR, message="An internal server error occurred")
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=error.model_dump())
