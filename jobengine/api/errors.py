from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from jobengine.runtime.errors import (
    InvalidTransitionError,
    JobConflictError,
    JobEngineError,
    JobNotCancellableError,
    JobNotFoundError,
)


logger = logging.getLogger(__name__)


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None


def error_response(*, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=int(status_code), content=payload)


def job_api_error(exc: JobEngineError) -> APIError:
    """Translate a job store failure into the HTTP envelope."""
    if isinstance(exc, JobNotFoundError):
        return APIError(status_code=404, code="not_found", message="Job not found.")
    if isinstance(exc, JobConflictError):
        return APIError(status_code=409, code="conflict", message=str(exc), details={"kind": exc.kind})
    if isinstance(exc, JobNotCancellableError):
        return APIError(status_code=409, code="conflict", message=str(exc), details={"status": exc.status})
    if isinstance(exc, InvalidTransitionError):
        # Moving back to pending only happens through a retry.
        message = "Only failed jobs can be retried." if exc.target == "pending" else str(exc)
        return APIError(status_code=409, code="conflict", message=message, details={"status": exc.status})
    return APIError(status_code=500, code="internal", message=str(exc), details={"type": type(exc).__name__})


async def api_error_handler(_req: Request, exc: APIError) -> JSONResponse:
    return error_response(
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


async def job_error_handler(req: Request, exc: JobEngineError) -> JSONResponse:
    err = job_api_error(exc)
    if err.status_code >= 500:
        logger.error("job engine error on %s %s: %s", req.method, req.url.path, exc)
    return await api_error_handler(req, err)


async def rate_limit_exceeded_handler(req: Request, exc: RateLimitExceeded) -> JSONResponse:
    client = req.client.host if req.client else "?"
    logger.warning("rate limit %s exceeded by %s on %s", exc.detail, client, req.url.path)
    return error_response(
        status_code=429,
        code="rate_limited",
        message="Too many execution requests.",
        details={"limit": str(exc.detail)},
    )


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        status_code=400,
        code="invalid_argument",
        message="Request validation failed.",
        details={"errors": exc.errors()},
    )


async def unhandled_error_handler(req: Request, exc: Exception) -> JSONResponse:
    # Details stay in server logs and the job audit trail.
    logger.exception("unhandled error on %s %s", req.method, req.url.path)
    return error_response(
        status_code=500,
        code="internal",
        message="Internal server error.",
        details={"type": type(exc).__name__},
    )
