"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes for the dispatch engine
    • Consistent JSON error response format
    • Automatic logging of unhandled errors

Only infrastructure faults (queue or store unavailable) and request
problems reach the submission caller. Delivery failures below the job
queue boundary are recovered by the worker pool and never surface here.

Usage:
    from backend.app.core.errors import NotFoundError, register_error_handlers

    raise NotFoundError("Campaign", id=42)
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class DispatchEngineError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(DispatchEngineError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(DispatchEngineError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class InvalidStateError(DispatchEngineError):
    """Operation not allowed in the resource's current status (409)."""

    def __init__(self, resource: str, status: str, action: str, **details: Any):
        super().__init__(
            message=f"Cannot {action} {resource} in status '{status}'",
            status_code=409,
            error_code="INVALID_STATE",
            details={"resource": resource, "status": status, "action": action, **details},
        )


class QueueUnavailableError(DispatchEngineError):
    """Job queue infrastructure fault (503). Caller must retry or fall back."""

    def __init__(self, message: str = "", **details: Any):
        super().__init__(
            message=f"Job queue unavailable: {message}",
            status_code=503,
            error_code="QUEUE_UNAVAILABLE",
            details=details,
        )


class StoreUnavailableError(DispatchEngineError):
    """Persistent store fault (503)."""

    def __init__(self, message: str = "", **details: Any):
        super().__init__(
            message=f"Persistent store unavailable: {message}",
            status_code=503,
            error_code="STORE_UNAVAILABLE",
            details=details,
        )


class UnknownChannelError(DispatchEngineError):
    """Channel value outside email/sms/in-app. Fatal for the job, never retried."""

    def __init__(self, channel: str):
        super().__init__(
            message=f"Unknown channel: {channel}",
            status_code=422,
            error_code="UNKNOWN_CHANNEL",
            details={"channel": channel},
        )
        self.channel = channel


class DeliveryError(DispatchEngineError):
    """A channel sender failed to deliver. Retryable within the job's policy."""

    def __init__(self, channel: str, message: str = "", **details: Any):
        super().__init__(
            message=message or f"Delivery via {channel} failed",
            status_code=502,
            error_code="DELIVERY_ERROR",
            details={"channel": channel, **details},
        )
        self.channel = channel


class LoggingError(DispatchEngineError):
    """Delivery log write failed. Never affects the delivery outcome."""

    def __init__(self, job_id: str, attempt: int, message: str = ""):
        super().__init__(
            message=f"Delivery log write failed for job {job_id} attempt {attempt}: {message}",
            status_code=500,
            error_code="LOGGING_ERROR",
            details={"job_id": job_id, "attempt": attempt},
        )
        self.job_id = job_id
        self.attempt = attempt


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(DispatchEngineError)
    async def handle_engine_error(request: Request, exc: DispatchEngineError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            level,
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _build_error_response(500, "INTERNAL_ERROR", message, request=request)
