"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes for the alert lifecycle
    • Consistent JSON error response format
    • Automatic logging of unhandled errors

Propagation policy:
    ValidationError, NotFoundError, InvalidStateError and ForbiddenError
    propagate to the caller as the result of an operation.
    DeliveryError is raised by the transports and is always caught by the
    dispatcher, which turns it into a DeliveryRecord.

Usage:
    from backend.app.core.errors import NotFoundError, InvalidStateError

    raise NotFoundError("Alert", alert_id="ALR-3A7B0C12D4E5")
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

class SafeRideError(Exception):
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


class NotFoundError(SafeRideError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(SafeRideError):
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


class InvalidStateError(SafeRideError):
    """Operation not valid for the alert's current status (409)."""

    def __init__(self, alert_id: str, status: str, operation: str):
        super().__init__(
            message=f"Alert cannot be {operation} while {status}",
            status_code=409,
            error_code="INVALID_STATE",
            details={"alert_id": alert_id, "status": status, "operation": operation},
        )
        self.alert_id = alert_id
        self.status = status
        self.operation = operation


class AuthenticationError(SafeRideError):
    """Missing or unknown caller identity (401)."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="UNAUTHENTICATED",
        )


class ForbiddenError(SafeRideError):
    """Caller is not allowed to act on this resource (403)."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            message=message,
            status_code=403,
            error_code="FORBIDDEN",
            details=details,
        )


class DeliveryError(SafeRideError):
    """A push or SMS transport failed to deliver (502)."""

    def __init__(self, channel: str, message: str = "", **details: Any):
        super().__init__(
            message=f"{channel} delivery failed: {message}" if message else f"{channel} delivery failed",
            status_code=502,
            error_code="DELIVERY_ERROR",
            details={"channel": channel, **details},
        )
        self.channel = channel
        self.reason = message


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
        "success": False,
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        },
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(SafeRideError)
    async def handle_app_error(request: Request, exc: SafeRideError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
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
        return _build_error_response(
            500, "INTERNAL_ERROR", message, request=request,
        )
