"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Typed exceptions mirroring the callable error codes
      (unauthenticated / invalid-argument / not-found / permission-denied /
      internal)
    • Consistent JSON error response format
    • Automatic logging of unhandled errors

Usage:
    from backend.app.core.errors import NotFoundError, register_error_handlers

    raise NotFoundError("User", user_id="u1")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class AlertEngineError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "internal",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class UnauthenticatedError(AlertEngineError):
    """Caller identity missing (401)."""

    def __init__(self, message: str = "User must be authenticated"):
        super().__init__(message, status_code=401, error_code="unauthenticated")


class InvalidArgumentError(AlertEngineError):
    """Input validation failed (400)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message, status_code=400, error_code="invalid-argument", details=d,
        )


class NotFoundError(AlertEngineError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        super().__init__(
            f"{resource} not found",
            status_code=404,
            error_code="not-found",
            details={"resource": resource, **identifiers},
        )


class PermissionDeniedError(AlertEngineError):
    """Caller lacks the required role (403)."""

    def __init__(self, message: str = "Admin access required"):
        super().__init__(message, status_code=403, error_code="permission-denied")


class ExternalServiceError(AlertEngineError):
    """External API call failed (502)."""

    def __init__(self, service: str, message: str = "", **details: Any):
        super().__init__(
            f"External service '{service}' failed: {message}",
            status_code=502,
            error_code="external-service",
            details={"service": service, **details},
        )


class PushDeliveryError(AlertEngineError):
    """A single push send was rejected by the provider."""

    def __init__(self, message: str, *, status: Optional[int] = None,
                 provider_code: Optional[str] = None):
        super().__init__(
            message,
            status_code=502,
            error_code="push-delivery",
            details={"provider_status": status, "provider_code": provider_code},
        )
        self.provider_status = status
        self.provider_code = provider_code


class PipelineTimeoutError(AlertEngineError):
    """Notification pipeline exceeded its deadline."""

    def __init__(self, alert_id: str, timeout_seconds: float):
        super().__init__(
            f"Notification pipeline for alert {alert_id} exceeded "
            f"{timeout_seconds:.0f}s deadline",
            status_code=504,
            error_code="deadline-exceeded",
            details={"alert_id": alert_id, "timeout_seconds": timeout_seconds},
        )


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

    @app.exception_handler(AlertEngineError)
    async def handle_engine_error(request: Request, exc: AlertEngineError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log("API Error [%s]: %s | details=%s", exc.error_code, exc.message, exc.details)
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning("Request validation failed: %s", exc.errors())
        return _build_error_response(
            400, "invalid-argument", "Request validation failed",
            {"errors": jsonable_errors(exc)}, request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _build_error_response(500, "internal", message, request=request)


def jsonable_errors(exc: RequestValidationError) -> list:
    """Strip non-serialisable context from pydantic error entries."""
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
