"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes for the alert core
    • Consistent JSON error response format
    • Automatic logging of unhandled errors

Propagation policy:
    Only RateLimitExceeded and ValidationError reach the caller of a send
    operation. Inside the escalation scheduler every per-alert failure is
    logged and the batch continues; inside the webhook reconciler every
    failure is logged and the provider still receives a 200.

Usage:
    from backend.app.core.errors import RateLimitExceeded, register_error_handlers

    raise ValidationError("Invalid phone number format", field="to")
"""

from __future__ import annotations

import logging
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class CareAlertError(Exception):
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


class ConfigurationError(CareAlertError):
    """Missing credentials or URLs (fatal at construction)."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            message=message,
            status_code=500,
            error_code="CONFIGURATION_ERROR",
            details=details,
        )


class ValidationError(CareAlertError):
    """Input rejected before any side effect (422)."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        error_code: str = "VALIDATION_ERROR",
        **details: Any,
    ):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code=error_code,
            details=d,
        )


class RateLimitExceeded(CareAlertError):
    """Per-identity quota exhausted for the current window (429)."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        reset_at: datetime,
        limit: int,
        current: Optional[int] = None,
        identity: Optional[str] = None,
        rate_limit_unavailable: bool = False,
    ):
        super().__init__(
            message=message,
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            details={
                "identity": identity,
                "limit": limit,
                "current": current,
                "reset_at": reset_at.isoformat(),
                "rate_limit_unavailable": rate_limit_unavailable,
            },
        )
        self.reset_at = reset_at
        self.limit = limit
        self.current = current


class ProviderError(CareAlertError):
    """Delivery provider rejected the request (502)."""

    error_code_default = "PROVIDER_ERROR"

    def __init__(
        self,
        channel: str,
        message: str = "Provider request failed",
        *,
        provider_code: Optional[int] = None,
        **details: Any,
    ):
        super().__init__(
            message=message,
            status_code=502,
            error_code=self.error_code_default,
            details={"channel": channel, "provider_code": provider_code, **details},
        )
        self.channel = channel
        self.provider_code = provider_code


class InvalidNumberError(ProviderError):
    """Provider reports the destination number as invalid."""

    error_code_default = "INVALID_PHONE_NUMBER"


class UnverifiedNumberError(ProviderError):
    """Destination is not verified on a trial/sandbox account."""

    error_code_default = "UNVERIFIED_NUMBER"


class OptedOutError(ProviderError):
    """Destination replied STOP and may not be messaged."""

    error_code_default = "OPTED_OUT"


class TransientProviderError(CareAlertError):
    """Network failure, provider outage or timeout (503)."""

    def __init__(self, channel: str, message: str = "Provider unavailable", **details: Any):
        super().__init__(
            message=message,
            status_code=503,
            error_code="PROVIDER_UNAVAILABLE",
            details={"channel": channel, **details},
        )
        self.channel = channel


class ConcurrencyConflict(CareAlertError):
    """Lost an optimistic-concurrency race (409)."""

    def __init__(self, resource: str, **identifiers: Any):
        super().__init__(
            message=f"{resource} was modified concurrently",
            status_code=409,
            error_code="CONCURRENCY_CONFLICT",
            details={"resource": resource, **identifiers},
        )


class PersistenceError(CareAlertError):
    """Storage failure (500)."""

    def __init__(self, operation: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Storage operation '{operation}' failed: {message}",
            status_code=500,
            error_code="PERSISTENCE_ERROR",
            details={"operation": operation, **details},
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

    @app.exception_handler(CareAlertError)
    async def handle_care_alert_error(request: Request, exc: CareAlertError):
        log_level = logging.WARNING if exc.status_code < 500 else logging.ERROR
        logger.log(
            log_level,
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        response = _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )
        if isinstance(exc, RateLimitExceeded):
            retry_after = max(0, int((exc.reset_at - datetime.now(exc.reset_at.tzinfo)).total_seconds()))
            response.headers["Retry-After"] = str(retry_after)
        return response

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _build_error_response(500, "INTERNAL_ERROR", message, request=request)
