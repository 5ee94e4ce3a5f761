"""
Request middleware — correlation IDs, timing and one log line per request.

Provides:
    • X-Request-ID response header; provider callbacks reuse Twilio's
      I-Twilio-Idempotency-Token so retries of one callback share an id
    • X-Process-Time response header
    • Request context for downstream log enrichment, including the
      `alertId` query parameter carried by voice status callbacks
    • Log level by outcome: callbacks that succeed are DEBUG (providers
      send several per call), rejections WARNING, server errors ERROR
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
TWILIO_IDEMPOTENCY_HEADER = "I-Twilio-Idempotency-Token"
WEBHOOK_PREFIX = "/webhooks/"

_UNLOGGED_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")


def _build_context(request: Request) -> Dict[str, Any]:
    request_id = (
        request.headers.get(REQUEST_ID_HEADER)
        or request.headers.get(TWILIO_IDEMPOTENCY_HEADER)
        or uuid.uuid4().hex[:16]
    )
    context: Dict[str, Any] = {
        "request_id": request_id,
        "client_ip": request.client.host if request.client else "unknown",
        "endpoint": request.url.path,
        "method": request.method,
        "source": "provider" if request.url.path.startswith(WEBHOOK_PREFIX) else "api",
    }
    alert_id = request.query_params.get("alertId")
    if alert_id:
        context["alert_id"] = alert_id
    return context


def _level_for(context: Dict[str, Any], status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    if context["source"] == "provider":
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Attach a correlation id and timing to every request and log the outcome."""

    async def dispatch(self, request: Request, call_next) -> Response:
        context = _build_context(request)
        set_request_context(**context)
        path = context["endpoint"]
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "%s %s → unhandled error (%.1fms)",
                request.method, path, (time.perf_counter() - start) * 1000,
                extra={"status_code": 500, "endpoint": path, "alert_id": context.get("alert_id")},
            )
            set_request_context()
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers[REQUEST_ID_HEADER] = context["request_id"]
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        if not path.startswith(_UNLOGGED_PREFIXES):
            logger.log(
                _level_for(context, response.status_code),
                "%s %s → %d (%.1fms) [%s]",
                request.method, path, response.status_code,
                duration_ms, context["client_ip"],
                extra={
                    "duration_ms": duration_ms,
                    "status_code": response.status_code,
                    "endpoint": path,
                    "alert_id": context.get("alert_id"),
                },
            )

        set_request_context()
        return response
