"""
FastAPI route: Twilio status callbacks.

Provides endpoints to:
    POST /webhooks/twilio/voice/status  — call progress → alert state
    POST /webhooks/twilio/sms/status    — delivery receipts (logged)
    GET  /webhooks/health               — liveness for the provider

Signatures are checked against the externally visible URL
(TWILIO_WEBHOOK_BASE_URL + path + query) and the raw form parameters.
A missing or bad signature is a 401. Everything else is answered with
200 "OK" so the provider never retries on our internal failures.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from backend.app.alerts.channels.base import TwilioChannel
from backend.app.alerts.channels.sms_gateway import SmsGateway
from backend.app.alerts.channels.voice_gateway import VoiceGateway
from backend.app.alerts.rate_limiter import RateLimiter
from backend.app.alerts.webhooks import WebhookReconciler
from backend.app.api.deps import (
    get_reconciler,
    get_sms_gateway,
    get_voice_gateway,
    get_webhook_rate_limiter,
)
from backend.app.core.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "X-Twilio-Signature"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def enforce_webhook_rate_limit(
    request: Request,
    limiter: RateLimiter = Depends(get_webhook_rate_limiter),
) -> None:
    """Per-client-IP quota on callback traffic."""
    client_ip = request.client.host if request.client else "unknown"
    result = await limiter.check_and_increment(client_ip)
    if not result.allowed:
        logger.warning("Webhook rate limit exceeded for %s", client_ip)
        raise RateLimitExceeded(
            "Too many webhook requests",
            reset_at=result.reset_at,
            limit=result.limit,
            current=result.current,
            identity=client_ip,
            rate_limit_unavailable=result.rate_limit_unavailable,
        )


def _signed_url(request: Request, channel: TwilioChannel) -> str:
    url = channel.callback_url(request.url.path)
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


async def _check_signature(
    request: Request,
    channel: TwilioChannel,
    alert_id: Optional[str] = None,
) -> Tuple[Dict[str, str], Optional[str]]:
    """Form params plus a rejection reason (None when the signature is valid)."""
    form = await request.form()
    params = {key: str(value) for key, value in form.multi_items()}
    signature = request.headers.get(SIGNATURE_HEADER)

    if not signature:
        logger.warning(
            "Missing Twilio signature on %s", request.url.path,
            extra={"alert_id": alert_id, "endpoint": request.url.path},
        )
        return params, "Missing signature"
    if not channel.validate_signature(_signed_url(request, channel), params, signature):
        logger.warning(
            "Invalid Twilio signature on %s", request.url.path,
            extra={"alert_id": alert_id, "endpoint": request.url.path},
        )
        return params, "Invalid signature"
    return params, None


def _unauthorised(reason: str) -> JSONResponse:
    return JSONResponse(status_code=401, content={"error": reason})


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/health")
async def webhooks_health():
    return {"status": "ok"}


@router.post(
    "/twilio/voice/status",
    response_class=PlainTextResponse,
    dependencies=[Depends(enforce_webhook_rate_limit)],
    summary="Voice call status callback",
)
async def voice_status_callback(
    request: Request,
    alert_id: Optional[str] = Query(None, alias="alertId"),
    voice: VoiceGateway = Depends(get_voice_gateway),
    reconciler: WebhookReconciler = Depends(get_reconciler),
) -> Response:
    params, rejection = await _check_signature(request, voice, alert_id)
    if rejection:
        return _unauthorised(rejection)

    try:
        event = voice.parse_status_callback(params, alert_id=alert_id)
        await reconciler.handle(event)
    except Exception as e:
        logger.error(
            "Error processing voice status webhook: %s", e,
            exc_info=True, extra={"alert_id": alert_id},
        )
    return PlainTextResponse("OK")


@router.post(
    "/twilio/sms/status",
    response_class=PlainTextResponse,
    dependencies=[Depends(enforce_webhook_rate_limit)],
    summary="SMS delivery status callback",
)
async def sms_status_callback(
    request: Request,
    sms: SmsGateway = Depends(get_sms_gateway),
) -> Response:
    params, rejection = await _check_signature(request, sms)
    if rejection:
        return _unauthorised(rejection)

    try:
        sms.parse_status_callback(params)
    except Exception as e:
        logger.error("Error processing SMS status webhook: %s", e, exc_info=True)
    return PlainTextResponse("OK")
