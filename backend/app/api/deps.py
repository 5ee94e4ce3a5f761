"""
Shared FastAPI dependencies.

Long-lived components (gateways, reconciler, scheduler, limiters) are
built once in the application lifespan and parked on `app.state`; these
helpers hand them to route functions and turn a missing component into
a 503. Tests replace them through `app.dependency_overrides`.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request

from backend.app.alerts.channels.sms_gateway import SmsGateway
from backend.app.alerts.channels.voice_gateway import VoiceGateway
from backend.app.alerts.escalation import EscalationScheduler
from backend.app.alerts.rate_limiter import RateLimiter
from backend.app.alerts.webhooks import WebhookReconciler


def _from_state(request: Request, name: str, label: str) -> Any:
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(status_code=503, detail=f"{label} is not configured")
    return component


def get_sms_gateway(request: Request) -> SmsGateway:
    return _from_state(request, "sms_gateway", "SMS gateway")


def get_voice_gateway(request: Request) -> VoiceGateway:
    return _from_state(request, "voice_gateway", "Voice gateway")


def get_reconciler(request: Request) -> WebhookReconciler:
    return _from_state(request, "reconciler", "Webhook reconciler")


def get_scheduler(request: Request) -> EscalationScheduler:
    return _from_state(request, "scheduler", "Escalation scheduler")


def get_webhook_rate_limiter(request: Request) -> RateLimiter:
    return _from_state(request, "webhook_rate_limiter", "Webhook rate limiter")
