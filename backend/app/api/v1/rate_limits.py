"""
FastAPI route: SMS quota administration.

Provides endpoints to:
    GET    /api/v1/rate-limits/sms/{identity}  — messages sent this window
    DELETE /api/v1/rate-limits/sms/{identity}  — clear the counter
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from backend.app.alerts.channels.sms_gateway import SmsGateway
from backend.app.api.deps import get_sms_gateway

router = APIRouter(prefix="/api/v1/rate-limits", tags=["rate-limits"])


class SmsQuotaResponse(BaseModel):
    identity: str
    count: int = Field(..., ge=0, description="Messages counted in the current window")
    limit: int
    remaining: int = Field(..., ge=0)
    window_seconds: float
    backend: str = Field(..., description="redis | memory")


class SmsQuotaResetResponse(BaseModel):
    identity: str
    reset: bool = True


@router.get("/sms/{identity}", response_model=SmsQuotaResponse)
async def get_sms_quota(identity: str, sms: SmsGateway = Depends(get_sms_gateway)):
    count = await sms.get_sms_count(identity)
    limiter = sms.rate_limiter
    return SmsQuotaResponse(
        identity=identity,
        count=count,
        limit=limiter.limit,
        remaining=max(limiter.limit - count, 0),
        window_seconds=limiter.window.total_seconds(),
        backend=limiter.backend,
    )


@router.delete("/sms/{identity}", response_model=SmsQuotaResetResponse)
async def reset_sms_quota(identity: str, sms: SmsGateway = Depends(get_sms_gateway)):
    await sms.reset_rate_limit(identity)
    return SmsQuotaResetResponse(identity=identity)
