"""
FastAPI route: Escalation scheduler operations.

Provides endpoints to:
    POST /api/v1/escalations/run     — run one reminder/escalation pass now
    GET  /api/v1/escalations/status  — scheduler state, last run, open alerts
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.alerts import repository
from backend.app.alerts.escalation import EscalationScheduler
from backend.app.api.deps import get_scheduler
from backend.app.core.database import get_db

router = APIRouter(prefix="/api/v1/escalations", tags=["escalations"])


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------

class EscalationRunResponse(BaseModel):
    skipped: bool = Field(..., description="True if a run was already in flight")
    summary: Optional[Dict[str, Any]] = Field(None, description="Counters for this run")


class EscalationStatusResponse(BaseModel):
    scheduler: Dict[str, Any]
    open_alerts: Dict[str, int] = Field(
        default_factory=dict, description="Live alerts per non-terminal status",
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/run", response_model=EscalationRunResponse)
async def run_escalations(scheduler: EscalationScheduler = Depends(get_scheduler)):
    """Trigger one pass outside the regular tick."""
    summary = await scheduler.run_once()
    if summary is None:
        return EscalationRunResponse(skipped=True)
    return EscalationRunResponse(skipped=False, summary=summary.to_dict())


@router.get("/status", response_model=EscalationStatusResponse)
async def escalation_status(
    scheduler: EscalationScheduler = Depends(get_scheduler),
    session: AsyncSession = Depends(get_db),
):
    return EscalationStatusResponse(
        scheduler=scheduler.status(),
        open_alerts=await repository.count_open_alerts(session),
    )
