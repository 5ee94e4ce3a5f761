"""
Health probes for the escalation service.

Components:
    • alert_store          — SELECT 1 against the alert database (UNHEALTHY when down)
    • rate_limit_store     — Redis PING plus the backend each limiter is on;
                             per-process fallback is DEGRADED, never UNHEALTHY
    • escalation_scheduler — loop alive, last run summary

The overall status is the worst component status.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from backend.app.core.cache import ping_redis
from backend.app.core.config import settings
from backend.app.core.database import get_engine

logger = logging.getLogger(__name__)

_PROCESS_STARTED = time.monotonic()


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def degrade(self, message: str, status: HealthStatus = HealthStatus.DEGRADED) -> None:
        self.status, self.message = status, message

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"name": self.name, "status": self.status.value}
        if self.latency_ms:
            out["latency_ms"] = round(self.latency_ms, 2)
        if self.message:
            out["message"] = self.message
        if self.details:
            out["details"] = self.details
        return out


@dataclass
class HealthReport:
    components: List[ComponentHealth]
    checked_at: datetime

    @property
    def status(self) -> HealthStatus:
        if not self.components:
            return HealthStatus.HEALTHY
        return max((c.status for c in self.components), key=_SEVERITY.__getitem__)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": settings.APP_NAME,
            "status": self.status.value,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "checked_at": self.checked_at.isoformat(),
            "uptime_seconds": round(time.monotonic() - _PROCESS_STARTED, 1),
            "components": [c.to_dict() for c in self.components],
        }


async def check_alert_store() -> ComponentHealth:
    comp = ComponentHealth(name="alert_store")
    started = time.monotonic()
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Alert store health probe failed: %s", e)
        comp.degrade(f"Alert store unreachable: {type(e).__name__}", HealthStatus.UNHEALTHY)
    comp.latency_ms = (time.monotonic() - started) * 1000
    return comp


async def check_rate_limit_store(limiters: Iterable[Any] = ()) -> ComponentHealth:
    """
    Redis reachability and the backend each limiter is currently counting on.

    A limiter on the in-process store still enforces its limit, but only
    per instance, so this never reports UNHEALTHY.
    """
    comp = ComponentHealth(name="rate_limit_store")
    comp.details = {"limiters": {l.prefix: l.backend for l in limiters}}

    if not settings.REDIS_ENABLED:
        comp.degrade("Redis disabled; limits are per-process")
        return comp

    started = time.monotonic()
    reachable = await ping_redis()
    comp.latency_ms = (time.monotonic() - started) * 1000
    if not reachable:
        comp.degrade("Redis unreachable; limits are per-process")
    elif "memory" in comp.details["limiters"].values():
        comp.degrade("Redis reachable but a limiter has not reconnected yet")
    return comp


def check_scheduler(scheduler: Optional[Any]) -> ComponentHealth:
    comp = ComponentHealth(name="escalation_scheduler")
    if scheduler is None:
        comp.degrade("Scheduler not configured (Twilio credentials missing)")
        return comp

    comp.details = scheduler.status()
    if not comp.details["started"]:
        comp.degrade("Scheduler not running")
    return comp


async def run_health_check(
    scheduler: Optional[Any] = None,
    limiters: Iterable[Any] = (),
) -> HealthReport:
    components = [
        await check_alert_store(),
        await check_rate_limit_store(limiters),
        check_scheduler(scheduler),
    ]
    return HealthReport(components=components, checked_at=datetime.now(timezone.utc))
