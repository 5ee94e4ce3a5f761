"""
webhooks.py — Reconcile provider call-status callbacks with alert state.

Callbacks may arrive duplicated, late or out of order. Each one is turned
into at most one conditional UPDATE guarded by an explicit transition
table keyed on the alert's *persisted* status:

═══════════════════════════════════════════════════════════════════════════
PROVIDER SIGNAL → ALERT STATUS
═══════════════════════════════════════════════════════════════════════════

    ringing                 → ringing
    answered, in-progress   → answered   (answered_at stamped once)
    completed               → resolved   (resolved_at stamped once)
    no-answer, busy         → no_answer
    failed, canceled        → cancelled
    queued, initiated       → (acknowledged, no state change)
    anything else           → unknown    (logged as an anomaly)

═══════════════════════════════════════════════════════════════════════════
ALLOWED TRANSITIONS (current → next)
═══════════════════════════════════════════════════════════════════════════

    pending, initiated, no_answer  → ringing, answered, no_answer, cancelled, unknown
    ringing, escalated, unknown    → ringing, answered, no_answer, cancelled, resolved, unknown
    answered                       → answered, resolved, cancelled, no_answer, unknown
    cancelled                      → cancelled
    resolved, failed               → (nothing)

`handle()` never raises: the provider always gets its 200, and every
rejection or failure is logged server-side.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.alerts import repository
from backend.app.alerts.channels.voice_gateway import CallStatusEvent
from backend.app.alerts.models import AlertStatus

logger = logging.getLogger(__name__)

S = AlertStatus

SIGNAL_TO_STATUS: Dict[str, AlertStatus] = {
    "ringing": S.RINGING,
    "answered": S.ANSWERED,
    "in-progress": S.ANSWERED,
    "completed": S.RESOLVED,
    "no-answer": S.NO_ANSWER,
    "busy": S.NO_ANSWER,
    "failed": S.CANCELLED,
    "canceled": S.CANCELLED,
}

# Progress signals that carry no alert state change
ACKNOWLEDGED_SIGNALS = frozenset({"queued", "initiated"})

TIMESTAMP_FOR_STATUS: Dict[AlertStatus, str] = {
    S.ANSWERED: "answered_at",
    S.RESOLVED: "resolved_at",
}

_FROM_OPEN: FrozenSet[AlertStatus] = frozenset(
    {S.RINGING, S.ANSWERED, S.NO_ANSWER, S.CANCELLED, S.UNKNOWN}
)
_FROM_LIVE_CALL: FrozenSet[AlertStatus] = frozenset(
    {S.RINGING, S.ANSWERED, S.NO_ANSWER, S.CANCELLED, S.RESOLVED, S.UNKNOWN}
)

ALLOWED_TRANSITIONS: Dict[AlertStatus, FrozenSet[AlertStatus]] = {
    S.PENDING: _FROM_OPEN,
    S.INITIATED: _FROM_OPEN,
    S.NO_ANSWER: _FROM_OPEN,
    S.RINGING: _FROM_LIVE_CALL,
    S.ESCALATED: _FROM_LIVE_CALL,
    S.UNKNOWN: _FROM_LIVE_CALL,
    S.ANSWERED: frozenset({S.ANSWERED, S.RESOLVED, S.CANCELLED, S.NO_ANSWER, S.UNKNOWN}),
    S.RESOLVED: frozenset(),
    S.CANCELLED: frozenset({S.CANCELLED}),
    S.FAILED: frozenset(),
}


def map_provider_status(signal: Optional[str]) -> Optional[AlertStatus]:
    """
    Map a raw provider status onto an alert status.

    None means "acknowledged, no change". Unrecognised values map to
    UNKNOWN rather than being dropped.
    """
    normalised = (signal or "").strip().lower()
    if normalised in ACKNOWLEDGED_SIGNALS:
        return None
    return SIGNAL_TO_STATUS.get(normalised, S.UNKNOWN)


def is_transition_allowed(current: str, next_status: AlertStatus) -> bool:
    try:
        current_status = AlertStatus(current)
    except ValueError:
        return False
    return next_status in ALLOWED_TRANSITIONS.get(current_status, frozenset())


class ReconcileOutcome(str, Enum):
    APPLIED   = "applied"     # row updated
    IGNORED   = "ignored"     # acknowledged signal, nothing to do
    REJECTED  = "rejected"    # transition not allowed from current status
    STALE     = "stale"       # row changed between read and write
    NOT_FOUND = "not_found"   # no live alert tracks this call
    ERROR     = "error"       # storage failure (logged)


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    call_sid: str
    signal: str
    alert_id: Optional[str] = None
    previous_status: Optional[str] = None
    next_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "call_sid": self.call_sid,
            "signal": self.signal,
            "alert_id": self.alert_id,
            "previous_status": self.previous_status,
            "next_status": self.next_status,
        }


class WebhookReconciler:
    """
    Apply call status events to the alert store.

    Parameters
    ----------
    session_factory : async_sessionmaker
        Each event runs in its own short transaction.
    now : callable
        Clock used for updated_at / answered_at / resolved_at.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self._session_factory = session_factory
        self._now = now or (lambda: datetime.now(timezone.utc))

    async def handle(self, event: CallStatusEvent) -> ReconcileResult:
        """Reconcile one callback. Never raises."""
        signal = event.status
        result = ReconcileResult(
            outcome=ReconcileOutcome.IGNORED,
            call_sid=event.call_sid,
            signal=signal,
            alert_id=event.alert_id,
        )
        log_extra = {"alert_id": event.alert_id, "call_sid": event.call_sid}

        next_status = map_provider_status(signal)
        if next_status is None:
            logger.debug("Call status %r acknowledged without change", signal, extra=log_extra)
            return result
        if next_status is S.UNKNOWN:
            logger.warning(
                "Unrecognised call status %r; recording as unknown", signal, extra=log_extra,
            )
        result.next_status = next_status.value

        try:
            async with self._session_factory() as session:
                try:
                    await self._apply(session, event, next_status, result)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except Exception as e:
            result.outcome = ReconcileOutcome.ERROR
            logger.error(
                "Failed to reconcile call status %r: %s", signal, e,
                exc_info=True, extra=log_extra,
            )
            return result

        self._log_result(result)
        return result

    async def _apply(
        self,
        session: AsyncSession,
        event: CallStatusEvent,
        next_status: AlertStatus,
        result: ReconcileResult,
    ) -> None:
        snapshot = await repository.get_snapshot_by_call_sid(session, event.call_sid)
        if snapshot is None:
            result.outcome = ReconcileOutcome.NOT_FOUND
            return

        result.alert_id = snapshot.alert_id
        result.previous_status = snapshot.status

        if not is_transition_allowed(snapshot.status, next_status):
            result.outcome = ReconcileOutcome.REJECTED
            return

        applied = await repository.apply_status_transition(
            session,
            event.call_sid,
            observed_status=snapshot.status,
            next_status=next_status.value,
            now=self._now(),
            timestamp_field=TIMESTAMP_FOR_STATUS.get(next_status),
        )
        result.outcome = ReconcileOutcome.APPLIED if applied else ReconcileOutcome.STALE

    @staticmethod
    def _log_result(result: ReconcileResult) -> None:
        extra = {
            "alert_id": result.alert_id,
            "call_sid": result.call_sid,
            "status": result.next_status,
            "outcome": result.outcome.value,
        }
        if result.outcome is ReconcileOutcome.APPLIED:
            logger.info(
                "Alert status %s → %s", result.previous_status, result.next_status, extra=extra,
            )
        elif result.outcome is ReconcileOutcome.REJECTED:
            logger.warning(
                "Rejected status transition %s → %s (signal %r)",
                result.previous_status, result.next_status, result.signal, extra=extra,
            )
        elif result.outcome is ReconcileOutcome.NOT_FOUND:
            logger.warning("Call status for unknown call_sid", extra=extra)
        else:
            logger.debug(
                "Status update lost a race (observed %s)", result.previous_status, extra=extra,
            )
