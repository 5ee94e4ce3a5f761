"""
escalation.py — Time-driven escalation of unanswered care alerts.

═══════════════════════════════════════════════════════════════════════════
ESCALATION POLICY
═══════════════════════════════════════════════════════════════════════════

    Age of alert     Condition                         Action
    ────────────     ─────────────────────────────     ───────────────────────────────
    ≥ 5 min          initiated, unanswered             reminder SMS to coordinator,
                                                       then initiated → no_answer
    ≥ 10 min         initiated / no_answer,            claim (→ escalated), voice call
                     unanswered, not yet escalated     to backup coordinator, commit,
                                                       then SMS to the caregiver

Both thresholds are inclusive.

═══════════════════════════════════════════════════════════════════════════
CONCURRENCY
═══════════════════════════════════════════════════════════════════════════

    • One run at a time per scheduler: a tick that finds a run in flight
      is skipped, not queued.
    • Across schedulers/processes the claim is a single conditional
      UPDATE (escalated_at IS NULL AND status IN (initiated, no_answer)),
      so at most one claimant wins per alert.
    • Claim and voice call share one transaction: if the call raises or
      times out the claim is rolled back and the alert stays eligible.
      Once the call is placed the claim commits even if the call id
      cannot be stored (it is written in a savepoint).
    • Candidates are processed sequentially, oldest first.

Every per-alert failure is logged and the batch continues. A storage
failure while reading candidates ends the run (PersistenceError, counted
in `errors`); the next tick starts over.

Usage:
    scheduler = EscalationScheduler(get_session_factory(), sms, voice)
    await scheduler.start()
    ...
    await scheduler.stop()
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.alerts import repository
from backend.app.alerts.repository import EscalationCandidate, ReminderCandidate
from backend.app.core.errors import (
    ConcurrencyConflict,
    PersistenceError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

DEFAULT_REMINDER_THRESHOLD = timedelta(minutes=5)
DEFAULT_ESCALATION_THRESHOLD = timedelta(minutes=10)
STOP_POLL_INTERVAL_SECONDS = 0.05


# ═══════════════════════════════════════════════════════════════════════════
# Messages
# ═══════════════════════════════════════════════════════════════════════════

def build_reminder_message(alert: ReminderCandidate) -> str:
    parts = [f"URGENT alert for {alert.client_name}"]
    if alert.caregiver_name:
        parts.append(f"from {alert.caregiver_name}")
    if alert.caregiver_phone:
        parts.append(f"Call {alert.caregiver_phone}")
    if alert.voice_message_url:
        parts.append(f"Message: {alert.voice_message_url}")
    return " • ".join(parts)


def build_caregiver_escalation_message(alert: EscalationCandidate) -> str:
    caller = f"{alert.backup_name} is calling now." if alert.backup_name \
        else "Backup coordinator is calling now."
    return " ".join([
        f"Escalated alert for {alert.client_name}.",
        caller,
        "We will keep you updated.",
    ])


# ═══════════════════════════════════════════════════════════════════════════
# Run summary
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class EscalationRunSummary:
    """Counters for one `run_once()` pass."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    reminder_candidates: int = 0
    reminders_sent: int = 0
    reminders_superseded: int = 0   # sent, but status moved by someone else
    reminders_skipped: int = 0
    reminders_failed: int = 0
    escalation_candidates: int = 0
    escalations: int = 0
    escalation_conflicts: int = 0   # claim lost to another actor
    escalations_skipped: int = 0
    escalations_failed: int = 0
    caregivers_notified: int = 0
    caregiver_notifications_failed: int = 0
    errors: int = 0

    @property
    def duration_ms(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds() * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": round(self.duration_ms, 1) if self.duration_ms is not None else None,
            "reminders": {
                "candidates": self.reminder_candidates,
                "sent": self.reminders_sent,
                "superseded": self.reminders_superseded,
                "skipped": self.reminders_skipped,
                "failed": self.reminders_failed,
            },
            "escalations": {
                "candidates": self.escalation_candidates,
                "escalated": self.escalations,
                "conflicts": self.escalation_conflicts,
                "skipped": self.escalations_skipped,
                "failed": self.escalations_failed,
            },
            "caregiver_notifications": {
                "sent": self.caregivers_notified,
                "failed": self.caregiver_notifications_failed,
            },
            "errors": self.errors,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Scheduler
# ═══════════════════════════════════════════════════════════════════════════

class EscalationScheduler:
    """
    Recurring reminder / escalation loop.

    Parameters
    ----------
    session_factory : async_sessionmaker
        Source of database sessions (one per transaction).
    sms_gateway, voice_gateway
        Objects exposing `send(to, body, rate_limit_key=...)` and
        `call(to, audio_url, alert_id=...)`.
    reminder_threshold, escalation_threshold : timedelta
        Alert age at which each phase picks the alert up.
    interval_seconds : float
        Tick period.
    call_timeout_seconds : float
        Upper bound on one voice call initiation.
    stop_timeout_seconds : float
        How long `stop()` waits for an in-flight run.
    now : callable
        Clock returning aware UTC datetimes (injectable for tests).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sms_gateway: Any,
        voice_gateway: Any,
        *,
        reminder_threshold: timedelta = DEFAULT_REMINDER_THRESHOLD,
        escalation_threshold: timedelta = DEFAULT_ESCALATION_THRESHOLD,
        interval_seconds: float = 60.0,
        call_timeout_seconds: float = 30.0,
        stop_timeout_seconds: float = 10.0,
        now: Optional[Callable[[], datetime]] = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if call_timeout_seconds <= 0:
            raise ValueError("call_timeout_seconds must be positive")

        self._session_factory = session_factory
        self._sms = sms_gateway
        self._voice = voice_gateway
        self.reminder_threshold = reminder_threshold
        self.escalation_threshold = escalation_threshold
        self.interval_seconds = interval_seconds
        self.call_timeout_seconds = call_timeout_seconds
        self.stop_timeout_seconds = stop_timeout_seconds
        self._now = now or (lambda: datetime.now(timezone.utc))

        self._loop_task: Optional[asyncio.Task] = None
        self._run_tasks: Set[asyncio.Task] = set()
        self._running = False
        self.runs = 0
        self.skipped_runs = 0
        self.last_summary: Optional[EscalationRunSummary] = None

    # ── Lifecycle ──

    @property
    def is_started(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def is_running(self) -> bool:
        """True while a run is in flight."""
        return self._running

    async def start(self) -> None:
        """Start ticking. The first run happens immediately."""
        if self.is_started:
            return
        logger.info(
            "Starting escalation scheduler (every %.0fs, reminder %s, escalation %s)",
            self.interval_seconds, self.reminder_threshold, self.escalation_threshold,
        )
        self._loop_task = asyncio.create_task(self._tick_loop(), name="escalation-scheduler")

    async def stop(self) -> None:
        """Stop ticking and wait (bounded) for an in-flight run to finish."""
        task, self._loop_task = self._loop_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        deadline = time.monotonic() + self.stop_timeout_seconds
        while self.is_running and time.monotonic() < deadline:
            await asyncio.sleep(STOP_POLL_INTERVAL_SECONDS)

        if self._running:
            logger.warning(
                "Escalation run still in progress after %.1fs; stopping anyway",
                self.stop_timeout_seconds,
            )
        elif task is not None:
            logger.info("Escalation scheduler stopped")

    async def _tick_loop(self) -> None:
        while True:
            self._spawn_run()
            await asyncio.sleep(self.interval_seconds)

    def _spawn_run(self) -> None:
        if self._running:
            self.skipped_runs += 1
            logger.debug("Escalation tick skipped (run already in progress)")
            return
        task = asyncio.create_task(self.run_once())
        self._run_tasks.add(task)
        task.add_done_callback(self._run_tasks.discard)

    def status(self) -> Dict[str, Any]:
        return {
            "started": self.is_started,
            "running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "reminder_threshold_seconds": self.reminder_threshold.total_seconds(),
            "escalation_threshold_seconds": self.escalation_threshold.total_seconds(),
            "runs": self.runs,
            "skipped_runs": self.skipped_runs,
            "last_run": self.last_summary.to_dict() if self.last_summary else None,
        }

    # ── One pass ──

    async def run_once(self) -> Optional[EscalationRunSummary]:
        """
        Run the reminder phase, then the escalation phase.

        Returns None (and does nothing) if a run is already in flight.
        """
        if self._running:
            self.skipped_runs += 1
            logger.debug("Escalation run skipped (already in progress)")
            return None

        self._running = True
        summary = EscalationRunSummary(started_at=self._now())
        try:
            await self._process_reminders(summary)
            await self._process_escalations(summary)
        except Exception as e:
            summary.errors += 1
            logger.error("Unexpected error during escalation run: %s", e, exc_info=True)
        finally:
            summary.finished_at = self._now()
            self.runs += 1
            self.last_summary = summary
            self._running = False

        if summary.reminder_candidates or summary.escalation_candidates or summary.errors:
            logger.info(
                "Escalation run: %d reminders, %d escalations, %d failures",
                summary.reminders_sent, summary.escalations,
                summary.reminders_failed + summary.escalations_failed + summary.errors,
                extra={"duration_ms": summary.duration_ms},
            )
        return summary

    # ── Reminder phase ──

    async def _fetch(
        self,
        query: Callable[[AsyncSession, datetime], Awaitable[List[Any]]],
        cutoff: datetime,
    ) -> List[Any]:
        try:
            async with self._session_factory() as session:
                return await query(session, cutoff)
        except SQLAlchemyError as e:
            raise PersistenceError(query.__name__, str(e)) from e

    async def _process_reminders(self, summary: EscalationRunSummary) -> None:
        cutoff = self._now() - self.reminder_threshold
        candidates = await self._fetch(repository.fetch_reminder_candidates, cutoff)

        summary.reminder_candidates = len(candidates)
        if not candidates:
            return
        logger.info("Processing %d coordinator reminders", len(candidates))

        for alert in candidates:
            extra = {"alert_id": alert.alert_id, "coordinator_id": alert.coordinator_user_id}

            if not alert.coordinator_phone:
                summary.reminders_skipped += 1
                logger.error("Cannot send coordinator reminder: missing phone number", extra=extra)
                continue

            try:
                await self._sms.send(
                    alert.coordinator_phone,
                    build_reminder_message(alert),
                    rate_limit_key=alert.coordinator_user_id,
                )
            except Exception as e:
                summary.reminders_failed += 1
                logger.error("Failed to send coordinator reminder: %s", e, extra=extra)
                continue

            summary.reminders_sent += 1
            try:
                moved = await self._mark_no_answer(alert.alert_id)
            except Exception as e:
                summary.errors += 1
                logger.error(
                    "Reminder sent but status update failed: %s", e,
                    exc_info=True, extra=extra,
                )
                continue

            if moved:
                logger.info("Coordinator reminder sent", extra=extra)
            else:
                summary.reminders_superseded += 1
                logger.debug("Reminder status update skipped (alert moved on)", extra=extra)

    async def _mark_no_answer(self, alert_id: str) -> bool:
        async with self._session_factory() as session:
            try:
                moved = await repository.mark_no_answer(session, alert_id, self._now())
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise PersistenceError("mark_no_answer", str(e), alert_id=alert_id) from e
        return moved

    # ── Escalation phase ──

    async def _process_escalations(self, summary: EscalationRunSummary) -> None:
        cutoff = self._now() - self.escalation_threshold
        candidates = await self._fetch(repository.fetch_escalation_candidates, cutoff)

        summary.escalation_candidates = len(candidates)
        if not candidates:
            return
        logger.info("Processing %d backup escalations", len(candidates))

        for alert in candidates:
            extra = {"alert_id": alert.alert_id, "coordinator_id": alert.coordinator_user_id}

            if not alert.backup_user_id or not alert.backup_phone:
                summary.escalations_skipped += 1
                logger.error("Cannot escalate alert: backup coordinator not configured", extra=extra)
                continue
            if not alert.voice_message_url:
                summary.escalations_skipped += 1
                logger.error("Cannot escalate alert: missing voice message URL", extra=extra)
                continue

            try:
                await self._claim_and_call(alert)
            except ConcurrencyConflict:
                summary.escalation_conflicts += 1
                logger.debug("Escalation skipped (already claimed)", extra=extra)
                continue
            except Exception as e:
                summary.escalations_failed += 1
                logger.error(
                    "Failed to escalate alert to backup coordinator: %s", e,
                    extra={**extra, "coordinator_id": alert.backup_user_id},
                )
                continue

            summary.escalations += 1
            await self._notify_caregiver(alert, summary)

    async def _claim_and_call(self, alert: EscalationCandidate) -> None:
        """
        Claim the alert and place the backup call in one transaction.

        Raises ConcurrencyConflict if another actor holds the claim, and
        re-raises (after rolling back) if the call fails or times out. Once
        the call has been placed the claim is always committed.
        """
        async with self._session_factory() as session:
            try:
                claimed = await repository.claim_for_escalation(
                    session, alert.alert_id, alert.backup_user_id, self._now(),
                )
                if not claimed:
                    raise ConcurrencyConflict("CareAlert", alert_id=alert.alert_id)

                try:
                    call = await asyncio.wait_for(
                        self._voice.call(
                            alert.backup_phone,
                            alert.voice_message_url,
                            alert_id=alert.alert_id,
                        ),
                        timeout=self.call_timeout_seconds,
                    )
                except asyncio.TimeoutError as e:
                    raise TransientProviderError(
                        "voice",
                        f"Voice call timed out after {self.call_timeout_seconds:.0f}s",
                        alert_id=alert.alert_id,
                    ) from e

                call_sid = getattr(call, "call_sid", None)
                if call_sid:
                    await self._record_call_id(session, alert.alert_id, call_sid)
                else:
                    logger.warning(
                        "Voice call returned no call id; escalation committed without it",
                        extra={"alert_id": alert.alert_id},
                    )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.info(
            "Alert escalated to backup coordinator",
            extra={
                "alert_id": alert.alert_id,
                "coordinator_id": alert.backup_user_id,
                "call_sid": call_sid,
            },
        )

    async def _record_call_id(self, session: AsyncSession, alert_id: str, call_sid: str) -> None:
        try:
            async with session.begin_nested():
                await repository.record_call_id(session, alert_id, call_sid, self._now())
        except SQLAlchemyError as e:
            logger.warning(
                "Could not record call id; escalation committed without it: %s", e,
                extra={"alert_id": alert_id, "call_sid": call_sid},
            )

    async def _notify_caregiver(
        self,
        alert: EscalationCandidate,
        summary: EscalationRunSummary,
    ) -> None:
        """Best effort; failures never touch the committed escalation."""
        extra = {"alert_id": alert.alert_id}
        if not alert.caregiver_phone:
            logger.debug("Caregiver escalation notice skipped (no phone number)", extra=extra)
            return
        try:
            await self._sms.send(
                alert.caregiver_phone,
                build_caregiver_escalation_message(alert),
                rate_limit_key=alert.backup_user_id,
            )
        except Exception as e:
            summary.caregiver_notifications_failed += 1
            logger.error("Failed to notify caregiver of escalation: %s", e, extra=extra)
            return
        summary.caregivers_notified += 1
        logger.info("Caregiver notified of escalation", extra=extra)
