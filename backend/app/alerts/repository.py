"""
repository.py — Shared query layer over the care_alerts table.

Every mutation here is a conditional UPDATE: the WHERE clause carries the
state the caller observed, and the returned rowcount tells the caller
whether it won. No row locks are taken. All timestamps come from the
caller's clock so that a run is reproducible under an injected `now`.

Functions take an open AsyncSession and never commit; transaction
boundaries belong to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from backend.app.alerts.models import (
    AlertStatus,
    CareAlert,
    Client,
    Coordinator,
    User,
)

logger = logging.getLogger(__name__)

# Statuses from which the scheduler may claim an alert for escalation
ESCALATABLE_STATUSES = (AlertStatus.INITIATED.value, AlertStatus.NO_ANSWER.value)

# Timestamp columns a status transition may stamp (once)
TIMESTAMP_FIELDS = ("answered_at", "resolved_at")


# ═══════════════════════════════════════════════════════════════════════════
# Row types
# ═══════════════════════════════════════════════════════════════════════════

def _join_name(first: Optional[str], last: Optional[str]) -> str:
    return f"{first or ''} {last or ''}".strip()


@dataclass
class ReminderCandidate:
    """An initiated alert whose coordinator has not answered in time."""
    alert_id: str
    alert_type: str
    voice_message_url: Optional[str]
    coordinator_user_id: str
    coordinator_phone: Optional[str]
    coordinator_name: str
    client_name: str
    caregiver_name: str
    caregiver_phone: Optional[str]


@dataclass
class EscalationCandidate:
    """An unanswered alert ready to be handed to the backup coordinator."""
    alert_id: str
    alert_type: str
    voice_message_url: Optional[str]
    coordinator_user_id: str
    coordinator_name: str
    backup_user_id: Optional[str]
    backup_phone: Optional[str]
    backup_name: str
    client_name: str
    caregiver_name: str
    caregiver_phone: Optional[str]


@dataclass
class AlertSnapshot:
    """Status of an alert as observed at read time."""
    alert_id: str
    status: str
    call_sid: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {"alert_id": self.alert_id, "status": self.status, "call_sid": self.call_sid}


# ═══════════════════════════════════════════════════════════════════════════
# Candidate queries
# ═══════════════════════════════════════════════════════════════════════════

async def fetch_reminder_candidates(
    session: AsyncSession,
    cutoff: datetime,
) -> List[ReminderCandidate]:
    """
    Initiated, unanswered alerts with `initiated_at <= cutoff`.

    Alerts whose coordinator has no coordinator record are not returned.
    """
    coord_user = aliased(User)
    caregiver = aliased(User)

    stmt = (
        select(
            CareAlert.id,
            CareAlert.alert_type,
            CareAlert.voice_message_url,
            Coordinator.user_id,
            Coordinator.phone_number,
            coord_user.first_name,
            coord_user.last_name,
            Client.first_name,
            Client.last_name,
            caregiver.first_name,
            caregiver.last_name,
            caregiver.phone_number,
        )
        .join(Coordinator, Coordinator.user_id == CareAlert.coordinator_id)
        .join(coord_user, coord_user.id == Coordinator.user_id)
        .join(Client, Client.id == CareAlert.client_id)
        .join(caregiver, caregiver.id == CareAlert.staff_id)
        .where(
            CareAlert.status == AlertStatus.INITIATED.value,
            CareAlert.answered_at.is_(None),
            CareAlert.deleted_at.is_(None),
            CareAlert.initiated_at <= cutoff,
        )
        .order_by(CareAlert.initiated_at, CareAlert.id)
    )

    rows = (await session.execute(stmt)).all()
    return [
        ReminderCandidate(
            alert_id=r[0],
            alert_type=r[1],
            voice_message_url=r[2],
            coordinator_user_id=r[3],
            coordinator_phone=r[4],
            coordinator_name=_join_name(r[5], r[6]),
            client_name=_join_name(r[7], r[8]),
            caregiver_name=_join_name(r[9], r[10]),
            caregiver_phone=r[11],
        )
        for r in rows
    ]


async def fetch_escalation_candidates(
    session: AsyncSession,
    cutoff: datetime,
) -> List[EscalationCandidate]:
    """
    Unanswered, unescalated alerts in initiated/no_answer with
    `initiated_at <= cutoff`.

    The backup columns are NULL when the coordinator has no backup, or
    the backup is inactive or soft-deleted; the caller skips those.
    """
    coord_user = aliased(User)
    caregiver = aliased(User)
    backup = aliased(Coordinator)
    backup_user = aliased(User)

    stmt = (
        select(
            CareAlert.id,
            CareAlert.alert_type,
            CareAlert.voice_message_url,
            Coordinator.user_id,
            coord_user.first_name,
            coord_user.last_name,
            backup.user_id,
            backup.phone_number,
            backup_user.first_name,
            backup_user.last_name,
            Client.first_name,
            Client.last_name,
            caregiver.first_name,
            caregiver.last_name,
            caregiver.phone_number,
        )
        .join(Coordinator, Coordinator.user_id == CareAlert.coordinator_id)
        .join(coord_user, coord_user.id == Coordinator.user_id)
        .join(Client, Client.id == CareAlert.client_id)
        .join(caregiver, caregiver.id == CareAlert.staff_id)
        .outerjoin(
            backup,
            and_(
                backup.id == Coordinator.backup_coordinator_id,
                backup.is_active.is_(True),
                backup.deleted_at.is_(None),
            ),
        )
        .outerjoin(backup_user, backup_user.id == backup.user_id)
        .where(
            CareAlert.status.in_(ESCALATABLE_STATUSES),
            CareAlert.answered_at.is_(None),
            CareAlert.escalated_at.is_(None),
            CareAlert.deleted_at.is_(None),
            CareAlert.initiated_at <= cutoff,
        )
        .order_by(CareAlert.initiated_at, CareAlert.id)
    )

    rows = (await session.execute(stmt)).all()
    return [
        EscalationCandidate(
            alert_id=r[0],
            alert_type=r[1],
            voice_message_url=r[2],
            coordinator_user_id=r[3],
            coordinator_name=_join_name(r[4], r[5]),
            backup_user_id=r[6],
            backup_phone=r[7],
            backup_name=_join_name(r[8], r[9]),
            client_name=_join_name(r[10], r[11]),
            caregiver_name=_join_name(r[12], r[13]),
            caregiver_phone=r[14],
        )
        for r in rows
    ]


# ═══════════════════════════════════════════════════════════════════════════
# Conditional mutations
# ═══════════════════════════════════════════════════════════════════════════

async def mark_no_answer(session: AsyncSession, alert_id: str, now: datetime) -> bool:
    """initiated → no_answer. False if another actor moved the alert first."""
    result = await session.execute(
        update(CareAlert)
        .where(
            CareAlert.id == alert_id,
            CareAlert.status == AlertStatus.INITIATED.value,
            CareAlert.deleted_at.is_(None),
        )
        .values(status=AlertStatus.NO_ANSWER.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def claim_for_escalation(
    session: AsyncSession,
    alert_id: str,
    backup_user_id: str,
    now: datetime,
) -> bool:
    """
    Atomically claim an alert for escalation.

    Exactly one caller can win: the predicate requires escalated_at to be
    NULL and the status to still be initiated/no_answer.
    """
    result = await session.execute(
        update(CareAlert)
        .where(
            CareAlert.id == alert_id,
            CareAlert.escalated_at.is_(None),
            CareAlert.status.in_(ESCALATABLE_STATUSES),
            CareAlert.deleted_at.is_(None),
        )
        .values(
            status=AlertStatus.ESCALATED.value,
            escalated_at=now,
            coordinator_id=backup_user_id,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def record_call_id(
    session: AsyncSession,
    alert_id: str,
    call_sid: str,
    now: datetime,
) -> None:
    await session.execute(
        update(CareAlert)
        .where(CareAlert.id == alert_id, CareAlert.deleted_at.is_(None))
        .values(call_sid=call_sid, updated_at=now)
        .execution_options(synchronize_session=False)
    )


async def get_snapshot_by_call_sid(
    session: AsyncSession,
    call_sid: str,
) -> Optional[AlertSnapshot]:
    """Current status of the live alert tracking this provider call."""
    stmt = (
        select(CareAlert.id, CareAlert.status, CareAlert.call_sid)
        .where(CareAlert.call_sid == call_sid, CareAlert.deleted_at.is_(None))
        .order_by(CareAlert.initiated_at.desc())
        .limit(1)
    )
    row = (await session.execute(stmt)).first()
    if row is None:
        return None
    return AlertSnapshot(alert_id=row[0], status=row[1], call_sid=row[2])


async def apply_status_transition(
    session: AsyncSession,
    call_sid: str,
    observed_status: str,
    next_status: str,
    now: datetime,
    timestamp_field: Optional[str] = None,
) -> bool:
    """
    observed_status → next_status for the alert tracking `call_sid`.

    `timestamp_field` (answered_at / resolved_at) is stamped only if it is
    still NULL, so replays never move it. False means the row changed
    since it was read.
    """
    values: Dict[str, Any] = {"status": next_status, "updated_at": now}
    if timestamp_field is not None:
        if timestamp_field not in TIMESTAMP_FIELDS:
            raise ValueError(f"Unsupported timestamp field: {timestamp_field}")
        column = getattr(CareAlert, timestamp_field)
        values[timestamp_field] = func.coalesce(column, literal(now, type_=column.type))

    result = await session.execute(
        update(CareAlert)
        .where(
            CareAlert.call_sid == call_sid,
            CareAlert.status == observed_status,
            CareAlert.deleted_at.is_(None),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def count_open_alerts(session: AsyncSession) -> Dict[str, int]:
    """Number of live alerts per non-terminal status, for status reporting."""
    open_statuses = [
        s.value for s in AlertStatus
        if s not in (AlertStatus.RESOLVED, AlertStatus.CANCELLED, AlertStatus.FAILED)
    ]
    stmt = (
        select(CareAlert.status, func.count())
        .where(
            CareAlert.deleted_at.is_(None),
            CareAlert.status.in_(open_statuses),
        )
        .group_by(CareAlert.status)
    )
    return {status: count for status, count in (await session.execute(stmt)).all()}
