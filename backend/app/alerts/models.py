"""
models.py — Persistent data structures for the care alert system.

Defines:
    • AlertStatus   — lifecycle states of a care alert
    • AlertType     — informational alert category
    • User          — caregivers and coordinators (names + phone)
    • Client        — the person receiving care
    • Coordinator   — on-call coordinator with optional backup
    • CareAlert     — the alert itself

═══════════════════════════════════════════════════════════════════════════
ALERT LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    pending / initiated ──(reminder SMS, 5 min)──▶ no_answer
            │                                         │
            └────────(backup voice call, 10 min)──────┴──▶ escalated

    Provider callbacks move an alert through ringing / answered /
    resolved / cancelled / no_answer / unknown, guarded by the
    transition table in `webhooks.py`.

Timestamp columns (initiated_at, answered_at, escalated_at, resolved_at)
are written at most once. Every query excludes rows with deleted_at set.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.database import Base


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertStatus(str, Enum):
    """Alert lifecycle states (stored as their string value)."""
    PENDING   = "pending"
    INITIATED = "initiated"     # created, coordinator notified
    RINGING   = "ringing"
    ANSWERED  = "answered"
    NO_ANSWER = "no_answer"     # reminder sent or call unanswered
    ESCALATED = "escalated"     # claimed for backup coordinator
    RESOLVED  = "resolved"      # terminal
    CANCELLED = "cancelled"
    FAILED    = "failed"        # terminal
    UNKNOWN   = "unknown"       # unrecognised provider signal


class AlertType(str, Enum):
    """Alert category — informational only to the escalation core."""
    MEDICAL_CONCERN   = "medical_concern"
    MEDICATION_ISSUE  = "medication_issue"
    BEHAVIORAL_CHANGE = "behavioral_change"
    SAFETY_CONCERN    = "safety_concern"
    FAMILY_REQUEST    = "family_request"
    EQUIPMENT_ISSUE   = "equipment_issue"
    OTHER             = "other"


def _generate_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Tables
# ═══════════════════════════════════════════════════════════════════════════

class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_id)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

class Client(Base):
    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_id)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)


class Coordinator(Base):
    """
    On-call coordinator for a zone.

    A backup path requires `backup_coordinator_id` to point at an active,
    non-deleted coordinator with a phone number.
    """
    __tablename__ = "coordinators"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), unique=True, nullable=False
    )
    zone_id: Mapped[str] = mapped_column(String(36), nullable=False)
    phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    backup_coordinator_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("coordinators.id"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class CareAlert(Base):
    """
    A care alert raised by a caregiver for a client.

    `coordinator_id` references the responsible user and is rewritten to
    the backup coordinator's user on escalation.
    """
    __tablename__ = "care_alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_id)
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False)
    staff_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    coordinator_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=True
    )
    alert_type: Mapped[str] = mapped_column(
        String(50), default=AlertType.OTHER.value, nullable=False
    )
    voice_message_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=AlertStatus.INITIATED.value, nullable=False, index=True
    )

    initiated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, nullable=False
    )
    answered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    call_sid: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    outcome: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
