"""
Shared fixtures for the care alert test suite.

    • Test-mode settings (no Redis, no Twilio, SQLite database URL)
    • Temporary-file SQLite alert store (aiosqlite, NullPool)
    • Seed helpers for users / clients / coordinators / alerts
    • Controllable clock
    • Fake SMS and voice gateways recording every call
"""

from __future__ import annotations

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TWILIO_WEBHOOK_BASE_URL", "https://alerts.example.com")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Optional

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from backend.app.alerts.channels.sms_gateway import SmsResult
from backend.app.alerts.channels.voice_gateway import CallResult
from backend.app.alerts.models import AlertStatus, CareAlert, Client, Coordinator, User
from backend.app.core.database import Base
from backend.app.core.errors import TransientProviderError

# Monday 09:00 UTC
T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

FROM_NUMBER = "+15550009999"
COORDINATOR_PHONE = "+15550000002"
BACKUP_PHONE = "+15550000003"
CAREGIVER_PHONE = "+15550000001"
VOICE_URL = "https://cdn.example.com/voice/alert-1.mp3"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands timestamps back naive; they were written as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Clock
# ═══════════════════════════════════════════════════════════════════════════

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


@pytest.fixture
def clock():
    return FakeClock()


# ═══════════════════════════════════════════════════════════════════════════
# Gateways
# ═══════════════════════════════════════════════════════════════════════════

class FakeSmsGateway:
    """Records sends; numbers in `fail_for` raise a transient provider error."""

    def __init__(self):
        self.sent = []
        self.fail_for = set()

    async def send(self, to, body, rate_limit_key=None):
        if to in self.fail_for:
            raise TransientProviderError("sms", "Twilio unavailable")
        self.sent.append(SimpleNamespace(to=to, body=body, rate_limit_key=rate_limit_key))
        return SmsResult(
            message_sid=f"SM{len(self.sent):032d}",
            status="queued",
            to=to,
            from_number=FROM_NUMBER,
            body=body,
        )

    def sent_to(self, number):
        return [m for m in self.sent if m.to == number]


class FakeVoiceGateway:
    """
    Records calls. `error` is raised after recording; `delay` makes the call
    suspend so other coroutines can run while a claim is open.
    """

    def __init__(self):
        self.calls = []
        self.error: Optional[BaseException] = None
        self.call_sid: Optional[str] = "CA" + "0" * 32
        self.delay = 0.0

    async def call(self, to, audio_url, alert_id=None):
        self.calls.append(SimpleNamespace(to=to, audio_url=audio_url, alert_id=alert_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return CallResult(
            call_sid=self.call_sid,
            status="queued",
            to=to,
            from_number=FROM_NUMBER,
        )


@pytest.fixture
def fake_sms():
    return FakeSmsGateway()


@pytest.fixture
def fake_voice():
    return FakeVoiceGateway()


# ═══════════════════════════════════════════════════════════════════════════
# Database
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def session_factory(tmp_path):
    """Fresh SQLite file per test with all tables created."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'alerts.db'}",
        poolclass=NullPool,
    )

    async def _create():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(_create())
    yield async_sessionmaker(engine, expire_on_commit=False)
    asyncio.run(engine.dispose())


def _new_id() -> str:
    return str(uuid.uuid4())


async def _seed_alert(
    session_factory,
    *,
    initiated_at: datetime,
    status: str = AlertStatus.INITIATED.value,
    coordinator_phone: Optional[str] = COORDINATOR_PHONE,
    with_backup: bool = True,
    backup_active: bool = True,
    backup_phone: Optional[str] = BACKUP_PHONE,
    caregiver_phone: Optional[str] = CAREGIVER_PHONE,
    voice_message_url: Optional[str] = VOICE_URL,
    call_sid: Optional[str] = None,
    answered_at: Optional[datetime] = None,
    escalated_at: Optional[datetime] = None,
    deleted_at: Optional[datetime] = None,
) -> SimpleNamespace:
    ids = SimpleNamespace(
        alert_id=_new_id(),
        client_id=_new_id(),
        caregiver_id=_new_id(),
        coordinator_user_id=_new_id(),
        coordinator_id=_new_id(),
        backup_user_id=_new_id() if with_backup else None,
        backup_id=_new_id() if with_backup else None,
    )

    async with session_factory() as session:
        session.add_all([
            User(id=ids.caregiver_id, first_name="Carla", last_name="Gomez",
                 phone_number=caregiver_phone),
            User(id=ids.coordinator_user_id, first_name="Dana", last_name="Reed",
                 phone_number=coordinator_phone),
            Client(id=ids.client_id, first_name="Walter", last_name="Hughes"),
        ])
        if with_backup:
            session.add(User(id=ids.backup_user_id, first_name="Sam", last_name="Ortiz",
                             phone_number=backup_phone))
        await session.flush()

        if with_backup:
            session.add(Coordinator(
                id=ids.backup_id, user_id=ids.backup_user_id, zone_id="zone-north",
                phone_number=backup_phone, is_active=backup_active,
            ))
            await session.flush()
        session.add(Coordinator(
            id=ids.coordinator_id, user_id=ids.coordinator_user_id, zone_id="zone-north",
            phone_number=coordinator_phone, backup_coordinator_id=ids.backup_id,
        ))
        await session.flush()

        session.add(CareAlert(
            id=ids.alert_id,
            client_id=ids.client_id,
            staff_id=ids.caregiver_id,
            coordinator_id=ids.coordinator_user_id,
            alert_type="medical_concern",
            voice_message_url=voice_message_url,
            status=status,
            initiated_at=initiated_at,
            answered_at=answered_at,
            escalated_at=escalated_at,
            call_sid=call_sid,
            created_at=initiated_at,
            updated_at=initiated_at,
            deleted_at=deleted_at,
        ))
        await session.commit()
    return ids


@pytest.fixture
def seed_alert(session_factory):
    """seed_alert(initiated_at=..., **overrides) → ids namespace."""
    def _seed(**kwargs):
        kwargs.setdefault("initiated_at", T0)
        return asyncio.run(_seed_alert(session_factory, **kwargs))
    return _seed


@pytest.fixture
def load_alert(session_factory):
    """load_alert(alert_id) → detached CareAlert."""
    async def _load(alert_id):
        async with session_factory() as session:
            result = await session.execute(select(CareAlert).where(CareAlert.id == alert_id))
            return result.scalar_one()

    def _sync(alert_id):
        return asyncio.run(_load(alert_id))
    return _sync
