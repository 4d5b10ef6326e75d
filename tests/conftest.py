"""
Pytest configuration: in-memory SQLite, a controllable clock and seed helpers.
"""
import os
import uuid
from datetime import datetime, timedelta, timezone

# Settings are read at import time
os.environ["ENV"] = "test"
os.environ["POSTGRES_DSN"] = "sqlite+aiosqlite:///:memory:"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["EVENT_BUS_PROVIDER"] = "noop"

import pytest
import pytest_asyncio
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.base import Base
from app.core.db import _import_models
from app.core.security import Principal
from app.modules.directory.models import Room, StaffMember
from app.modules.events.outbox import EventOutbox
from app.modules.prescriptions.models import Prescription
from app.modules.tenants.models import Hospital

UTC = timezone.utc
# Monday
START = datetime(2025, 5, 5, 10, 0, tzinfo=UTC)

OPEN_ALL_WEEK = {day: {"start": "08:00", "end": "20:00"} for day in ("mon", "tue", "wed", "thu", "fri", "sat", "sun")}


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kw) -> None:
        self.now = self.now + timedelta(**kw)


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})

    # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(eng.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(eng.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    _import_models()
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def clock():
    return FixedClock(START)


class Seed:
    """Writes reference data the engine only reads: hospitals, rooms, staff, prescriptions."""

    def __init__(self, s: AsyncSession):
        self.s = s

    async def hospital(self, *, policies: dict | None = None, therapy_config: dict | None = None,
                       business_hours: dict | None = None, blackout_dates: list | None = None,
                       timezone: str = "UTC", name: str = "Sunrise Wellness") -> Hospital:
        h = Hospital(
            name=name,
            timezone=timezone,
            business_hours=OPEN_ALL_WEEK if business_hours is None else business_hours,
            blackout_dates=blackout_dates or [],
            policies=policies or {},
            therapy_config=therapy_config or {},
        )
        self.s.add(h)
        await self.s.commit()
        return h

    async def room(self, org_id: uuid.UUID, name: str, *, capacity: int = 1, therapy_types: list | None = None,
                   status: str = "active") -> Room:
        r = Room(org_id=org_id, name=name, capacity=capacity, therapy_types=therapy_types, status=status)
        self.s.add(r)
        await self.s.commit()
        return r

    async def staff(self, org_id: uuid.UUID, name: str, *, role: str = "therapist") -> StaffMember:
        m = StaffMember(org_id=org_id, name=name, role=role)
        self.s.add(m)
        await self.s.commit()
        return m

    async def prescription(self, org_id: uuid.UUID, patient_id: uuid.UUID, therapies: list[dict]) -> Prescription:
        p = Prescription(org_id=org_id, patient_id=patient_id, therapies=therapies)
        self.s.add(p)
        await self.s.commit()
        return p

    async def events(self, event_type: str | None = None) -> list[EventOutbox]:
        q = select(EventOutbox).order_by(EventOutbox.occurred_at.asc())
        if event_type:
            q = q.where(EventOutbox.event_type == event_type)
        res = await self.s.execute(q)
        return list(res.scalars().all())


@pytest.fixture
def seed(db):
    return Seed(db)


def admin(org_id: uuid.UUID) -> Principal:
    return Principal(user_id=uuid.uuid4(), org_id=org_id, roles=["admin"], scopes=["*"])


def office_executive(org_id: uuid.UUID) -> Principal:
    return Principal(user_id=uuid.uuid4(), org_id=org_id, roles=["office_executive"], scopes=["*"])


def super_admin(org_id: uuid.UUID) -> Principal:
    return Principal(user_id=uuid.uuid4(), org_id=org_id, roles=["super_admin"], scopes=["*"])


def therapist(org_id: uuid.UUID, user_id: uuid.UUID | None = None) -> Principal:
    return Principal(user_id=user_id or uuid.uuid4(), org_id=org_id, roles=["therapist"], scopes=["*"])


def doctor(org_id: uuid.UUID) -> Principal:
    return Principal(user_id=uuid.uuid4(), org_id=org_id, roles=["doctor"], scopes=["*"])


def patient(org_id: uuid.UUID, patient_id: uuid.UUID) -> Principal:
    return Principal(user_id=uuid.uuid4(), org_id=org_id, roles=["patient"], scopes=["*"], patient_ids=[patient_id])


@pytest.fixture
def actors():
    """Principal builders keyed by role."""
    return {
        "admin": admin,
        "office_executive": office_executive,
        "super_admin": super_admin,
        "therapist": therapist,
        "doctor": doctor,
        "patient": patient,
    }
