import uuid
from datetime import datetime
from typing import Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, func
from app.modules.sessions.models import TherapySession

RESOURCE_COLUMNS = {
    "patient": TherapySession.patient_id,
    "staff": TherapySession.staff_id,
    "room": TherapySession.room_id,
}

class SessionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, org_id: uuid.UUID, **data) -> TherapySession:
        obj = TherapySession(org_id=org_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, session_id: uuid.UUID, org_id: uuid.UUID | None = None) -> TherapySession | None:
        cond = [TherapySession.id == session_id, TherapySession.deleted_at.is_(None)]
        if org_id is not None:
            cond.append(TherapySession.org_id == org_id)
        res = await self.session.execute(select(TherapySession).where(and_(*cond)))
        return res.scalar_one_or_none()

    async def list(
        self,
        org_id: uuid.UUID | None,
        *,
        patient_ids: Sequence[uuid.UUID] | None = None,
        staff_id: uuid.UUID | None = None,
        status: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 200,
        offset: int = 0,
    ) -> Sequence[TherapySession]:
        cond = [TherapySession.deleted_at.is_(None)]
        if org_id is not None:
            cond.append(TherapySession.org_id == org_id)
        if patient_ids is not None:
            cond.append(TherapySession.patient_id.in_(list(patient_ids)))
        if staff_id:
            cond.append(TherapySession.staff_id == staff_id)
        if status:
            cond.append(TherapySession.status == status)
        if start:
            cond.append(TherapySession.scheduled_at >= start)
        if end:
            cond.append(TherapySession.scheduled_at < end)
        q = select(TherapySession).where(and_(*cond)).order_by(TherapySession.scheduled_at.asc()).limit(limit).offset(offset)
        res = await self.session.execute(q)
        return res.scalars().all()

    async def list_for_resource(
        self, org_id: uuid.UUID, kind: str, resource_id: uuid.UUID, start: datetime, end: datetime,
        exclude_id: uuid.UUID | None = None,
    ) -> Sequence[TherapySession]:
        """Non-cancelled sessions of one patient/staff/room starting in [start, end)."""
        cond = [
            TherapySession.org_id == org_id,
            TherapySession.deleted_at.is_(None),
            TherapySession.status != "cancelled",
            RESOURCE_COLUMNS[kind] == resource_id,
            TherapySession.scheduled_at >= start,
            TherapySession.scheduled_at < end,
        ]
        if exclude_id is not None:
            cond.append(TherapySession.id != exclude_id)
        res = await self.session.execute(select(TherapySession).where(and_(*cond)))
        return res.scalars().all()

    async def count_for_resource(
        self, org_id: uuid.UUID, kind: str, resource_id: uuid.UUID, start: datetime, end: datetime,
        exclude_id: uuid.UUID | None = None,
    ) -> int:
        cond = [
            TherapySession.org_id == org_id,
            TherapySession.deleted_at.is_(None),
            TherapySession.status != "cancelled",
            RESOURCE_COLUMNS[kind] == resource_id,
            TherapySession.scheduled_at >= start,
            TherapySession.scheduled_at < end,
        ]
        if exclude_id is not None:
            cond.append(TherapySession.id != exclude_id)
        res = await self.session.execute(select(func.count()).select_from(TherapySession).where(and_(*cond)))
        return int(res.scalar_one())

    async def find_exact(self, org_id: uuid.UUID, patient_id: uuid.UUID, therapy_type: str, scheduled_at: datetime) -> TherapySession | None:
        # any status: a cancelled generated session is not regenerated
        res = await self.session.execute(select(TherapySession).where(
            TherapySession.org_id == org_id,
            TherapySession.patient_id == patient_id,
            TherapySession.therapy_type == therapy_type,
            TherapySession.scheduled_at == scheduled_at,
            TherapySession.deleted_at.is_(None),
        ).limit(1))
        return res.scalars().first()

    async def delete(self, obj: TherapySession) -> None:
        await self.session.delete(obj)
        await self.session.flush()
