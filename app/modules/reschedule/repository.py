import uuid
from datetime import datetime
from typing import Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, and_, or_, func
from app.modules.reschedule.models import RescheduleRequest

class RescheduleRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, org_id: uuid.UUID, **data) -> RescheduleRequest:
        obj = RescheduleRequest(org_id=org_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, request_id: uuid.UUID) -> RescheduleRequest | None:
        res = await self.session.execute(select(RescheduleRequest).where(
            RescheduleRequest.id == request_id, RescheduleRequest.deleted_at.is_(None)
        ))
        return res.scalar_one_or_none()

    async def pending_for_session(self, session_id: uuid.UUID) -> RescheduleRequest | None:
        res = await self.session.execute(select(RescheduleRequest).where(
            RescheduleRequest.session_id == session_id,
            RescheduleRequest.status == "pending",
            RescheduleRequest.deleted_at.is_(None),
        ).limit(1))
        return res.scalars().first()

    async def count_by_requester_since(self, requested_by: uuid.UUID, since: datetime) -> int:
        res = await self.session.execute(select(func.count()).select_from(RescheduleRequest).where(
            RescheduleRequest.requested_by == requested_by,
            RescheduleRequest.created_at >= since,
        ))
        return int(res.scalar_one())

    async def list(
        self,
        org_id: uuid.UUID | None,
        *,
        status: str | None = None,
        requested_by: uuid.UUID | None = None,
        patient_ids: Sequence[uuid.UUID] | None = None,
        limit: int = 100,
    ) -> Sequence[RescheduleRequest]:
        cond = [RescheduleRequest.deleted_at.is_(None)]
        if org_id is not None:
            cond.append(RescheduleRequest.org_id == org_id)
        if status:
            cond.append(RescheduleRequest.status == status)
        if requested_by is not None or patient_ids:
            mine = []
            if requested_by is not None:
                mine.append(RescheduleRequest.requested_by == requested_by)
            if patient_ids:
                mine.append(RescheduleRequest.patient_id.in_(list(patient_ids)))
            cond.append(or_(*mine))
        q = select(RescheduleRequest).where(and_(*cond)).order_by(RescheduleRequest.created_at.desc()).limit(limit)
        res = await self.session.execute(q)
        return res.scalars().all()

    async def list_pending_with_preference(self, org_id: uuid.UUID, limit: int = 100) -> Sequence[RescheduleRequest]:
        res = await self.session.execute(select(RescheduleRequest).where(
            RescheduleRequest.org_id == org_id,
            RescheduleRequest.status == "pending",
            RescheduleRequest.requested_date.isnot(None),
            RescheduleRequest.requested_time.isnot(None),
            RescheduleRequest.deleted_at.is_(None),
        ).order_by(RescheduleRequest.created_at.asc()).limit(limit))
        return res.scalars().all()

    async def cancel_pending_before(self, org_id: uuid.UUID, before: datetime, *, processed_by: uuid.UUID | None, at: datetime) -> int:
        res = await self.session.execute(
            update(RescheduleRequest)
            .where(
                RescheduleRequest.org_id == org_id,
                RescheduleRequest.status == "pending",
                RescheduleRequest.created_at < before,
                RescheduleRequest.deleted_at.is_(None),
            )
            .values(status="cancelled", processed_by=processed_by, processed_at=at)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount or 0
