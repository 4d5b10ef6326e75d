import uuid
from typing import Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from app.modules.tenants.models import Hospital

class HospitalRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, org_id: uuid.UUID) -> Hospital | None:
        res = await self.session.execute(select(Hospital).where(Hospital.id == org_id, Hospital.deleted_at.is_(None)))
        return res.scalar_one_or_none()

    async def list_ids(self) -> Sequence[uuid.UUID]:
        res = await self.session.execute(select(Hospital.id).where(Hospital.deleted_at.is_(None)).order_by(Hospital.created_at.asc()))
        return res.scalars().all()
