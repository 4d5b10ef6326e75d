import uuid
from typing import Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from app.modules.directory.models import Room, StaffMember

class DirectoryRepository:
    def __init__(self, s: AsyncSession): self.s = s

    async def get_room(self, org: uuid.UUID, room_id: uuid.UUID) -> Room | None:
        res = await self.s.execute(select(Room).where(Room.id == room_id, Room.org_id == org, Room.deleted_at.is_(None)))
        return res.scalar_one_or_none()

    async def list_active_rooms(self, org: uuid.UUID) -> Sequence[Room]:
        res = await self.s.execute(select(Room).where(
            Room.org_id == org, Room.status == "active", Room.deleted_at.is_(None)
        ).order_by(Room.name.asc(), Room.id.asc()))
        return res.scalars().all()

    async def list_assignable_staff(self, org: uuid.UUID, role: str = "therapist") -> Sequence[StaffMember]:
        res = await self.s.execute(select(StaffMember).where(
            StaffMember.org_id == org, StaffMember.role == role,
            StaffMember.active.is_(True), StaffMember.deleted_at.is_(None)
        ).order_by(StaffMember.name.asc(), StaffMember.id.asc()))
        return res.scalars().all()
