"""Overlap and room-capacity checks.

Windows are always ``[scheduled_at, scheduled_at + duration + buffer)`` with
the buffer looked up from the hospital's current therapy configuration, both
for the proposed booking and for every stored session it is compared with.
"""
import uuid
from dataclasses import dataclass
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.directory.models import Room
from app.modules.sessions.models import TherapySession
from app.modules.sessions.repository import SessionRepository
from app.modules.tenants.policy import TenantPolicy, Window

@dataclass(frozen=True)
class CapacityCheck:
    ok: bool
    occupied: int
    capacity: int

    @property
    def spare(self) -> int:
        return max(0, self.capacity - self.occupied)


class ConflictEngine:
    def __init__(self, s: AsyncSession, policy: TenantPolicy):
        self.repo = SessionRepository(s)
        self.policy = policy

    def window_of(self, obj: TherapySession) -> Window:
        return self.policy.effective_window(obj.scheduled_at, obj.duration_minutes, obj.therapy_type)

    async def overlapping(self, kind: str, resource_id: uuid.UUID, window: Window, exclude_id: uuid.UUID | None = None) -> Sequence[TherapySession]:
        day = self.policy.day_bounds(window.start)
        candidates = await self.repo.list_for_resource(
            self.policy.org_id, kind, resource_id, day.start, max(day.end, window.end), exclude_id=exclude_id,
        )
        return [c for c in candidates if self.window_of(c).overlaps(window)]

    async def has_overlap(self, kind: str, resource_id: uuid.UUID | None, window: Window, exclude_id: uuid.UUID | None = None) -> bool:
        if resource_id is None:
            return False
        return bool(await self.overlapping(kind, resource_id, window, exclude_id))

    async def room_capacity_check(self, room: Room, window: Window, exclude_id: uuid.UUID | None = None) -> CapacityCheck:
        capacity = max(0, room.capacity or 0)
        occupied = len(await self.overlapping("room", room.id, window, exclude_id))
        return CapacityCheck(ok=capacity > 0 and occupied < capacity, occupied=occupied, capacity=capacity)

    async def day_load(self, kind: str, resource_id: uuid.UUID, window: Window, exclude_id: uuid.UUID | None = None) -> int:
        day = self.policy.day_bounds(window.start)
        return await self.repo.count_for_resource(self.policy.org_id, kind, resource_id, day.start, day.end, exclude_id=exclude_id)
