"""Room and staff allocation on top of the conflict engine."""
import uuid
import logging
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ResourceConflict, NotFoundError
from app.modules.directory.models import Room
from app.modules.directory.repository import DirectoryRepository
from app.modules.sessions.conflicts import ConflictEngine
from app.modules.tenants.policy import TenantPolicy, Window, normalize_therapy_type

logger = logging.getLogger(__name__)

def supports_therapy(room: Room, therapy_type: str) -> bool:
    kinds = {normalize_therapy_type(t) for t in (room.therapy_types or [])}
    return not kinds or normalize_therapy_type(therapy_type) in kinds


class ResourceAllocator:
    def __init__(self, s: AsyncSession, policy: TenantPolicy):
        self.policy = policy
        self.directory = DirectoryRepository(s)
        self.conflicts = ConflictEngine(s, policy)

    async def allocate_room(self, therapy_type: str, window: Window, requested_room_id: uuid.UUID | None = None,
                            exclude_id: uuid.UUID | None = None) -> Room:
        org = self.policy.org_id
        if requested_room_id is not None:
            room = await self.directory.get_room(org, requested_room_id)
            if room is None or room.status != "active":
                raise NotFoundError("room_not_found", "Room not found or inactive", room_id=str(requested_room_id))
            if not supports_therapy(room, therapy_type):
                raise ResourceConflict("therapy_unsupported", f"Room '{room.name}' does not support {therapy_type}", room_id=str(room.id))
            check = await self.conflicts.room_capacity_check(room, window, exclude_id)
            if not check.ok:
                raise ResourceConflict("room_full", f"Room '{room.name}' is at capacity", room_id=str(room.id),
                                       occupied=check.occupied, capacity=check.capacity)
            return room

        for room in await self.directory.list_active_rooms(org):
            if not supports_therapy(room, therapy_type):
                continue
            check = await self.conflicts.room_capacity_check(room, window, exclude_id)
            if check.ok:
                return room
        raise ResourceConflict("no_room_available", "No room with spare capacity for this slot")

    async def room_availability(self, therapy_type: str, window: Window, exclude_id: uuid.UUID | None = None) -> list[dict]:
        out = []
        for room in await self.directory.list_active_rooms(self.policy.org_id):
            if not supports_therapy(room, therapy_type):
                continue
            check = await self.conflicts.room_capacity_check(room, window, exclude_id)
            out.append({
                "room_id": room.id, "name": room.name,
                "capacity": check.capacity, "occupied": check.occupied, "spare": check.spare,
            })
        return out

    async def staff_candidates(self) -> list[uuid.UUID]:
        return [m.id for m in await self.directory.list_assignable_staff(self.policy.org_id)]

    async def rank_staff(self, candidate_ids: Sequence[uuid.UUID], window: Window) -> list[uuid.UUID]:
        """Candidates ordered by that day's non-cancelled load, ties kept in
        input order. Greedy: no look-ahead over the rest of the day."""
        loads = [(await self.conflicts.day_load("staff", sid, window), i, sid) for i, sid in enumerate(candidate_ids)]
        return [sid for _, _, sid in sorted(loads)]
