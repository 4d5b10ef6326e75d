from datetime import date
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.db import get_session
from app.core.security import get_principal, require_scopes, Principal
from app.modules.directory.schemas import RoomAvailabilityOut, RoomAvailabilityQuery
from app.modules.sessions.allocator import ResourceAllocator
from app.modules.tenants.policy import load_policy, parse_local_slot

router = APIRouter()

@router.get("/rooms/availability", response_model=list[RoomAvailabilityOut], dependencies=[Depends(require_scopes("rooms:read"))])
async def room_availability(
    therapy_type: str,
    date: date,
    time: str = Query(pattern=r"^\d{1,2}:\d{2}$"),
    duration: int = Query(default=60, ge=1, le=24 * 60),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    q = RoomAvailabilityQuery(therapy_type=therapy_type, date=date, time=time, duration=duration)
    policy = await load_policy(s, principal.org_id)
    start = parse_local_slot(policy, q.date.isoformat(), q.time)
    window = policy.effective_window(start, q.duration, q.therapy_type)
    return await ResourceAllocator(s, policy).room_availability(q.therapy_type, window)
