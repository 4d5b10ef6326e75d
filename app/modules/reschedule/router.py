import uuid
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.db import get_session
from app.core.security import get_principal, require_scopes, Principal, is_tenant_superseding
from app.modules.reschedule.schemas import RescheduleCreate, RescheduleAction, RescheduleOut, CleanupOut
from app.modules.reschedule.service import RescheduleService

router = APIRouter()

def svc(session: AsyncSession = Depends(get_session)) -> RescheduleService:
    return RescheduleService(session)

@router.post("/reschedule-requests", response_model=RescheduleOut, status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(require_scopes("reschedule:write"))])
async def create_request(
    payload: RescheduleCreate,
    principal: Principal = Depends(get_principal),
    service: RescheduleService = Depends(svc),
):
    return await service.create(payload, principal)

@router.get("/reschedule-requests", response_model=list[RescheduleOut], dependencies=[Depends(require_scopes("reschedule:read"))])
async def list_requests(
    status: str | None = Query(default=None, pattern="^(pending|approved|rejected|cancelled)$"),
    limit: int = 100,
    hospital_id: uuid.UUID | None = None,
    principal: Principal = Depends(get_principal),
    service: RescheduleService = Depends(svc),
):
    # out-of-range limits are clamped rather than rejected
    return await service.list(principal, status=status, limit=limit, hospital_id=hospital_id)

@router.patch("/reschedule-requests/{request_id}", response_model=RescheduleOut,
              dependencies=[Depends(require_scopes("reschedule:write"))])
async def act_on_request(
    request_id: uuid.UUID,
    payload: RescheduleAction,
    principal: Principal = Depends(get_principal),
    service: RescheduleService = Depends(svc),
):
    return await service.act(request_id, payload, principal)

@router.post("/reschedule-requests/cleanup", response_model=CleanupOut,
             dependencies=[Depends(require_scopes("reschedule:write"))])
async def cleanup_stale_requests(
    hospital_id: uuid.UUID | None = None,
    principal: Principal = Depends(get_principal),
    service: RescheduleService = Depends(svc),
):
    org_id = hospital_id if (hospital_id and is_tenant_superseding(principal)) else principal.org_id
    return CleanupOut(cancelled=await service.cleanup_stale(org_id, principal))
