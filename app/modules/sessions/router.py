import uuid
from datetime import date, datetime
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.db import get_session
from app.core.security import get_principal, require_scopes, Principal, is_tenant_superseding
from app.modules.sessions.schemas import (
    STATUS_PATTERN, SessionCreate, SessionUpdate, SessionStatusChange, SessionFilters, SessionOut,
)
from app.modules.sessions.service import SessionService

router = APIRouter()

def svc(session: AsyncSession = Depends(get_session)) -> SessionService:
    return SessionService(session)

@router.get("/sessions", response_model=list[SessionOut], dependencies=[Depends(require_scopes("sessions:read"))])
async def list_sessions(
    patient_id: uuid.UUID | None = None,
    staff_id: uuid.UUID | None = None,
    status: str | None = Query(default=None, pattern=STATUS_PATTERN),
    scheduled_date: date | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    hospital_id: uuid.UUID | None = None,
    limit: int = Query(default=200, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_principal),
    service: SessionService = Depends(svc),
):
    filters = SessionFilters(
        patient_id=patient_id, staff_id=staff_id, status=status, scheduled_date=scheduled_date,
        date_from=date_from, date_to=date_to, hospital_id=hospital_id, limit=limit, offset=offset,
    )
    return await service.list(principal, filters)

@router.get("/sessions/{session_id}", response_model=SessionOut, dependencies=[Depends(require_scopes("sessions:read"))])
async def get_session_detail(
    session_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: SessionService = Depends(svc),
):
    return await service.get(session_id, principal)

@router.post("/sessions", response_model=SessionOut, status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(require_scopes("sessions:write"))])
async def create_session(
    payload: SessionCreate,
    principal: Principal = Depends(get_principal),
    service: SessionService = Depends(svc),
):
    org_id = payload.hospital_id if (payload.hospital_id and is_tenant_superseding(principal)) else principal.org_id
    return await service.create(org_id, payload, principal)

@router.patch("/sessions/{session_id}", response_model=SessionOut, dependencies=[Depends(require_scopes("sessions:write"))])
async def update_session(
    session_id: uuid.UUID,
    payload: SessionUpdate,
    principal: Principal = Depends(get_principal),
    service: SessionService = Depends(svc),
):
    return await service.modify(session_id, payload, principal)

@router.post("/sessions/{session_id}/status", response_model=SessionOut, dependencies=[Depends(require_scopes("sessions:write"))])
async def change_status(
    session_id: uuid.UUID,
    payload: SessionStatusChange,
    principal: Principal = Depends(get_principal),
    service: SessionService = Depends(svc),
):
    return await service.transition_status(session_id, payload.status, principal, observations=payload.observations)

@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT,
               dependencies=[Depends(require_scopes("sessions:write"))])
async def delete_session(
    session_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: SessionService = Depends(svc),
):
    await service.delete(session_id, principal)
