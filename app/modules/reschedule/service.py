import uuid
import logging
from datetime import datetime, timedelta
from typing import Callable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    AuthorizationError, NotFoundError, RateLimited, ResourceConflict, SchedulingError, ValidationError,
)
from app.core.locks import booking_lock
from app.core.security import (
    SCHEDULER_WORKER, Principal, acts_for_patient, can_manage_reschedule, ensure_tenant_scope, is_tenant_superseding,
)
from app.modules.events.outbox import OutboxService
from app.modules.notifications.service import NotificationsService
from app.modules.reschedule.models import RescheduleRequest
from app.modules.reschedule.repository import RescheduleRepository
from app.modules.reschedule.schemas import RescheduleAction, RescheduleCreate
from app.modules.sessions.allocator import ResourceAllocator
from app.modules.sessions.models import TherapySession
from app.modules.sessions.repository import SessionRepository
from app.modules.sessions.service import LOCKED_FOR_EDIT, SessionService
from app.modules.tenants.policy import TenantPolicy, load_policy, parse_local_slot, utcnow

logger = logging.getLogger(__name__)

RATE_WINDOW = timedelta(days=7)
MAX_LIST_LIMIT = 200


class RescheduleService:
    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.clock = clock
        self.requests = RescheduleRepository(session)
        self.sessions = SessionRepository(session)
        self.lifecycle = SessionService(session, clock)

    async def _check_preference(self, policy: TenantPolicy, target: TherapySession, start: datetime) -> None:
        """A preferred slot must be open and leave room for the session."""
        window = policy.effective_window(start, target.duration_minutes, target.therapy_type)
        policy.check_window(window, target.therapy_type)
        await ResourceAllocator(self.session, policy).allocate_room(target.therapy_type, window, None, exclude_id=target.id)

    # ---- create ----

    async def create(self, payload: RescheduleCreate, actor: Principal) -> RescheduleRequest:
        target = await self.sessions.get(payload.session_id)
        if not target:
            raise NotFoundError("session_not_found", "Session not found")
        ensure_tenant_scope(actor, target.org_id)
        if not (acts_for_patient(actor, target.patient_id) or can_manage_reschedule(actor)):
            raise AuthorizationError(message="Not allowed to request a reschedule for this session")
        if target.status in LOCKED_FOR_EDIT:
            raise ValidationError("session_locked", f"Session is {target.status} and can no longer be moved", status=target.status)

        if await self.requests.pending_for_session(target.id):
            raise ResourceConflict("request_pending", "A reschedule request is already pending for this session")

        policy = await load_policy(self.session, target.org_id)
        now = self.clock()
        weekly_cap = policy.policies.max_reschedule_requests_per_week
        if weekly_cap > 0:
            recent = await self.requests.count_by_requester_since(actor.user_id, now - RATE_WINDOW)
            if recent >= weekly_cap:
                raise RateLimited("rate_limited", "Too many reschedule requests this week", limit=weekly_cap)

        requested_date = payload.requested_date.isoformat() if payload.requested_date else None
        if requested_date and payload.requested_time:
            start = parse_local_slot(policy, requested_date, payload.requested_time)
            await self._check_preference(policy, target, start)

        req = await self.requests.create(
            target.org_id,
            session_id=target.id,
            patient_id=target.patient_id,
            requested_by=actor.user_id,
            requested_date=requested_date,
            requested_time=payload.requested_time,
            reason=payload.reason,
            status="pending",
            created_at=now,
        )
        await OutboxService(self.session).enqueue(
            target.org_id, "RESCHEDULE_REQUESTED", "reschedule_request", req.id,
            {"session_id": str(target.id), "requested_date": requested_date, "requested_time": payload.requested_time},
        )
        await NotificationsService(self.session).emit(
            target.org_id, title="Reschedule Request",
            message=f"A reschedule was requested for session {target.id}.",
        )
        await self.session.commit()
        logger.info("Reschedule request %s opened for session %s", req.id, target.id)
        return req

    # ---- read ----

    async def list(self, actor: Principal, *, status: str | None = None, limit: int = 100,
                   hospital_id: uuid.UUID | None = None) -> Sequence[RescheduleRequest]:
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        org_id = hospital_id if is_tenant_superseding(actor) else actor.org_id
        if can_manage_reschedule(actor):
            return await self.requests.list(org_id, status=status, limit=limit)
        return await self.requests.list(
            org_id, status=status, requested_by=actor.user_id, patient_ids=actor.patient_ids, limit=limit,
        )

    # ---- resolve ----

    def _close(self, req: RescheduleRequest, status: str, actor: Principal | None) -> None:
        req.status = status
        req.processed_by = actor.user_id if actor and not actor.has_role(SCHEDULER_WORKER) else None
        req.processed_at = self.clock()

    async def _resolved(self, req: RescheduleRequest) -> None:
        await OutboxService(self.session).enqueue(
            req.org_id, "RESCHEDULE_RESOLVED", "reschedule_request", req.id,
            {"session_id": str(req.session_id), "status": req.status},
        )
        await NotificationsService(self.session).emit(
            req.org_id, title="Reschedule Request Update",
            message=f"Your reschedule request was {req.status}.", user_id=req.requested_by,
        )

    async def act(self, request_id: uuid.UUID, payload: RescheduleAction, actor: Principal) -> RescheduleRequest:
        if not can_manage_reschedule(actor):
            raise AuthorizationError(message="Not allowed to manage reschedule requests")
        req = await self.requests.get(request_id)
        if not req:
            raise NotFoundError("request_not_found", "Reschedule request not found")
        ensure_tenant_scope(actor, req.org_id)
        if req.status != "pending":
            raise ValidationError("request_closed", f"Request is already {req.status}", status=req.status)

        if payload.status != "approved":
            self._close(req, payload.status, actor)
            await self._resolved(req)
            await self.session.commit()
            return req

        async with booking_lock(self.session, req.org_id):
            policy = await load_policy(self.session, req.org_id)
            if payload.scheduled_at is not None:
                start = payload.scheduled_at
            elif req.requested_date and req.requested_time:
                start = parse_local_slot(policy, req.requested_date, req.requested_time)
            else:
                raise ValidationError("approval_requires_slot", "Approving a request without a preferred slot needs scheduled_at")
            target = await self.sessions.get(req.session_id)
            if not target:
                raise NotFoundError("session_not_found", "Session not found")
            await self.lifecycle.move(target, policy, actor, start, room_id=payload.room_id, status="scheduled")
            self._close(req, "approved", actor)
            await self._resolved(req)
            await self.lifecycle.commit()
        logger.info("Reschedule request %s approved; session %s moved to %s", req.id, target.id, start.isoformat())
        return req

    async def auto_approve(self, org_id: uuid.UUID, policy: TenantPolicy, *, limit: int = 100) -> int:
        """Approve pending requests whose preferred slot now passes every
        check. Requests that fail stay pending for a later sweep."""
        actor = Principal.system(org_id)
        approved = 0
        # ids only: a failed commit rolls back and expires loaded rows
        pending = [(r.id, r.session_id) for r in await self.requests.list_pending_with_preference(org_id, limit)]
        for req_id, session_id in pending:
            try:
                async with booking_lock(self.session, org_id):
                    req = await self.requests.get(req_id)
                    target = await self.sessions.get(session_id)
                    if not req or req.status != "pending" or not target:
                        continue
                    start = parse_local_slot(policy, req.requested_date, req.requested_time)
                    await self.lifecycle.move(target, policy, actor, start, status="awaiting_confirmation")
                    self._close(req, "approved", actor)
                    await self._resolved(req)
                    await self.lifecycle.commit()
            except SchedulingError as e:
                await self.session.rollback()
                logger.info("Request %s left pending: %s", req_id, e.code)
                continue
            approved += 1
        return approved

    # ---- stale cleanup ----

    async def cleanup_stale(self, org_id: uuid.UUID, actor: Principal | None = None) -> int:
        if actor is not None:
            if not can_manage_reschedule(actor):
                raise AuthorizationError(message="Not allowed to manage reschedule requests")
            ensure_tenant_scope(actor, org_id)
        policy = await load_policy(self.session, org_id)
        now = self.clock()
        hours = policy.stale_request_hours(settings.DEFAULT_STALE_REQUEST_HOURS)
        processed_by = actor.user_id if actor is not None else None
        count = await self.requests.cancel_pending_before(org_id, now - timedelta(hours=hours), processed_by=processed_by, at=now)
        await self.session.commit()
        if count:
            logger.info("Cancelled %d stale reschedule requests for org %s (older than %dh)", count, org_id, hours)
        return count
