import uuid
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Sequence

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    AuthorizationError, InvalidTransition, NotFoundError, PolicyViolation,
    ResourceConflict, ValidationError,
)
from app.core.locks import booking_lock
from app.core.security import (
    Principal, acts_for_patient, can_approve_as_admin, can_approve_as_doctor,
    can_deliver_sessions, can_schedule_sessions, ensure_tenant_scope, is_tenant_superseding,
)
from app.modules.directory.models import Room
from app.modules.events.outbox import OutboxService
from app.modules.sessions.allocator import ResourceAllocator
from app.modules.sessions.conflicts import ConflictEngine
from app.modules.sessions.models import TherapySession, TERMINAL_STATUSES
from app.modules.sessions.repository import SessionRepository
from app.modules.sessions.schemas import SessionCreate, SessionFilters, SessionUpdate
from app.modules.tenants.policy import (
    TenantPolicy, Window, as_utc, load_policy, normalize_therapy_type, utcnow,
)

logger = logging.getLogger(__name__)

VALID_NEXT = {
    "awaiting_confirmation": {"scheduled", "confirmed", "in_progress", "cancelled", "no_show"},
    "scheduled": {"confirmed", "in_progress", "cancelled", "no_show"},
    "confirmed": {"in_progress", "completed", "cancelled", "no_show"},
    "in_progress": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
    "no_show": set(),
}

# no time/room/staff edits once delivery started or the session is closed
LOCKED_FOR_EDIT = {"in_progress"} | TERMINAL_STATUSES

SCHEDULE_FIELDS = {"scheduled_at", "duration_minutes", "therapy_type", "staff_id", "room_id"}


@dataclass
class Booking:
    """A slot that passed every policy and resource check."""
    window: Window
    therapy_type: str
    scheduled_at: datetime
    duration_minutes: int
    staff_id: uuid.UUID | None
    room: Room


class SessionService:
    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.clock = clock
        self.sessions = SessionRepository(session)

    # ---- validation pipeline ----

    async def validate_booking(
        self,
        policy: TenantPolicy,
        actor: Principal,
        *,
        patient_id: uuid.UUID,
        therapy_type: str,
        scheduled_at: datetime,
        duration_minutes: int,
        staff_id: uuid.UUID | None = None,
        room_id: uuid.UUID | None = None,
        exclude_id: uuid.UUID | None = None,
        auto_assign: bool = True,
        fallback_room: bool = False,
    ) -> Booking:
        """Run every check a booking must pass, in order, without writing.

        Raises the first failure. ``exclude_id`` removes a session's own
        occupancy when it is being moved. With ``fallback_room`` an
        unavailable ``room_id`` falls back to automatic allocation.
        """
        if duration_minutes < settings.SESSION_MIN_DURATION_MINUTES:
            raise ValidationError("invalid_duration", f"Sessions last at least {settings.SESSION_MIN_DURATION_MINUTES} minutes",
                                  duration_minutes=duration_minutes)
        kind = normalize_therapy_type(therapy_type)
        if not kind:
            raise ValidationError("invalid_therapy_type", "Therapy type is required")

        window = policy.effective_window(scheduled_at, duration_minutes, kind)
        policy.check_window(window, kind)
        policy.check_lead_time(window.start, self.clock(), exempt=is_tenant_superseding(actor))

        conflicts = ConflictEngine(self.session, policy)
        allocator = ResourceAllocator(self.session, policy)
        caps = policy.policies

        if caps.max_sessions_per_patient_per_day:
            booked = await conflicts.day_load("patient", patient_id, window, exclude_id)
            if booked >= caps.max_sessions_per_patient_per_day:
                raise PolicyViolation("patient_daily_cap", "Patient already has the maximum sessions for that day",
                                      limit=caps.max_sessions_per_patient_per_day)
        if await conflicts.has_overlap("patient", patient_id, window, exclude_id):
            raise ResourceConflict("patient_conflict", "Patient already has a session at that time")

        if staff_id is not None:
            await self._check_staff(conflicts, policy, staff_id, window, exclude_id)
        elif auto_assign and caps.auto_assign_staff:
            staff_id = await self._auto_assign(conflicts, allocator, policy, window, exclude_id)

        try:
            room = await allocator.allocate_room(kind, window, room_id, exclude_id)
        except (ResourceConflict, NotFoundError):
            if not (fallback_room and room_id is not None):
                raise
            room = await allocator.allocate_room(kind, window, None, exclude_id)

        return Booking(window=window, therapy_type=kind, scheduled_at=window.start,
                       duration_minutes=duration_minutes, staff_id=staff_id, room=room)

    async def _check_staff(self, conflicts: ConflictEngine, policy: TenantPolicy, staff_id: uuid.UUID,
                           window: Window, exclude_id: uuid.UUID | None) -> None:
        cap = policy.policies.max_sessions_per_staff_per_day
        if cap and await conflicts.day_load("staff", staff_id, window, exclude_id) >= cap:
            raise PolicyViolation("staff_daily_cap", "Staff member already has the maximum sessions for that day", limit=cap)
        if await conflicts.has_overlap("staff", staff_id, window, exclude_id):
            raise ResourceConflict("staff_conflict", "Staff member already has a session at that time")

    async def _auto_assign(self, conflicts: ConflictEngine, allocator: ResourceAllocator, policy: TenantPolicy,
                           window: Window, exclude_id: uuid.UUID | None) -> uuid.UUID | None:
        candidates = await allocator.staff_candidates()
        if not candidates:
            return None
        for staff_id in await allocator.rank_staff(candidates, window):
            try:
                await self._check_staff(conflicts, policy, staff_id, window, exclude_id)
            except (PolicyViolation, ResourceConflict):
                continue
            return staff_id
        raise ResourceConflict("no_staff_available", "No staff member is free for this slot")

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except DBAPIError as e:
            await self.session.rollback()
            logger.warning("Booking commit failed: %s", e)
            raise ResourceConflict("booking_contention", "Slot changed while booking; try again", retryable=True)

    # ---- create ----

    async def create(
        self,
        org_id: uuid.UUID,
        payload: SessionCreate,
        actor: Principal,
        *,
        status: str = "scheduled",
        origin: str = "manual",
        policy: TenantPolicy | None = None,
    ) -> TherapySession:
        if not can_schedule_sessions(actor):
            raise AuthorizationError(message="Not allowed to schedule sessions")
        ensure_tenant_scope(actor, org_id)

        async with booking_lock(self.session, org_id):
            policy = policy or await load_policy(self.session, org_id)
            booking = await self.validate_booking(
                policy, actor,
                patient_id=payload.patient_id,
                therapy_type=payload.therapy_type,
                scheduled_at=payload.scheduled_at,
                duration_minutes=payload.duration_minutes,
                staff_id=payload.staff_id,
                room_id=payload.room_id,
            )
            obj = await self.sessions.create(
                org_id,
                patient_id=payload.patient_id,
                staff_id=booking.staff_id,
                room_id=booking.room.id,
                therapy_type=booking.therapy_type,
                scheduled_at=booking.scheduled_at,
                duration_minutes=booking.duration_minutes,
                status=status,
                origin=origin,
                approvals={"doctor_approved": False, "admin_approved": False},
                outcomes={},
                notes=payload.notes,
                created_by=actor.user_id,
            )
            await OutboxService(self.session).enqueue(
                org_id, "SESSION_CREATED", "therapy_session", obj.id,
                {"start": booking.scheduled_at.isoformat(), "room_id": str(booking.room.id), "origin": origin},
            )
            await self.commit()
        logger.info("Session %s booked for patient %s at %s in room %s", obj.id, obj.patient_id, booking.scheduled_at.isoformat(), booking.room.id)
        return obj

    # ---- read ----

    async def _load(self, session_id: uuid.UUID, actor: Principal) -> TherapySession:
        obj = await self.sessions.get(session_id)
        if not obj:
            raise NotFoundError("session_not_found", "Session not found")
        ensure_tenant_scope(actor, obj.org_id)
        return obj

    async def get(self, session_id: uuid.UUID, actor: Principal) -> TherapySession:
        obj = await self._load(session_id, actor)
        if can_schedule_sessions(actor) or can_deliver_sessions(actor) or acts_for_patient(actor, obj.patient_id):
            return obj
        raise AuthorizationError()

    async def list(self, actor: Principal, filters: SessionFilters) -> Sequence[TherapySession]:
        org_id: uuid.UUID | None = actor.org_id
        if is_tenant_superseding(actor):
            org_id = filters.hospital_id
        patient_ids = [filters.patient_id] if filters.patient_id else None
        staff_id = filters.staff_id

        if can_schedule_sessions(actor):
            pass
        elif actor.has_role("doctor", "therapist"):
            staff_id = actor.user_id
        elif actor.patient_ids:
            allowed = set(actor.patient_ids)
            patient_ids = [p for p in (patient_ids or actor.patient_ids) if p in allowed]
        else:
            raise AuthorizationError()

        start = as_utc(filters.date_from) if filters.date_from else None
        end = as_utc(filters.date_to) if filters.date_to else None
        if filters.scheduled_date:
            if org_id is not None:
                day = (await load_policy(self.session, org_id)).local_day_bounds(filters.scheduled_date)
                start, end = day.start, day.end
            else:
                # cross-tenant listing has no hospital calendar; use the UTC day
                start = datetime.combine(filters.scheduled_date, time.min, tzinfo=timezone.utc)
                end = start + timedelta(days=1)
        return await self.sessions.list(
            org_id, patient_ids=patient_ids, staff_id=staff_id, status=filters.status,
            start=start, end=end, limit=filters.limit, offset=filters.offset,
        )

    # ---- modify ----

    async def apply_schedule_change(
        self,
        obj: TherapySession,
        policy: TenantPolicy,
        actor: Principal,
        changes: dict,
        *,
        keep_room_if_free: bool = True,
    ) -> Booking:
        """Validate and apply new time/room/staff/therapy values in place.

        Caller holds the booking lock and commits. Fields absent from
        ``changes`` keep their current values; a current room that cannot
        take the new window is swapped for an allocated one unless a room
        was explicitly requested.
        """
        if obj.status in LOCKED_FOR_EDIT:
            raise ValidationError("session_locked", f"Session is {obj.status} and can no longer be changed", status=obj.status)
        explicit_room = "room_id" in changes
        booking = await self.validate_booking(
            policy, actor,
            patient_id=obj.patient_id,
            therapy_type=changes.get("therapy_type", obj.therapy_type),
            scheduled_at=changes.get("scheduled_at", obj.scheduled_at),
            duration_minutes=changes.get("duration_minutes", obj.duration_minutes),
            staff_id=changes.get("staff_id", obj.staff_id),
            room_id=changes["room_id"] if explicit_room else (obj.room_id if keep_room_if_free else None),
            exclude_id=obj.id,
            fallback_room=not explicit_room,
        )
        obj.scheduled_at = booking.scheduled_at
        obj.duration_minutes = booking.duration_minutes
        obj.therapy_type = booking.therapy_type
        obj.staff_id = booking.staff_id
        obj.room_id = booking.room.id
        await self.session.flush()
        return booking

    async def move(
        self,
        obj: TherapySession,
        policy: TenantPolicy,
        actor: Principal,
        scheduled_at: datetime,
        *,
        room_id: uuid.UUID | None = None,
        status: str | None = None,
    ) -> Booking:
        """Reschedule on behalf of an approved request. Caller holds the
        booking lock and commits, so request and session change together."""
        changes: dict = {"scheduled_at": scheduled_at}
        if room_id is not None:
            changes["room_id"] = room_id
        booking = await self.apply_schedule_change(obj, policy, actor, changes)
        if status and status != obj.status:
            prev, obj.status = obj.status, status
            await OutboxService(self.session).enqueue(
                obj.org_id, "SESSION_STATUS_CHANGED", "therapy_session", obj.id, {"from": prev, "to": status},
            )
        await self._emit_updated(obj, sorted(changes))
        return booking

    async def modify(self, session_id: uuid.UUID, payload: SessionUpdate, actor: Principal) -> TherapySession:
        obj = await self._load(session_id, actor)
        data = payload.model_dump(exclude_unset=True)
        approvals_patch = data.pop("approvals", None) or {}

        touched = set(data) & SCHEDULE_FIELDS
        if (touched or "notes" in data) and not can_schedule_sessions(actor):
            raise AuthorizationError(message="Not allowed to reschedule sessions")
        if approvals_patch.get("doctor_approved") is not None and not can_approve_as_doctor(actor):
            raise AuthorizationError(message="Only doctors can set doctor approval")
        if approvals_patch.get("admin_approved") is not None and not can_approve_as_admin(actor):
            raise AuthorizationError(message="Only clinic administrators can set admin approval")
        if obj.status in LOCKED_FOR_EDIT and (touched or approvals_patch):
            raise ValidationError("session_locked", f"Session is {obj.status} and can no longer be changed", status=obj.status)

        if touched:
            async with booking_lock(self.session, obj.org_id):
                policy = await load_policy(self.session, obj.org_id)
                changes = {k: data[k] for k in touched}
                await self.apply_schedule_change(obj, policy, actor, changes)
                self._apply_plain_fields(obj, data, approvals_patch)
                await self._emit_updated(obj, sorted(touched))
                await self.commit()
        else:
            self._apply_plain_fields(obj, data, approvals_patch)
            await self._emit_updated(obj, [])
            await self.commit()
        return obj

    def _apply_plain_fields(self, obj: TherapySession, data: dict, approvals_patch: dict) -> None:
        if "notes" in data:
            obj.notes = data["notes"]
        if approvals_patch:
            approvals = dict(obj.approvals or {})
            for k, v in approvals_patch.items():
                if v is not None:
                    approvals[k] = bool(v)
            obj.approvals = approvals

    async def _emit_updated(self, obj: TherapySession, fields: Sequence[str]) -> None:
        await OutboxService(self.session).enqueue(
            obj.org_id, "SESSION_UPDATED", "therapy_session", obj.id,
            {"fields": list(fields), "start": as_utc(obj.scheduled_at).isoformat(), "room_id": str(obj.room_id) if obj.room_id else None},
        )

    # ---- status ----

    def _check_transition_role(self, actor: Principal, nxt: str) -> None:
        if nxt in {"in_progress", "completed", "no_show"}:
            allowed = can_deliver_sessions(actor)
        else:
            allowed = can_schedule_sessions(actor)
        if not allowed:
            raise AuthorizationError(message=f"Not allowed to mark sessions {nxt}")

    async def transition_status(self, session_id: uuid.UUID, new_status: str, actor: Principal,
                                observations: str | None = None) -> TherapySession:
        obj = await self._load(session_id, actor)
        prev = obj.status
        if new_status != prev and new_status not in VALID_NEXT.get(prev, set()):
            raise InvalidTransition(prev, new_status)
        self._check_transition_role(actor, new_status)

        if new_status == "cancelled" and prev != "cancelled":
            policy = await load_policy(self.session, obj.org_id)
            policy.check_lead_time(obj.scheduled_at, self.clock(), exempt=is_tenant_superseding(actor))

        now = self.clock()
        outcomes = dict(obj.outcomes or {})
        if new_status == "in_progress" and not outcomes.get("started_at"):
            outcomes["started_at"] = now.isoformat()
        if new_status == "completed":
            if not outcomes.get("completed_at"):
                outcomes["completed_at"] = now.isoformat()
        if observations is not None:
            if not can_deliver_sessions(actor):
                raise AuthorizationError(message="Not allowed to record observations")
            outcomes["observations"] = observations
        obj.outcomes = outcomes
        obj.status = new_status

        if new_status != prev:
            await OutboxService(self.session).enqueue(
                obj.org_id, "SESSION_STATUS_CHANGED", "therapy_session", obj.id, {"from": prev, "to": new_status},
            )
        await self.commit()
        return obj

    # ---- delete ----

    async def delete(self, session_id: uuid.UUID, actor: Principal) -> None:
        obj = await self._load(session_id, actor)
        if not can_schedule_sessions(actor):
            raise AuthorizationError(message="Not allowed to delete sessions")
        policy = await load_policy(self.session, obj.org_id)
        policy.check_lead_time(obj.scheduled_at, self.clock(), exempt=is_tenant_superseding(actor))
        org_id, sid = obj.org_id, obj.id
        await self.sessions.delete(obj)
        await OutboxService(self.session).enqueue(org_id, "SESSION_DELETED", "therapy_session", sid, {})
        await self.commit()
