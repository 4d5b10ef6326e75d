import asyncio
import uuid
from datetime import datetime, timezone

import pytest

from app.core.errors import (
    AuthorizationError, InvalidTransition, PolicyViolation, ResourceConflict, ValidationError,
)
from app.modules.sessions.schemas import ApprovalsPatch, SessionCreate, SessionFilters, SessionUpdate
from app.modules.sessions.service import SessionService
from app.modules.tenants.policy import as_utc

UTC = timezone.utc


def at(day: int, hh: int, mm: int = 0) -> datetime:
    return datetime(2025, 5, day, hh, mm, tzinfo=UTC)


def payload(patient_id=None, when=None, **kw) -> SessionCreate:
    return SessionCreate(patient_id=patient_id or uuid.uuid4(), therapy_type=kw.pop("therapy_type", "Abhyanga"),
                         scheduled_at=when or at(6, 14), **kw)


@pytest.fixture
async def clinic(seed):
    h = await seed.hospital(policies={"lead_time_hours": 2})
    await seed.room(h.id, "Room A", capacity=5)
    return h


async def test_create_normalizes_and_records_event(db, seed, clock, clinic, actors):
    svc = SessionService(db, clock)
    obj = await svc.create(clinic.id, payload(), actors["office_executive"](clinic.id))
    assert obj.therapy_type == "abhyanga"
    assert obj.status == "scheduled"
    assert obj.room_id is not None
    assert obj.approvals == {"doctor_approved": False, "admin_approved": False}
    events = await seed.events("SESSION_CREATED")
    assert [e.subject_id for e in events] == [str(obj.id)]


async def test_lead_time_floor_for_non_privileged_staff(db, clock, clinic, actors):
    svc = SessionService(db, clock)
    staff = actors["office_executive"](clinic.id)
    with pytest.raises(PolicyViolation) as exc:
        await svc.create(clinic.id, payload(when=at(5, 11)), staff)
    assert exc.value.code == "lead_time"
    assert (await svc.create(clinic.id, payload(when=at(5, 13)), staff)).scheduled_at == at(5, 13)


async def test_super_admin_is_exempt_from_lead_time(db, clock, clinic, actors):
    obj = await SessionService(db, clock).create(clinic.id, payload(when=at(5, 11)), actors["super_admin"](uuid.uuid4()))
    assert obj.org_id == clinic.id


async def test_patient_daily_cap(db, seed, clock, actors):
    h = await seed.hospital(policies={"max_sessions_per_patient_per_day": 3})
    await seed.room(h.id, "Room A", capacity=5)
    svc = SessionService(db, clock)
    staff = actors["admin"](h.id)
    pid = uuid.uuid4()
    for hour in (9, 11, 13):
        await svc.create(h.id, payload(pid, at(10, hour)), staff)

    with pytest.raises(PolicyViolation) as exc:
        await svc.create(h.id, payload(pid, at(10, 15)), staff)
    assert exc.value.code == "patient_daily_cap"
    assert (await svc.create(h.id, payload(pid, at(11, 9)), staff)).scheduled_at == at(11, 9)


async def test_patient_cannot_be_double_booked(db, clock, clinic, actors):
    svc = SessionService(db, clock)
    staff = actors["admin"](clinic.id)
    pid = uuid.uuid4()
    await svc.create(clinic.id, payload(pid, at(6, 14)), staff)
    with pytest.raises(ResourceConflict) as exc:
        await svc.create(clinic.id, payload(pid, at(6, 14, 30), therapy_type="shirodhara"), staff)
    assert exc.value.code == "patient_conflict"


async def test_too_short_session_rejected(db, clock, clinic, actors):
    with pytest.raises(ValidationError) as exc:
        await SessionService(db, clock).create(clinic.id, payload(duration_minutes=5), actors["admin"](clinic.id))
    assert exc.value.code == "invalid_duration"


async def test_concurrent_bookings_never_overbook(session_factory, seed, clock, actors):
    h = await seed.hospital()
    await seed.room(h.id, "Solo Room", capacity=1)
    staff = actors["admin"](h.id)

    async def attempt():
        async with session_factory() as s:
            return await SessionService(s, clock).create(h.id, payload(), staff)

    results = await asyncio.gather(attempt(), attempt(), return_exceptions=True)
    booked = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, ResourceConflict)]
    assert len(booked) == 1
    assert len(rejected) == 1 and rejected[0].code == "no_room_available"


async def test_scheduling_requires_role_and_tenant(db, clock, clinic, actors):
    svc = SessionService(db, clock)
    pid = uuid.uuid4()
    with pytest.raises(AuthorizationError):
        await svc.create(clinic.id, payload(pid), actors["patient"](clinic.id, pid))
    with pytest.raises(AuthorizationError) as exc:
        await svc.create(clinic.id, payload(pid), actors["admin"](uuid.uuid4()))
    assert exc.value.code == "wrong_tenant"


async def test_status_lifecycle_and_outcome_stamps(db, seed, clock, clinic, actors):
    svc = SessionService(db, clock)
    obj = await svc.create(clinic.id, payload(), actors["admin"](clinic.id))
    therapist = actors["therapist"](clinic.id)

    await svc.transition_status(obj.id, "confirmed", actors["admin"](clinic.id))
    clock.advance(hours=28)
    await svc.transition_status(obj.id, "in_progress", therapist)
    started = obj.outcomes["started_at"]
    clock.advance(minutes=5)
    # repeating a status is a no-op for the stamps
    await svc.transition_status(obj.id, "in_progress", therapist)
    assert obj.outcomes["started_at"] == started

    clock.advance(minutes=55)
    await svc.transition_status(obj.id, "completed", therapist, observations="Tolerated well")
    assert obj.status == "completed"
    assert obj.outcomes["completed_at"] == clock().isoformat()
    assert obj.outcomes["observations"] == "Tolerated well"

    with pytest.raises(InvalidTransition):
        await svc.transition_status(obj.id, "scheduled", actors["admin"](clinic.id))
    changes = await seed.events("SESSION_STATUS_CHANGED")
    assert [e.payload["to"] for e in changes] == ["confirmed", "in_progress", "completed"]


async def test_therapist_cannot_cancel(db, clock, clinic, actors):
    svc = SessionService(db, clock)
    obj = await svc.create(clinic.id, payload(), actors["admin"](clinic.id))
    with pytest.raises(AuthorizationError):
        await svc.transition_status(obj.id, "cancelled", actors["therapist"](clinic.id))


async def test_cancel_inside_lead_time(db, clock, clinic, actors):
    svc = SessionService(db, clock)
    obj = await svc.create(clinic.id, payload(when=at(5, 13)), actors["admin"](clinic.id))
    clock.advance(hours=2)
    with pytest.raises(PolicyViolation):
        await svc.transition_status(obj.id, "cancelled", actors["admin"](clinic.id))
    cancelled = await svc.transition_status(obj.id, "cancelled", actors["super_admin"](clinic.id))
    assert cancelled.status == "cancelled"


async def test_modify_moves_session_and_keeps_free_room(db, seed, clock, clinic, actors):
    svc = SessionService(db, clock)
    staff = actors["admin"](clinic.id)
    obj = await svc.create(clinic.id, payload(), staff)
    room_id = obj.room_id

    moved = await svc.modify(obj.id, SessionUpdate(scheduled_at=at(7, 9), notes="moved by phone"), staff)
    assert moved.scheduled_at == at(7, 9)
    assert moved.room_id == room_id
    assert moved.notes == "moved by phone"
    updated = await seed.events("SESSION_UPDATED")
    assert updated[-1].payload["fields"] == ["scheduled_at"]


async def test_modify_validates_new_slot(db, clock, clinic, actors):
    svc = SessionService(db, clock)
    staff = actors["admin"](clinic.id)
    obj = await svc.create(clinic.id, payload(), staff)
    with pytest.raises(PolicyViolation) as exc:
        await svc.modify(obj.id, SessionUpdate(scheduled_at=at(6, 21)), staff)
    assert exc.value.code == "outside_business_hours"
    assert obj.scheduled_at == at(6, 14)


async def test_approvals_follow_roles(db, clock, clinic, actors):
    svc = SessionService(db, clock)
    obj = await svc.create(clinic.id, payload(), actors["admin"](clinic.id))

    await svc.modify(obj.id, SessionUpdate(approvals=ApprovalsPatch(doctor_approved=True)), actors["doctor"](clinic.id))
    await svc.modify(obj.id, SessionUpdate(approvals=ApprovalsPatch(admin_approved=True)), actors["admin"](clinic.id))
    assert obj.approvals == {"doctor_approved": True, "admin_approved": True}

    with pytest.raises(AuthorizationError):
        await svc.modify(obj.id, SessionUpdate(approvals=ApprovalsPatch(doctor_approved=False)), actors["admin"](clinic.id))
    with pytest.raises(AuthorizationError):
        await svc.modify(obj.id, SessionUpdate(scheduled_at=at(7, 9)), actors["doctor"](clinic.id))


async def test_completed_sessions_are_locked(db, clock, clinic, actors):
    svc = SessionService(db, clock)
    staff = actors["admin"](clinic.id)
    obj = await svc.create(clinic.id, payload(), staff)
    await svc.transition_status(obj.id, "in_progress", staff)
    await svc.transition_status(obj.id, "completed", staff)
    with pytest.raises(ValidationError) as exc:
        await svc.modify(obj.id, SessionUpdate(scheduled_at=at(7, 9)), staff)
    assert exc.value.code == "session_locked"


async def test_delete_respects_lead_time(db, seed, clock, clinic, actors):
    svc = SessionService(db, clock)
    staff = actors["admin"](clinic.id)
    soon = await svc.create(clinic.id, payload(when=at(5, 13)), staff)
    later = await svc.create(clinic.id, payload(when=at(8, 10)), staff)
    clock.advance(hours=2)

    with pytest.raises(PolicyViolation):
        await svc.delete(soon.id, staff)
    await svc.delete(later.id, staff)
    assert await svc.sessions.get(later.id) is None
    assert [e.subject_id for e in await seed.events("SESSION_DELETED")] == [str(later.id)]


async def test_list_is_scoped_by_role(db, clock, clinic, actors):
    svc = SessionService(db, clock)
    staff = actors["admin"](clinic.id)
    pid = uuid.uuid4()
    therapist = actors["therapist"](clinic.id)
    mine = await svc.create(clinic.id, payload(pid, at(6, 9), staff_id=therapist.user_id), staff)
    await svc.create(clinic.id, payload(None, at(6, 11)), staff)
    await svc.create(clinic.id, payload(pid, at(7, 11)), staff)

    assert len(await svc.list(staff, SessionFilters())) == 3
    assert [s.id for s in await svc.list(therapist, SessionFilters())] == [mine.id]
    by_patient = await svc.list(actors["patient"](clinic.id, pid), SessionFilters())
    assert [as_utc(s.scheduled_at) for s in by_patient] == [at(6, 9), at(7, 11)]
    one_day = await svc.list(staff, SessionFilters(scheduled_date=at(6, 0).date()))
    assert len(one_day) == 2


async def test_super_admin_day_filter_without_hospital(db, clock, clinic, actors):
    svc = SessionService(db, clock)
    staff = actors["admin"](clinic.id)
    await svc.create(clinic.id, payload(None, at(6, 9)), staff)
    await svc.create(clinic.id, payload(None, at(7, 9)), staff)

    rows = await svc.list(actors["super_admin"](uuid.uuid4()), SessionFilters(scheduled_date=at(6, 0).date()))
    assert [as_utc(s.scheduled_at) for s in rows] == [at(6, 9)]


async def test_staff_daily_cap(db, seed, clock, actors):
    h = await seed.hospital(policies={"max_sessions_per_staff_per_day": 2})
    await seed.room(h.id, "Room A", capacity=5)
    anna = await seed.staff(h.id, "Anna")
    svc = SessionService(db, clock)
    staff = actors["admin"](h.id)
    await svc.create(h.id, payload(None, at(6, 9), staff_id=anna.id), staff)
    await svc.create(h.id, payload(None, at(6, 11), staff_id=anna.id), staff)

    with pytest.raises(PolicyViolation) as exc:
        await svc.create(h.id, payload(None, at(6, 15), staff_id=anna.id), staff)
    assert exc.value.code == "staff_daily_cap"
    assert (await svc.create(h.id, payload(None, at(7, 15), staff_id=anna.id), staff)).staff_id == anna.id


async def test_no_show_is_terminal(db, clock, clinic, actors):
    svc = SessionService(db, clock)
    admin = actors["admin"](clinic.id)
    therapist = actors["therapist"](clinic.id)
    scheduled = await svc.create(clinic.id, payload(None, at(6, 9)), admin)
    confirmed = await svc.create(clinic.id, payload(None, at(6, 11)), admin)
    await svc.transition_status(confirmed.id, "confirmed", admin)

    assert (await svc.transition_status(scheduled.id, "no_show", therapist)).status == "no_show"
    assert (await svc.transition_status(confirmed.id, "no_show", therapist)).status == "no_show"
    for nxt in ("scheduled", "confirmed", "in_progress", "cancelled"):
        with pytest.raises(InvalidTransition):
            await svc.transition_status(scheduled.id, nxt, admin)
    with pytest.raises(ValidationError) as exc:
        await svc.modify(scheduled.id, SessionUpdate(scheduled_at=at(7, 9)), admin)
    assert exc.value.code == "session_locked"


async def test_no_show_not_reachable_once_started(db, clock, clinic, actors):
    svc = SessionService(db, clock)
    therapist = actors["therapist"](clinic.id)
    obj = await svc.create(clinic.id, payload(), actors["admin"](clinic.id))
    await svc.transition_status(obj.id, "in_progress", therapist)
    with pytest.raises(InvalidTransition):
        await svc.transition_status(obj.id, "no_show", therapist)


async def test_modify_reassigning_staff_checks_overlap(db, seed, clock, clinic, actors):
    anna = await seed.staff(clinic.id, "Anna")
    bala = await seed.staff(clinic.id, "Bala")
    svc = SessionService(db, clock)
    staff = actors["admin"](clinic.id)
    first = await svc.create(clinic.id, payload(None, at(6, 9), staff_id=anna.id), staff)
    second = await svc.create(clinic.id, payload(None, at(6, 9, 30), staff_id=bala.id), staff)

    # a session never conflicts with its own prior slot
    moved = await svc.modify(first.id, SessionUpdate(scheduled_at=at(6, 9, 15)), staff)
    assert moved.staff_id == anna.id

    with pytest.raises(ResourceConflict) as exc:
        await svc.modify(second.id, SessionUpdate(staff_id=anna.id), staff)
    assert exc.value.code == "staff_conflict"
    assert second.staff_id == bala.id


async def test_modify_with_null_room_reallocates(db, seed, clock, clinic, actors):
    zen = await seed.room(clinic.id, "Zen Room", capacity=1)
    svc = SessionService(db, clock)
    staff = actors["admin"](clinic.id)
    obj = await svc.create(clinic.id, payload(room_id=zen.id), staff)
    assert obj.room_id == zen.id

    moved = await svc.modify(obj.id, SessionUpdate(room_id=None), staff)
    # rooms are tried in name order, so "Room A" wins
    assert moved.room_id not in (None, zen.id)
