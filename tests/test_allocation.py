import uuid
from datetime import datetime, timezone

import pytest

from app.core.errors import NotFoundError, ResourceConflict
from app.modules.sessions.allocator import ResourceAllocator
from app.modules.sessions.conflicts import ConflictEngine
from app.modules.sessions.schemas import SessionCreate
from app.modules.sessions.service import SessionService
from app.modules.tenants.policy import load_policy

UTC = timezone.utc
SLOT = datetime(2025, 5, 6, 14, 0, tzinfo=UTC)


async def book(db, clock, org_id, actor, **kw):
    payload = SessionCreate(patient_id=kw.pop("patient_id", uuid.uuid4()), therapy_type=kw.pop("therapy_type", "abhyanga"),
                            scheduled_at=kw.pop("scheduled_at", SLOT), **kw)
    return await SessionService(db, clock).create(org_id, payload, actor)


async def test_auto_allocation_skips_full_room(db, seed, clock, actors):
    h = await seed.hospital()
    room_a = await seed.room(h.id, "Room A", capacity=1, therapy_types=["abhyanga"])
    room_b = await seed.room(h.id, "Room B", capacity=2, therapy_types=["Abhyanga"])
    staff = actors["admin"](h.id)

    first = await book(db, clock, h.id, staff, room_id=room_a.id)
    assert first.room_id == room_a.id

    second = await book(db, clock, h.id, staff)
    assert second.room_id == room_b.id


async def test_explicit_full_room_is_a_conflict(db, seed, clock, actors):
    h = await seed.hospital()
    room_a = await seed.room(h.id, "Room A", capacity=1)
    await seed.room(h.id, "Room B", capacity=1)
    staff = actors["admin"](h.id)
    await book(db, clock, h.id, staff, room_id=room_a.id)

    with pytest.raises(ResourceConflict) as exc:
        await book(db, clock, h.id, staff, room_id=room_a.id)
    assert exc.value.code == "room_full"
    assert exc.value.details["occupied"] == 1


async def test_room_capacity_counts_overlaps(db, seed, clock, actors):
    h = await seed.hospital()
    room = await seed.room(h.id, "Group Hall", capacity=2)
    staff = actors["admin"](h.id)
    await book(db, clock, h.id, staff, room_id=room.id)
    await book(db, clock, h.id, staff, room_id=room.id)
    with pytest.raises(ResourceConflict) as exc:
        await book(db, clock, h.id, staff)
    assert exc.value.code == "no_room_available"


async def test_buffer_blocks_back_to_back_booking(db, seed, clock, actors):
    h = await seed.hospital(therapy_config={"abhyanga": {"buffer_min": 15}})
    room = await seed.room(h.id, "Room A", capacity=1)
    staff = actors["admin"](h.id)
    await book(db, clock, h.id, staff, room_id=room.id)

    policy = await load_policy(db, h.id)
    allocator = ResourceAllocator(db, policy)
    at_end = policy.effective_window(datetime(2025, 5, 6, 15, 0, tzinfo=UTC), 60, "abhyanga")
    with pytest.raises(ResourceConflict):
        await allocator.allocate_room("abhyanga", at_end)
    after_buffer = policy.effective_window(datetime(2025, 5, 6, 15, 15, tzinfo=UTC), 60, "abhyanga")
    assert (await allocator.allocate_room("abhyanga", after_buffer)).id == room.id


async def test_unsupported_inactive_and_zero_capacity_rooms(db, seed, actors):
    h = await seed.hospital()
    oil_room = await seed.room(h.id, "Oil Room", therapy_types=["abhyanga"])
    closed = await seed.room(h.id, "Closed Room", status="inactive")
    await seed.room(h.id, "Store", capacity=0)
    policy = await load_policy(db, h.id)
    allocator = ResourceAllocator(db, policy)
    window = policy.effective_window(SLOT, 60, "shirodhara")

    with pytest.raises(ResourceConflict) as exc:
        await allocator.allocate_room("shirodhara", window, oil_room.id)
    assert exc.value.code == "therapy_unsupported"
    with pytest.raises(NotFoundError):
        await allocator.allocate_room("shirodhara", window, closed.id)
    with pytest.raises(ResourceConflict) as exc:
        await allocator.allocate_room("shirodhara", window)
    assert exc.value.code == "no_room_available"


async def test_room_availability_report(db, seed, clock, actors):
    h = await seed.hospital()
    room_a = await seed.room(h.id, "Room A", capacity=1)
    await seed.room(h.id, "Room B", capacity=3)
    await book(db, clock, h.id, actors["admin"](h.id), room_id=room_a.id)

    policy = await load_policy(db, h.id)
    report = await ResourceAllocator(db, policy).room_availability("abhyanga", policy.effective_window(SLOT, 30, "abhyanga"))
    assert [(r["name"], r["occupied"], r["spare"]) for r in report] == [("Room A", 1, 0), ("Room B", 0, 3)]


async def test_cancelled_sessions_free_their_resources(db, seed, clock, actors):
    h = await seed.hospital()
    room = await seed.room(h.id, "Room A", capacity=1)
    staff = actors["admin"](h.id)
    first = await book(db, clock, h.id, staff, room_id=room.id)
    await SessionService(db, clock).transition_status(first.id, "cancelled", staff)

    second = await book(db, clock, h.id, staff, room_id=room.id)
    assert second.room_id == room.id


async def test_staff_overlap_and_least_loaded_assignment(db, seed, clock, actors):
    h = await seed.hospital(policies={"auto_assign_staff": True})
    await seed.room(h.id, "Room A", capacity=5)
    anna = await seed.staff(h.id, "Anna")
    bala = await seed.staff(h.id, "Bala")
    staff = actors["admin"](h.id)

    first = await book(db, clock, h.id, staff, scheduled_at=datetime(2025, 5, 6, 9, 0, tzinfo=UTC))
    assert first.staff_id == anna.id
    # Anna now carries one session that day, so Bala is preferred
    second = await book(db, clock, h.id, staff, scheduled_at=datetime(2025, 5, 6, 16, 0, tzinfo=UTC))
    assert second.staff_id == bala.id

    with pytest.raises(ResourceConflict) as exc:
        await book(db, clock, h.id, staff, staff_id=anna.id, scheduled_at=datetime(2025, 5, 6, 9, 30, tzinfo=UTC))
    assert exc.value.code == "staff_conflict"

    policy = await load_policy(db, h.id)
    engine = ConflictEngine(db, policy)
    window = policy.effective_window(datetime(2025, 5, 6, 9, 30, tzinfo=UTC), 60, "abhyanga")
    assert await engine.has_overlap("staff", anna.id, window)
    assert not await engine.has_overlap("staff", bala.id, window)


async def test_no_staff_available_when_everyone_busy(db, seed, clock, actors):
    h = await seed.hospital(policies={"auto_assign_staff": True})
    await seed.room(h.id, "Room A", capacity=5)
    await seed.staff(h.id, "Anna")
    staff = actors["admin"](h.id)
    await book(db, clock, h.id, staff)
    with pytest.raises(ResourceConflict) as exc:
        await book(db, clock, h.id, staff)
    assert exc.value.code == "no_staff_available"


async def test_explicit_room_must_be_active_and_local(db, seed, clock, actors):
    h = await seed.hospital()
    other = await seed.hospital(name="Lotus Clinic")
    await seed.room(h.id, "Room A", capacity=2)
    closed = await seed.room(h.id, "Closed Room", status="inactive")
    foreign = await seed.room(other.id, "Lotus Room", capacity=2)
    staff = actors["admin"](h.id)

    for room_id in (closed.id, foreign.id, uuid.uuid4()):
        with pytest.raises(NotFoundError) as exc:
            await book(db, clock, h.id, staff, room_id=room_id)
        assert exc.value.code == "room_not_found"
