"""Transactional outbox for clinic domain events.

Services enqueue ``SESSION_*``, ``RESCHEDULE_*`` and ``NOTIFICATION`` rows in
the same transaction as the change they describe; the relay publishes them to
the configured event bus afterwards. Publishing is at-least-once.
"""
import uuid
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import TIMESTAMP, text, String, Integer, Text, JSON, Index, select, and_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.base import Base, TimestampedTenantMixin
from app.platform.ports.event_bus import EventBusPort
from app.platform.provider_registry import registry

log = logging.getLogger("event.outbox")

TOPIC = "clinic.events"
MAX_ATTEMPTS = 10

class EventOutbox(Base, TimestampedTenantMixin):
    __tablename__ = "event_outbox"
    __table_args__ = (
        Index("ix_event_outbox_due", "status", "next_attempt_at"),
    )

    event_type: Mapped[str] = mapped_column(String(64), index=True)
    subject_type: Mapped[str] = mapped_column(String(32))   # therapy_session | reschedule_request | notification
    subject_id: Mapped[str] = mapped_column(String(64))
    payload: Mapped[dict] = mapped_column(JSON)
    occurred_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=text("CURRENT_TIMESTAMP"))

    # pending -> processing -> sent; failed once MAX_ATTEMPTS is reached
    status: Mapped[str] = mapped_column(String(16), default="pending")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=text("CURRENT_TIMESTAMP"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

class OutboxRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def enqueue(self, org_id: uuid.UUID, *, event_type: str, subject_type: str, subject_id: str, payload: dict,
                      occurred_at: datetime | None = None) -> EventOutbox:
        now = datetime.now(timezone.utc)
        obj = EventOutbox(
            org_id=org_id, event_type=event_type, subject_type=subject_type, subject_id=str(subject_id),
            payload=payload, occurred_at=occurred_at or now, status="pending", attempts=0, next_attempt_at=now,
        )
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def claim_batch(self, limit: int = 50) -> list[EventOutbox]:
        """Lock due rows (SKIP LOCKED on PostgreSQL) and mark them processing."""
        due = and_(
            EventOutbox.deleted_at.is_(None),
            EventOutbox.status == "pending",
            EventOutbox.next_attempt_at <= datetime.now(timezone.utc),
        )
        q = select(EventOutbox).where(due).order_by(EventOutbox.occurred_at.asc()).limit(limit).with_for_update(skip_locked=True)
        rows = list((await self.session.execute(q)).scalars().all())
        for r in rows:
            r.status = "processing"
        await self.session.flush()
        return rows

    async def mark_sent(self, obj: EventOutbox):
        obj.status, obj.last_error = "sent", None
        await self.session.flush()

    async def mark_failed(self, obj: EventOutbox, error: str):
        obj.attempts = (obj.attempts or 0) + 1
        obj.last_error = error[:2000]
        if obj.attempts >= MAX_ATTEMPTS:
            obj.status = "failed"
            log.error("Giving up on outbox event %s (%s) after %d attempts", obj.id, obj.event_type, obj.attempts)
        else:
            obj.status = "pending"
            obj.next_attempt_at = datetime.now(timezone.utc) + timedelta(seconds=min(60, 2 ** min(obj.attempts, 6)))
        await self.session.flush()

class OutboxService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.repo = OutboxRepository(session)

    async def enqueue(self, org_id: uuid.UUID, event_type: str, subject_type: str, subject_id: str | uuid.UUID, payload: dict,
                      occurred_at: datetime | None = None) -> EventOutbox:
        return await self.repo.enqueue(org_id, event_type=event_type, subject_type=subject_type, subject_id=str(subject_id),
                                       payload=payload, occurred_at=occurred_at)

# ---- Background relay ----

def _envelope(ev: EventOutbox) -> dict:
    occurred = ev.occurred_at
    return {
        "org_id": str(ev.org_id),
        "event_type": ev.event_type,
        "subject": {"type": ev.subject_type, "id": ev.subject_id},
        "payload": ev.payload,
        "occurred_at": occurred.isoformat() if occurred else None,
        "outbox_id": str(ev.id),
    }

async def relay_once(session: AsyncSession, bus: EventBusPort, limit: int = 50) -> int:
    """Publish one claimed batch; returns how many events were claimed."""
    repo = OutboxRepository(session)
    batch = await repo.claim_batch(limit=limit)
    for ev in batch:
        try:
            await bus.publish(topic=TOPIC, key=ev.subject_id or "-", value=_envelope(ev))
            await repo.mark_sent(ev)
        except Exception as ex:  # noqa
            log.exception("Publish failed for outbox event %s", ev.id)
            await repo.mark_failed(ev, error=str(ex))
    await session.commit()
    return len(batch)

async def run_outbox_relay(session_factory: async_sessionmaker | None = None, poll_interval_seconds: float = 1.0):
    if session_factory is None:
        from app.core.db import SessionLocal
        session_factory = SessionLocal
    bus = registry.event_bus()
    log.info("Outbox relay started with bus=%s", bus.__class__.__name__)
    try:
        while True:
            async with session_factory() as session:
                try:
                    claimed = await relay_once(session, bus)
                except Exception:
                    log.exception("Outbox relay iteration failed")
                    await session.rollback()
                    claimed = 0
            if not claimed:
                await asyncio.sleep(poll_interval_seconds)
            await asyncio.sleep(0)  # yield
    except asyncio.CancelledError:
        log.info("Outbox relay cancelled; shutting down")
        raise
