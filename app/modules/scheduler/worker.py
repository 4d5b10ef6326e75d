"""Background scheduler.

Each tick walks every hospital and runs three sweeps, each in its own
database session so one failure never leaks into the next:

* plan materialization: turn therapy plans into ``awaiting_confirmation``
  sessions inside the rolling horizon
* reschedule auto-approval: move sessions to a requested slot once it is free
* stale request cleanup

Everything goes through the same service calls the API uses, acting as the
hospital's system principal.
"""
import asyncio
import time
import uuid
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.db import SessionLocal
from app.core.errors import SchedulingError
from app.core.security import Principal
from app.modules.prescriptions.repository import PrescriptionRepository
from app.modules.reschedule.service import RescheduleService
from app.modules.scheduler.plans import plan_occurrences
from app.modules.sessions.schemas import SessionCreate
from app.modules.sessions.service import SessionService
from app.modules.tenants.policy import load_policy, normalize_therapy_type, utcnow
from app.modules.tenants.repository import HospitalRepository

logger = logging.getLogger("scheduler.worker")


@dataclass
class TickReport:
    tenants: int = 0
    created: int = 0
    existing: int = 0
    rejected: int = 0
    approved: int = 0
    cancelled: int = 0
    failed_sweeps: int = 0
    budget_exhausted: bool = False


class SchedulerWorker:
    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        interval_seconds: float | None = None,
        initial_delay_seconds: float | None = None,
        horizon_days: int | None = None,
        tick_budget_seconds: float | None = None,
        request_batch: int | None = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.clock = clock
        self.interval_seconds = interval_seconds if interval_seconds is not None else settings.SCHEDULER_INTERVAL_SECONDS
        self.initial_delay_seconds = initial_delay_seconds if initial_delay_seconds is not None else settings.SCHEDULER_INITIAL_DELAY_SECONDS
        self.horizon_days = horizon_days if horizon_days is not None else settings.SCHEDULER_HORIZON_DAYS
        self.tick_budget_seconds = tick_budget_seconds if tick_budget_seconds is not None else settings.SCHEDULER_TICK_BUDGET_SECONDS
        self.request_batch = request_batch if request_batch is not None else settings.SCHEDULER_REQUEST_BATCH
        self._task: asyncio.Task | None = None
        self._in_flight = asyncio.Lock()
        self._deadline = 0.0

    # ---- lifecycle ----

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="scheduler-worker")
        logger.info("Scheduler started (every %ss, horizon %sd)", self.interval_seconds, self.horizon_days)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if not task:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return bool(self._task and not self._task.done())

    async def _run(self) -> None:
        await asyncio.sleep(self.initial_delay_seconds)
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick crashed")
            await asyncio.sleep(self.interval_seconds)

    # ---- tick ----

    def _out_of_time(self) -> bool:
        return time.monotonic() > self._deadline

    async def tick(self) -> TickReport | None:
        """Run one pass over every hospital. Returns None when a previous
        tick is still in flight."""
        if self._in_flight.locked():
            logger.info("Scheduler tick skipped: previous run still in flight")
            return None
        async with self._in_flight:
            report = TickReport()
            self._deadline = time.monotonic() + self.tick_budget_seconds
            async with self.session_factory() as s:
                org_ids = list(await HospitalRepository(s).list_ids())
            for org_id in org_ids:
                if self._out_of_time():
                    report.budget_exhausted = True
                    break
                report.tenants += 1
                await self._sweep("plans", org_id, self._materialize_plans, report)
                await self._sweep("reschedule", org_id, self._auto_approve, report)
                await self._sweep("cleanup", org_id, self._cleanup, report)
            if report.budget_exhausted:
                logger.warning("Scheduler tick hit its %ss budget after %d of %d hospitals",
                               self.tick_budget_seconds, report.tenants, len(org_ids))
            logger.info("Scheduler tick: %s", report)
            return report

    async def _sweep(self, name: str, org_id: uuid.UUID,
                     fn: Callable[[AsyncSession, uuid.UUID, TickReport], Awaitable[None]], report: TickReport) -> None:
        try:
            async with self.session_factory() as s:
                await fn(s, org_id, report)
        except Exception:
            report.failed_sweeps += 1
            logger.exception("Scheduler %s sweep failed for org %s", name, org_id)

    async def _materialize_plans(self, s: AsyncSession, org_id: uuid.UUID, report: TickReport) -> None:
        policy = await load_policy(s, org_id)
        service = SessionService(s, self.clock)
        actor = Principal.system(org_id)
        now = self.clock()
        for plan in await PrescriptionRepository(s).plans_for_org(org_id):
            if self._out_of_time():
                report.budget_exhausted = True
                return
            kind = normalize_therapy_type(plan.entry.name)
            if not kind:
                continue
            for start in plan_occurrences(plan.entry, policy, now, self.horizon_days):
                if await service.sessions.find_exact(org_id, plan.patient_id, kind, start):
                    report.existing += 1
                    continue
                payload = SessionCreate(
                    patient_id=plan.patient_id,
                    therapy_type=kind,
                    scheduled_at=start,
                    duration_minutes=plan.entry.plan_duration_min,
                    staff_id=plan.entry.plan_assigned_staff_id,
                )
                try:
                    await service.create(org_id, payload, actor, status="awaiting_confirmation", origin="plan", policy=policy)
                except SchedulingError as e:
                    # end the transaction so the tenant's advisory lock is not held across occurrences
                    await s.rollback()
                    report.rejected += 1
                    logger.info("Plan occurrence %s for patient %s at %s skipped: %s",
                                kind, plan.patient_id, start.isoformat(), e.code)
                    continue
                report.created += 1

    async def _auto_approve(self, s: AsyncSession, org_id: uuid.UUID, report: TickReport) -> None:
        policy = await load_policy(s, org_id)
        report.approved += await RescheduleService(s, self.clock).auto_approve(org_id, policy, limit=self.request_batch)

    async def _cleanup(self, s: AsyncSession, org_id: uuid.UUID, report: TickReport) -> None:
        report.cancelled += await RescheduleService(s, self.clock).cleanup_stale(org_id)
