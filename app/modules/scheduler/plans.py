"""Expand therapy plans into concrete session start times."""
from datetime import datetime, timedelta

from app.modules.prescriptions.schemas import TherapyPlanEntry
from app.modules.tenants.policy import WEEKDAYS, TenantPolicy, as_utc, weekday_key
from app.modules.tenants.schemas import hhmm_to_minute

DEFAULT_PREFERRED_TIME = "10:00"


def plan_occurrences(entry: TherapyPlanEntry, policy: TenantPolicy, now: datetime, horizon_days: int) -> list[datetime]:
    """UTC start instants for the plan's occurrences inside [now, now + horizon].

    Occurrence ``i`` falls on ``plan_start_date + i * plan_interval_days`` at
    the preferred local time. Days outside ``plan_preferred_days`` are dropped,
    not shifted.
    """
    if not entry.schedulable:
        return []
    minute = hhmm_to_minute(entry.plan_preferred_time or DEFAULT_PREFERRED_TIME)
    if minute >= 24 * 60:
        minute = hhmm_to_minute(DEFAULT_PREFERRED_TIME)
    wanted = {weekday_key(d) for d in entry.plan_preferred_days if str(d).strip()}
    now = as_utc(now)
    horizon_end = now + timedelta(days=horizon_days)

    starts: list[datetime] = []
    for i in range(entry.plan_sessions):
        day = entry.plan_start_date + timedelta(days=i * entry.plan_interval_days)
        if wanted and WEEKDAYS[day.weekday()] not in wanted:
            continue
        start = policy.at_local(day, minute)
        if start < now:
            continue
        if start > horizon_end:
            break
        starts.append(start)
    return starts
