"""Policy resolver.

Pure queries over one hospital's configuration: business hours, blackout
dates, per-therapy buffers and allowed hours, and the lead-time floor. All
wall-clock rules are evaluated in the hospital's own timezone; instants
handed in and out are UTC.
"""
import re
import uuid
import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError, PolicyViolation, ValidationError
from app.modules.tenants.models import Hospital
from app.modules.tenants.repository import HospitalRepository
from app.modules.tenants.schemas import DailyWindow, HospitalPolicies, TherapyConfig, hhmm_to_minute

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive values; everything is stored as UTC
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

def normalize_therapy_type(name: str | None) -> str:
    return re.sub(r"\s+", "_", str(name or "").strip().lower())

def weekday_key(value: str) -> str:
    return str(value).strip().lower()[:3]


@dataclass(frozen=True)
class Window:
    """Half-open interval [start, end)."""
    start: datetime
    end: datetime

    def overlaps(self, other: "Window") -> bool:
        return self.start < other.end and other.start < self.end

    @property
    def minutes(self) -> int:
        return math.ceil((self.end - self.start).total_seconds() / 60)


class TenantPolicy:
    def __init__(self, hospital: Hospital):
        self.org_id = hospital.id
        try:
            self.tz = ZoneInfo(hospital.timezone or "UTC")
        except ZoneInfoNotFoundError:
            self.tz = ZoneInfo("UTC")
        self.policies = HospitalPolicies.model_validate(hospital.policies or {})
        self._hours: dict[str, DailyWindow] = {}
        for key, value in (hospital.business_hours or {}).items():
            if isinstance(value, dict):
                self._hours[weekday_key(key)] = DailyWindow.model_validate(value)
        self._blackouts = {date.fromisoformat(str(d)[:10]) for d in (hospital.blackout_dates or [])}
        self._therapy = {
            normalize_therapy_type(k): TherapyConfig.model_validate(v or {})
            for k, v in (hospital.therapy_config or {}).items()
        }

    # ---- queries ----

    def business_window(self, weekday: int | str) -> DailyWindow | None:
        key = WEEKDAYS[weekday] if isinstance(weekday, int) else weekday_key(weekday)
        return self._hours.get(key)

    def is_blackout(self, day: date) -> bool:
        return day in self._blackouts

    def therapy_config(self, therapy_type: str | None) -> TherapyConfig:
        return self._therapy.get(normalize_therapy_type(therapy_type)) or TherapyConfig()

    def buffer_minutes(self, therapy_type: str | None) -> int:
        return self.therapy_config(therapy_type).buffer_minutes

    def local(self, instant: datetime) -> datetime:
        return as_utc(instant).astimezone(self.tz)

    def is_open(self, instant: datetime) -> bool:
        local = self.local(instant)
        if self.is_blackout(local.date()):
            return False
        bw = self.business_window(local.weekday())
        minute = local.hour * 60 + local.minute
        return bw is not None and bw.start_minute <= minute < bw.end_minute

    def effective_window(self, scheduled_at: datetime, duration_minutes: int, therapy_type: str | None) -> Window:
        start = as_utc(scheduled_at)
        return Window(start, start + timedelta(minutes=duration_minutes + self.buffer_minutes(therapy_type)))

    def day_bounds(self, instant: datetime) -> Window:
        """UTC bounds of the hospital-local calendar day containing instant."""
        local_day = self.local(instant).date()
        return self.local_day_bounds(local_day)

    def local_day_bounds(self, day: date) -> Window:
        start = datetime.combine(day, time.min, tzinfo=self.tz)
        end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=self.tz)
        return Window(as_utc(start), as_utc(end))

    def at_local(self, day: date, minute_of_day: int) -> datetime:
        local = datetime.combine(day, time.min, tzinfo=self.tz) + timedelta(minutes=minute_of_day)
        return as_utc(local)

    def stale_request_hours(self, default: int) -> int:
        return max(1, self.policies.stale_request_hours or default)

    # ---- checks ----

    def check_window(self, window: Window, therapy_type: str | None) -> None:
        """Raise PolicyViolation unless the whole window sits inside opening
        hours (and the therapy's allowed hours) on a non-blackout day."""
        local_start = self.local(window.start)
        local_last = self.local(window.end - timedelta(microseconds=1))
        if self.is_blackout(local_start.date()) or self.is_blackout(local_last.date()):
            raise PolicyViolation("blackout_date", "Clinic holiday on requested date", date=local_start.date().isoformat())
        bw = self.business_window(local_start.weekday())
        if bw is None:
            raise PolicyViolation("clinic_closed", "Clinic closed on requested day", weekday=WEEKDAYS[local_start.weekday()])
        start_minute = local_start.hour * 60 + local_start.minute
        end_minute = start_minute + window.minutes
        if not bw.contains(start_minute, end_minute):
            raise PolicyViolation("outside_business_hours", "Requested time outside business hours")
        allowed = self.therapy_config(therapy_type).allowed_hours
        if allowed is not None and not allowed.contains(start_minute, end_minute):
            raise PolicyViolation("therapy_hours_restricted", "Therapy not allowed at requested time", therapy_type=normalize_therapy_type(therapy_type))

    def check_lead_time(self, start: datetime, now: datetime, *, exempt: bool = False) -> None:
        if exempt or not self.policies.lead_time_hours:
            return
        cutoff = as_utc(now) + timedelta(hours=self.policies.lead_time_hours)
        if as_utc(start) < cutoff:
            raise PolicyViolation(
                "lead_time",
                f"Sessions must be booked or changed at least {self.policies.lead_time_hours:g}h in advance",
                lead_time_hours=self.policies.lead_time_hours,
            )


def parse_local_slot(policy: TenantPolicy, requested_date: str, requested_time: str) -> datetime:
    """'2025-05-10' + '14:30' in hospital time -> UTC instant."""
    try:
        day = date.fromisoformat(requested_date)
        minute = hhmm_to_minute(requested_time)
    except (TypeError, ValueError):
        raise ValidationError("invalid_requested_slot", "Invalid requested date/time")
    if minute >= 24 * 60:
        raise ValidationError("invalid_requested_slot", "Invalid requested date/time")
    return policy.at_local(day, minute)


async def load_policy(session: AsyncSession, org_id: uuid.UUID) -> TenantPolicy:
    hospital = await HospitalRepository(session).get(org_id)
    if hospital is None:
        raise NotFoundError("tenant_not_found", "Clinic not found")
    return TenantPolicy(hospital)
