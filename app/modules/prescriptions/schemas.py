import uuid
from datetime import date, datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator

class TherapyPlanEntry(BaseModel):
    """One therapy line of a prescription with its session plan."""
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    plan_sessions: int = Field(default=0, ge=0)
    plan_interval_days: int = 1
    plan_start_date: date | None = None
    plan_duration_min: int = Field(default=0, ge=0, le=24 * 60)
    plan_preferred_time: str | None = Field(default=None, pattern=r"^\d{1,2}:\d{2}$")
    plan_preferred_days: list[str] = []
    plan_assigned_staff_id: uuid.UUID | None = None

    @field_validator("plan_start_date", mode="before")
    @classmethod
    def _date_only(cls, v):
        if isinstance(v, datetime):
            return v.date()
        if isinstance(v, str) and len(v) > 10:
            return v[:10]
        return v

    @field_validator("plan_interval_days", mode="after")
    @classmethod
    def _at_least_one_day(cls, v: int) -> int:
        return max(1, v)

    @property
    def schedulable(self) -> bool:
        return bool(self.plan_sessions > 0 and self.plan_start_date and self.plan_duration_min > 0)
