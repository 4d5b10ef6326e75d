from pydantic import BaseModel, Field, AliasChoices, field_validator

def hhmm_to_minute(v) -> int:
    """'09:30' -> 570. Integers are taken as minutes past midnight already."""
    if isinstance(v, int):
        return v
    hh, _, mm = str(v).strip().partition(":")
    minute = int(hh) * 60 + int(mm or 0)
    if not 0 <= minute <= 24 * 60:
        raise ValueError(f"invalid time of day: {v!r}")
    return minute

class DailyWindow(BaseModel):
    # minutes past local midnight, end exclusive ("24:00" allowed)
    start_minute: int = Field(validation_alias=AliasChoices("start", "open", "start_minute"))
    end_minute: int = Field(validation_alias=AliasChoices("end", "close", "end_minute"))

    @field_validator("start_minute", "end_minute", mode="before")
    @classmethod
    def _parse(cls, v):
        return hhmm_to_minute(v)

    def contains(self, start_minute: int, end_minute: int) -> bool:
        return self.start_minute <= start_minute and end_minute <= self.end_minute

class TherapyConfig(BaseModel):
    buffer_minutes: int = Field(default=0, ge=0, validation_alias=AliasChoices("buffer_minutes", "buffer_min"))
    allowed_hours: DailyWindow | None = None

class HospitalPolicies(BaseModel):
    lead_time_hours: float = Field(default=0, ge=0)
    max_sessions_per_patient_per_day: int | None = Field(default=None, ge=0)
    max_sessions_per_staff_per_day: int | None = Field(default=None, ge=0)
    auto_assign_staff: bool = False
    max_reschedule_requests_per_week: int = Field(default=0, ge=0)
    stale_request_hours: int | None = Field(default=None, ge=1)

    @field_validator("max_sessions_per_patient_per_day", "max_sessions_per_staff_per_day", mode="before")
    @classmethod
    def _zero_means_unlimited(cls, v):
        return v or None
