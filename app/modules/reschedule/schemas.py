import uuid
from datetime import date, datetime
from pydantic import BaseModel, Field, ConfigDict, model_validator

class RescheduleCreate(BaseModel):
    session_id: uuid.UUID
    requested_date: date | None = None
    requested_time: str | None = Field(default=None, pattern=r"^\d{1,2}:\d{2}$")
    reason: str = Field(default="", max_length=2000)

    @model_validator(mode="after")
    def _date_and_time_together(self):
        if (self.requested_date is None) != (self.requested_time is None):
            raise ValueError("requested_date and requested_time must be given together")
        return self

class RescheduleAction(BaseModel):
    status: str = Field(..., pattern="^(approved|rejected|cancelled)$")
    # overrides the patient's preference on approval
    scheduled_at: datetime | None = None
    room_id: uuid.UUID | None = None

class RescheduleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    org_id: uuid.UUID
    session_id: uuid.UUID
    patient_id: uuid.UUID
    requested_by: uuid.UUID
    requested_date: str | None = None
    requested_time: str | None = None
    reason: str
    status: str
    processed_by: uuid.UUID | None = None
    processed_at: datetime | None = None
    created_at: datetime | None = None

class CleanupOut(BaseModel):
    cancelled: int
