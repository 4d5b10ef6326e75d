import uuid
from datetime import datetime, date
from pydantic import BaseModel, Field, ConfigDict
from app.core.config import settings

STATUS_PATTERN = "^(awaiting_confirmation|scheduled|confirmed|in_progress|completed|cancelled|no_show)$"

class SessionCreate(BaseModel):
    patient_id: uuid.UUID
    therapy_type: str = Field(..., min_length=1, max_length=64)
    scheduled_at: datetime
    duration_minutes: int = Field(default=settings.SESSION_DEFAULT_DURATION_MINUTES, ge=1, le=24 * 60)
    staff_id: uuid.UUID | None = None
    room_id: uuid.UUID | None = None
    notes: str | None = Field(default=None, max_length=500)
    # only honoured for tenant-superseding actors
    hospital_id: uuid.UUID | None = None

class ApprovalsPatch(BaseModel):
    doctor_approved: bool | None = None
    admin_approved: bool | None = None

class SessionUpdate(BaseModel):
    # allow updating a subset of fields; explicit null room/staff falls back to automatic allocation
    scheduled_at: datetime | None = None
    duration_minutes: int | None = Field(default=None, ge=1, le=24 * 60)
    therapy_type: str | None = Field(default=None, min_length=1, max_length=64)
    staff_id: uuid.UUID | None = None
    room_id: uuid.UUID | None = None
    notes: str | None = Field(default=None, max_length=500)
    approvals: ApprovalsPatch | None = None

class SessionStatusChange(BaseModel):
    status: str = Field(..., pattern=STATUS_PATTERN)
    observations: str | None = Field(default=None, max_length=4000)

class SessionFilters(BaseModel):
    patient_id: uuid.UUID | None = None
    staff_id: uuid.UUID | None = None
    status: str | None = Field(default=None, pattern=STATUS_PATTERN)
    scheduled_date: date | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    hospital_id: uuid.UUID | None = None
    limit: int = Field(default=200, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

class SessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    org_id: uuid.UUID
    patient_id: uuid.UUID
    staff_id: uuid.UUID | None = None
    room_id: uuid.UUID | None = None
    therapy_type: str
    scheduled_at: datetime
    duration_minutes: int
    status: str
    origin: str
    approvals: dict | None = None
    outcomes: dict | None = None
    notes: str | None = None
