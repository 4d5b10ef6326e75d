from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, JSON
from app.core.base import Base, TimestampedMixin

class Hospital(Base, TimestampedMixin):
    """Tenant. Configuration here is owned by clinic administration; the
    scheduling engine only reads it."""
    name: Mapped[str] = mapped_column(String(160))
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")

    # {"mon": {"start": "09:00", "end": "18:00"}, "sun": "closed", ...}
    business_hours: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    # ["2025-12-25", ...]
    blackout_dates: Mapped[list | None] = mapped_column(JSON, nullable=True)
    # lead_time_hours, max_sessions_per_patient_per_day, max_sessions_per_staff_per_day,
    # auto_assign_staff, max_reschedule_requests_per_week, stale_request_hours
    policies: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    # {"abhyanga": {"buffer_min": 15, "allowed_hours": {"start": "08:00", "end": "12:00"}}}
    therapy_config: Mapped[dict | None] = mapped_column(JSON, nullable=True)
