import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, TIMESTAMP, ForeignKey, JSON, Integer, Index
from app.core.base import Base, TimestampedTenantMixin

TERMINAL_STATUSES = {"completed", "cancelled", "no_show"}

class TherapySession(Base, TimestampedTenantMixin):
    __tablename__ = "therapy_session"
    __table_args__ = (
        Index("ix_therapy_session_org_day", "org_id", "scheduled_at"),
    )

    org_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("hospital.id"), index=True)
    # patient/staff identities are owned by identity management
    patient_id: Mapped[uuid.UUID] = mapped_column(index=True)
    staff_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    room_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("room.id"), nullable=True, index=True)
    therapy_type: Mapped[str] = mapped_column(String(64))

    scheduled_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True))
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60)

    # awaiting_confirmation, scheduled, confirmed, in_progress, completed, cancelled, no_show
    status: Mapped[str] = mapped_column(String(24), default="scheduled", index=True)
    origin: Mapped[str] = mapped_column(String(16), default="manual")  # manual | plan

    approvals: Mapped[dict | None] = mapped_column(JSON, nullable=True)  # {"doctor_approved": bool, "admin_approved": bool}
    outcomes: Mapped[dict | None] = mapped_column(JSON, nullable=True)   # {"started_at", "completed_at", "observations"}
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
