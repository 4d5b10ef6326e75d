import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, TIMESTAMP, ForeignKey
from app.core.base import Base, TimestampedTenantMixin

class RescheduleRequest(Base, TimestampedTenantMixin):
    __tablename__ = "reschedule_request"

    org_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("hospital.id"), index=True)
    session_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("therapy_session.id", ondelete="CASCADE"), index=True)
    patient_id: Mapped[uuid.UUID] = mapped_column(index=True)
    requested_by: Mapped[uuid.UUID] = mapped_column(index=True)

    # optional preference in hospital-local time
    requested_date: Mapped[str | None] = mapped_column(String(10), nullable=True)  # YYYY-MM-DD
    requested_time: Mapped[str | None] = mapped_column(String(5), nullable=True)   # HH:MM
    reason: Mapped[str] = mapped_column(Text, default="")

    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)  # pending | approved | rejected | cancelled
    processed_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
