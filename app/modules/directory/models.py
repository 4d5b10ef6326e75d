import uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, JSON, ForeignKey, Integer
from app.core.base import Base, TimestampedTenantMixin

class Room(Base, TimestampedTenantMixin):
    __tablename__ = "room"
    org_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("hospital.id"), index=True)
    name: Mapped[str] = mapped_column(String(160), index=True)
    capacity: Mapped[int] = mapped_column(Integer, default=1)  # 0 = never bookable
    # normalized therapy keys; empty = supports all
    therapy_types: Mapped[list | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="active")  # active | inactive
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

class StaffMember(Base, TimestampedTenantMixin):
    """Read-only projection of clinic users who deliver sessions."""
    __tablename__ = "staff_member"
    org_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("hospital.id"), index=True)
    name: Mapped[str] = mapped_column(String(160), index=True)
    role: Mapped[str] = mapped_column(String(32), default="therapist")  # therapist | doctor
    active: Mapped[bool] = mapped_column(default=True)
