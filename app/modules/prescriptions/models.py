import uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import ForeignKey, JSON
from app.core.base import Base, TimestampedTenantMixin

class Prescription(Base, TimestampedTenantMixin):
    """Clinical prescription; only its therapy plan entries matter here."""
    __tablename__ = "prescription"

    org_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("hospital.id"), index=True)
    patient_id: Mapped[uuid.UUID] = mapped_column(index=True)
    doctor_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    therapies: Mapped[list] = mapped_column(JSON, default=list)
