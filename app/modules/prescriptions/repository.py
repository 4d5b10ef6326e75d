import uuid
import logging
from dataclasses import dataclass
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from pydantic import ValidationError as PydanticValidationError
from app.modules.prescriptions.models import Prescription
from app.modules.prescriptions.schemas import TherapyPlanEntry

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class PatientPlan:
    prescription_id: uuid.UUID
    patient_id: uuid.UUID
    entry: TherapyPlanEntry

class PrescriptionRepository:
    """Read-only access to therapy plans."""
    def __init__(self, session: AsyncSession):
        self.session = session

    async def plans_for_org(self, org_id: uuid.UUID) -> list[PatientPlan]:
        res = await self.session.execute(select(Prescription).where(
            Prescription.org_id == org_id, Prescription.deleted_at.is_(None)
        ).order_by(Prescription.created_at.asc()))
        plans: list[PatientPlan] = []
        for pr in res.scalars().all():
            for raw in pr.therapies or []:
                try:
                    entry = TherapyPlanEntry.model_validate(raw)
                except PydanticValidationError:
                    logger.warning("Ignoring malformed therapy plan on prescription %s", pr.id)
                    continue
                if entry.schedulable:
                    plans.append(PatientPlan(pr.id, pr.patient_id, entry))
        return plans
