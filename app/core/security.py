import uuid
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from pydantic import BaseModel
from app.core.config import settings
from app.core.errors import AuthorizationError

http_bearer = HTTPBearer(auto_error=False)

SUPER_ADMIN = "super_admin"
SCHEDULER_WORKER = "scheduler_worker"
CLINIC_ADMINS = {"hospital_admin", "admin", "clinic_admin", "office_executive"}
DELIVERY_ROLES = {"doctor", "therapist"}
PATIENT_ROLES = {"patient", "guardian"}

class Principal(BaseModel):
    user_id: uuid.UUID
    org_id: uuid.UUID
    roles: list[str] = []
    scopes: list[str] = []
    # patients this user may act for (self or guardianship)
    patient_ids: list[uuid.UUID] = []

    def has_role(self, *roles: str) -> bool:
        return bool(set(roles) & set(self.roles))

    @classmethod
    def system(cls, org_id: uuid.UUID) -> "Principal":
        return cls(user_id=uuid.UUID(int=0), org_id=org_id, roles=[SCHEDULER_WORKER], scopes=["*"])

# ---- capability predicates ----

def is_tenant_superseding(p: Principal) -> bool:
    return p.has_role(SUPER_ADMIN)

def can_schedule_sessions(p: Principal) -> bool:
    return p.has_role(SUPER_ADMIN, SCHEDULER_WORKER, *CLINIC_ADMINS)

def can_manage_reschedule(p: Principal) -> bool:
    return p.has_role(SUPER_ADMIN, SCHEDULER_WORKER, *CLINIC_ADMINS)

def can_approve_as_doctor(p: Principal) -> bool:
    return p.has_role("doctor")

def can_approve_as_admin(p: Principal) -> bool:
    return p.has_role(SUPER_ADMIN, *CLINIC_ADMINS)

def can_deliver_sessions(p: Principal) -> bool:
    return p.has_role(*DELIVERY_ROLES) or can_schedule_sessions(p)

def acts_for_patient(p: Principal, patient_id: uuid.UUID | None) -> bool:
    return patient_id is not None and p.has_role(*PATIENT_ROLES) and patient_id in p.patient_ids

def ensure_tenant_scope(p: Principal, org_id: uuid.UUID) -> None:
    if p.org_id != org_id and not is_tenant_superseding(p):
        raise AuthorizationError("wrong_tenant", "Record belongs to another clinic")

# ---- token handling ----

def _decode_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG], audience=settings.REQUIRED_AUDIENCE)
        return payload
    except JWTError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {e}")

async def get_principal(creds: HTTPAuthorizationCredentials | None = Depends(http_bearer)) -> Principal:
    # In local/dev, allow missing token and use default org
    if creds is None and settings.ENV == "local":
        return Principal(user_id=uuid.uuid4(), org_id=uuid.UUID(settings.DEFAULT_ORG_ID), roles=["admin"], scopes=["*"])
    if creds is None:
        raise HTTPException(status_code=401, detail="Missing token")

    data = _decode_token(creds.credentials)
    user_id = uuid.UUID(str(data.get("sub") or data.get("user_id")))
    org_id = uuid.UUID(str(data.get("org_id") or settings.DEFAULT_ORG_ID))
    roles = data.get("roles", [])
    scopes = data.get("scopes", [])
    patient_ids = [uuid.UUID(str(x)) for x in data.get("patient_ids", [])]
    return Principal(user_id=user_id, org_id=org_id, roles=roles, scopes=scopes, patient_ids=patient_ids)

def require_scopes(*needed: str):
    def dep(principal: Principal = Depends(get_principal)) -> Principal:
        if "*" in principal.scopes:
            return principal
        if not set(needed).issubset(set(principal.scopes)):
            raise HTTPException(status_code=403, detail="Insufficient scopes")
        return principal
    return dep
