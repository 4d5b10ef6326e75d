import uuid
from datetime import date
from pydantic import BaseModel, Field

class RoomAvailabilityQuery(BaseModel):
    therapy_type: str
    date: date
    time: str = Field(pattern=r"^\d{1,2}:\d{2}$")
    duration: int = Field(default=60, ge=1, le=24 * 60)

class RoomAvailabilityOut(BaseModel):
    room_id: uuid.UUID
    name: str
    capacity: int
    occupied: int
    spare: int
