from typing import Literal

from pydantic import BaseModel

from app.models.location import Location

ResponderStatus = Literal["available", "assigned", "busy"]


class ResponderCreate(BaseModel):
    user_id: str
    vehicle_id: str
    location: Location
    status: ResponderStatus = "available"


class EmergencyResponder(ResponderCreate):
    id: str
    last_update: str


class ResponderStatusUpdate(BaseModel):
    expected_status: ResponderStatus
    status: ResponderStatus
    location: Location | None = None
