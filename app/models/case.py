from typing import Literal

from pydantic import BaseModel

from app.models.location import Location

Severity = Literal["low", "medium", "high", "critical"]
CaseStatus = Literal["pending", "assigned", "in_progress", "completed"]

# Transitions hospital staff may apply; pending -> assigned belongs to the assignment engine.
STAFF_TRANSITIONS: dict[str, str] = {
    "assigned": "in_progress",
    "in_progress": "completed",
}


class CaseCreate(BaseModel):
    patient_id: str
    description: str
    severity: Severity
    location: Location


class EmergencyCase(BaseModel):
    id: str
    patient_id: str
    description: str
    severity: Severity
    location: Location
    status: CaseStatus = "pending"
    assigned_hospital_id: str | None = None
    assigned_responder_id: str | None = None
    created_at: str
    updated_at: str


class CaseSubmission(BaseModel):
    """Result of a patient submission: the stored case plus the assignment outcome."""

    case: EmergencyCase
    assigned: bool
    assignment_error: str | None = None


class CaseStatusUpdate(BaseModel):
    expected_status: CaseStatus
    status: CaseStatus
