from typing import Any, Literal

from pydantic import BaseModel

EventType = Literal["case_assigned", "status_update", "resource_update"]

CASE_ASSIGNED = "case_assigned"
STATUS_UPDATE = "status_update"
RESOURCE_UPDATE = "resource_update"


class NotificationEvent(BaseModel):
    """Outbound event as it travels over a user's channel."""

    type: str
    payload: dict[str, Any]


class ControlMessage(BaseModel):
    type: Literal["subscribe", "unsubscribe"]
    event: EventType
