import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from app.dependencies import get_dispatcher, get_store
from app.models.notification import STATUS_UPDATE
from app.models.responder import EmergencyResponder, ResponderCreate, ResponderStatusUpdate
from app.services.capacity_store import CapacityStore, TransientStoreError, WriteOutcome
from app.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/responders", tags=["responders"])

# The responder's own transitions; available -> assigned is made by the assignment engine.
RESPONDER_TRANSITIONS: dict[str, set[str]] = {
    "assigned": {"busy", "available"},
    "busy": {"available"},
    "available": {"busy"},
}


@router.post("", response_model=EmergencyResponder, status_code=201)
async def create_responder(body: ResponderCreate, store: CapacityStore = Depends(get_store)):
    return await store.create_responder(body)


@router.get("", response_model=list[EmergencyResponder])
async def list_responders(
    status: str | None = Query(None, pattern="^(available|assigned|busy)$"),
    store: CapacityStore = Depends(get_store),
):
    return await store.list_responders(status)


@router.get("/{responder_id}", response_model=EmergencyResponder)
async def get_responder(responder_id: str, store: CapacityStore = Depends(get_store)):
    responder = await store.get_responder(responder_id)
    if not responder:
        raise HTTPException(status_code=404, detail="Responder not found")
    return responder


@router.patch("/{responder_id}/status", response_model=EmergencyResponder)
async def update_responder_status(
    responder_id: str,
    body: ResponderStatusUpdate,
    store: CapacityStore = Depends(get_store),
    dispatcher: NotificationDispatcher | None = Depends(get_dispatcher),
):
    if body.status not in RESPONDER_TRANSITIONS.get(body.expected_status, set()):
        raise HTTPException(
            status_code=422,
            detail=f"Cannot move a responder from {body.expected_status} to {body.status}",
        )

    try:
        outcome = await store.set_responder_status(
            responder_id, body.expected_status, body.status, location=body.location
        )
        responder = await store.get_responder(responder_id)
    except TransientStoreError:
        raise HTTPException(status_code=503, detail="Responder store unavailable") from None

    if outcome is WriteOutcome.NOT_FOUND or responder is None:
        raise HTTPException(status_code=404, detail="Responder not found")
    if outcome is WriteOutcome.CONFLICT:
        raise HTTPException(status_code=409, detail=f"Responder is {responder.status}, not {body.expected_status}")

    if dispatcher is not None:
        await dispatcher.publish(
            STATUS_UPDATE,
            {
                "responder": responder.model_dump(),
                "message": f"Unit {responder.vehicle_id} is now {responder.status}",
            },
        )
    return responder
