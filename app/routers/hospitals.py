import logging

from fastapi import APIRouter, Depends, HTTPException

from app.dependencies import get_dispatcher, get_store
from app.models.hospital import CapacityUpdate, Hospital, HospitalCreate, ResourcesUpdate
from app.models.notification import RESOURCE_UPDATE
from app.services.capacity_store import CapacityStore, TransientStoreError, WriteOutcome
from app.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/hospitals", tags=["hospitals"])


@router.post("", response_model=Hospital, status_code=201)
async def create_hospital(body: HospitalCreate, store: CapacityStore = Depends(get_store)):
    return await store.create_hospital(body)


@router.get("", response_model=list[Hospital])
async def list_hospitals(store: CapacityStore = Depends(get_store)):
    return await store.list_hospitals()


@router.get("/{hospital_id}", response_model=Hospital)
async def get_hospital(hospital_id: str, store: CapacityStore = Depends(get_store)):
    hospital = await store.get_hospital(hospital_id)
    if not hospital:
        raise HTTPException(status_code=404, detail="Hospital not found")
    return hospital


@router.patch("/{hospital_id}/capacity", response_model=Hospital)
async def update_capacity(
    hospital_id: str,
    body: CapacityUpdate,
    store: CapacityStore = Depends(get_store),
    dispatcher: NotificationDispatcher | None = Depends(get_dispatcher),
):
    """Staff capacity edit (e.g. after a discharge).

    The edit only applies if the available count is still the one the staff
    member last saw; otherwise 409 and the client should reload.
    """
    try:
        outcome = await store.set_hospital_capacity(hospital_id, body.expected_available, body.available)
        hospital = await store.get_hospital(hospital_id)
    except TransientStoreError:
        raise HTTPException(status_code=503, detail="Capacity store unavailable") from None

    if outcome is WriteOutcome.NOT_FOUND or hospital is None:
        raise HTTPException(status_code=404, detail="Hospital not found")
    if outcome is WriteOutcome.CONFLICT:
        raise HTTPException(
            status_code=409,
            detail={
                "message": "Capacity changed or exceeds total beds",
                "available": hospital.capacity.available,
                "total": hospital.capacity.total,
            },
        )

    logger.info(
        "Hospital %s capacity set from %d to %d", hospital_id, body.expected_available, body.available
    )
    if dispatcher is not None:
        await dispatcher.publish(
            RESOURCE_UPDATE,
            {
                "hospital": hospital.model_dump(),
                "message": f"{hospital.name} has {hospital.capacity.available} beds available",
            },
        )
    return hospital


@router.patch("/{hospital_id}/resources", response_model=Hospital)
async def update_resources(
    hospital_id: str,
    body: ResourcesUpdate,
    store: CapacityStore = Depends(get_store),
    dispatcher: NotificationDispatcher | None = Depends(get_dispatcher),
):
    """Staff edit of ICU beds and ventilators, conditional on the counts last seen."""
    outcome = await store.set_hospital_resources(hospital_id, body.expected, body.resources)
    hospital = await store.get_hospital(hospital_id)

    if outcome is WriteOutcome.NOT_FOUND or hospital is None:
        raise HTTPException(status_code=404, detail="Hospital not found")
    if outcome is WriteOutcome.CONFLICT:
        raise HTTPException(
            status_code=409,
            detail={
                "message": "Resources changed since last read",
                "resources": hospital.resources.model_dump(),
            },
        )

    logger.info("Hospital %s resources set to %s", hospital_id, body.resources.model_dump())
    if dispatcher is not None:
        await dispatcher.publish(
            RESOURCE_UPDATE,
            {
                "hospital": hospital.model_dump(),
                "message": (
                    f"{hospital.name} has {hospital.resources.icu_beds} ICU beds"
                    f" and {hospital.resources.ventilators} ventilators"
                ),
            },
        )
    return hospital
