import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from app.dependencies import get_dispatcher, get_engine, get_store
from app.models.case import STAFF_TRANSITIONS, CaseCreate, CaseSubmission, CaseStatusUpdate, EmergencyCase
from app.models.notification import STATUS_UPDATE
from app.services.assignment import AssignmentEngine, AssignmentError, hospital_group
from app.services.capacity_store import CapacityStore, TransientStoreError, WriteOutcome
from app.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cases", tags=["cases"])


async def _run_assignment(case: EmergencyCase, engine: AssignmentEngine) -> CaseSubmission:
    try:
        result = await engine.assign(case)
    except AssignmentError as e:
        logger.info("Case %s left pending: %s", case.id, e)
        return CaseSubmission(case=case, assigned=False, assignment_error=type(e).__name__)
    except TransientStoreError as e:
        logger.warning("Case %s left pending after store failure: %s", case.id, e)
        return CaseSubmission(case=case, assigned=False, assignment_error=type(e).__name__)
    return CaseSubmission(case=result.case, assigned=True)


@router.post("", response_model=CaseSubmission, status_code=201)
async def create_case(
    body: CaseCreate,
    store: CapacityStore = Depends(get_store),
    engine: AssignmentEngine = Depends(get_engine),
):
    """Record a patient's emergency and try to assign it right away.

    The case is stored first, so a failed assignment never loses it; it stays
    pending and can be re-attempted.
    """
    try:
        case = await store.create_case(body)
    except TransientStoreError:
        raise HTTPException(status_code=503, detail="Case store unavailable") from None
    return await _run_assignment(case, engine)


@router.get("", response_model=list[EmergencyCase])
async def list_cases(
    status: str | None = Query(None, pattern="^(pending|assigned|in_progress|completed)$"),
    store: CapacityStore = Depends(get_store),
):
    return await store.list_cases(status)


@router.get("/{case_id}", response_model=EmergencyCase)
async def get_case(case_id: str, store: CapacityStore = Depends(get_store)):
    case = await store.get_case(case_id)
    if not case:
        raise HTTPException(status_code=404, detail="Case not found")
    return case


@router.post("/{case_id}/assign", response_model=CaseSubmission)
async def reassign_case(
    case_id: str,
    store: CapacityStore = Depends(get_store),
    engine: AssignmentEngine = Depends(get_engine),
):
    """Re-attempt assignment of a case still waiting in the pending queue."""
    case = await store.get_case(case_id)
    if not case:
        raise HTTPException(status_code=404, detail="Case not found")
    if case.status != "pending":
        raise HTTPException(status_code=409, detail=f"Case is already {case.status}")
    return await _run_assignment(case, engine)


@router.patch("/{case_id}/status", response_model=EmergencyCase)
async def update_case_status(
    case_id: str,
    body: CaseStatusUpdate,
    store: CapacityStore = Depends(get_store),
    dispatcher: NotificationDispatcher | None = Depends(get_dispatcher),
):
    """Hospital staff lifecycle transition: assigned -> in_progress -> completed."""
    if STAFF_TRANSITIONS.get(body.expected_status) != body.status:
        raise HTTPException(
            status_code=422,
            detail=f"Cannot move a case from {body.expected_status} to {body.status}",
        )

    try:
        outcome = await store.update_case_status(case_id, body.expected_status, body.status)
        case = await store.get_case(case_id)
    except TransientStoreError:
        raise HTTPException(status_code=503, detail="Case store unavailable") from None

    if outcome is WriteOutcome.NOT_FOUND or case is None:
        raise HTTPException(status_code=404, detail="Case not found")
    if outcome is WriteOutcome.CONFLICT:
        raise HTTPException(status_code=409, detail=f"Case is {case.status}, not {body.expected_status}")

    if dispatcher is not None:
        recipients = [case.patient_id]
        if case.assigned_hospital_id:
            recipients.append(hospital_group(case.assigned_hospital_id))
        if case.assigned_responder_id:
            # The status change is already committed; a failed lookup only narrows the audience.
            try:
                responder = await store.get_responder(case.assigned_responder_id)
            except TransientStoreError:
                logger.warning("Could not look up responder for case %s status update", case.id)
                responder = None
            if responder:
                recipients.append(responder.user_id)
        await dispatcher.publish(
            STATUS_UPDATE,
            {"case": case.model_dump(), "message": f"Case {case.id} is now {case.status}"},
            recipients=recipients,
        )
    return case
