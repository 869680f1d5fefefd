import logging

from fastapi import APIRouter, Depends, HTTPException

from app.dependencies import get_engine
from app.services.assignment import AssignmentEngine
from app.services.capacity_store import TransientStoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/reconcile")
async def reconcile(grace_seconds: int = 0, engine: AssignmentEngine = Depends(get_engine)):
    """Release beds and responders held by assignments that never completed."""
    try:
        recovered = await engine.recover(grace_seconds)
    except TransientStoreError as e:
        logger.error("Reconciliation failed: %s", e)
        raise HTTPException(status_code=503, detail=str(e)) from None
    return {"recovered": recovered}
