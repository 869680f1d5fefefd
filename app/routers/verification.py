from fastapi import APIRouter, Depends, HTTPException

from app.dependencies import get_store
from app.models.verification import VerificationCode, VerificationCodeConsume, VerificationCodeCreate
from app.services.capacity_store import CapacityStore

router = APIRouter(prefix="/api/verification-codes", tags=["verification"])


@router.post("", response_model=VerificationCode, status_code=201)
async def create_code(body: VerificationCodeCreate, store: CapacityStore = Depends(get_store)):
    """Issue a one-time code that lets a hospital or responder account register."""
    return await store.create_verification_code(body.role, body.created_by)


@router.get("", response_model=list[VerificationCode])
async def list_codes(store: CapacityStore = Depends(get_store)):
    return await store.list_verification_codes()


@router.post("/consume")
async def consume_code(body: VerificationCodeConsume, store: CapacityStore = Depends(get_store)):
    if not await store.consume_verification_code(body.code, body.role):
        raise HTTPException(status_code=404, detail="Invalid or already used verification code")
    return {"code": body.code, "role": body.role, "consumed": True}
