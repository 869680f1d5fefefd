from typing import Literal

from pydantic import BaseModel

VerificationRole = Literal["hospital", "responder"]


class VerificationCodeCreate(BaseModel):
    role: VerificationRole
    created_by: str | None = None


class VerificationCode(BaseModel):
    id: str
    code: str
    role: VerificationRole
    created_at: str
    created_by: str | None = None


class VerificationCodeConsume(BaseModel):
    code: str
    role: VerificationRole
