from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class InvitationCreate(BaseModel):
    dni: str = Field(..., min_length=1, max_length=20)
    role: str = Field(..., min_length=1, max_length=32)
    code: str | None = Field(None, min_length=4, max_length=32)
    email: str | None = Field(None, max_length=255)


class InvitationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    dni: str
    code: str
    role: str
    email: str | None = None
    created_by: str
    created_at: datetime
    used: bool
    used_by: str | None = None
    used_at: datetime | None = None


class InvitationListResponse(BaseModel):
    invitations: list[InvitationResponse]
    total: int
    pending: int
    used: int


class RedeemRequest(BaseModel):
    # Blank values are rejected by the redemption protocol itself so the
    # form gets the same message whatever the transport.
    dni: str = Field("", max_length=20)
    code: str = Field("", max_length=32)


class RedeemResponse(BaseModel):
    ok: bool = True
    role: str
    invitation_id: UUID
    roles: list[str]
