from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class DirectoryEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subject_id: str
    email: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    dni: str | None = None
    roles: list[str] = []
    primary_role: str | None = None
    invitation_id: UUID | None = None
    is_active: bool = True
    last_login_at: datetime | None = None
    login_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_entry(cls, entry) -> "DirectoryEntryResponse":
        response = cls.model_validate(entry)
        response.login_count = len(entry.login_history or [])
        return response


class ProfileUpdate(BaseModel):
    display_name: str | None = Field(None, min_length=1, max_length=100)
    avatar_url: str | None = Field(None, max_length=500)


class RolesUpdate(BaseModel):
    roles: list[str] = Field(..., description="Complete role set for the subject")


class UserSyncRequest(BaseModel):
    external_id: str = Field(..., min_length=1, description="Subject ID from the identity provider")
    # Plain str: forward auth may only provide a system-generated placeholder
    email: str = Field(..., description="Email address or system-generated placeholder")
    display_name: str = Field(..., min_length=1, max_length=100)
    avatar_url: str | None = None
    id_token: str | None = Field(
        None, description="OIDC ID token for verification (required when OIDC is configured)"
    )


class UserSyncResponse(BaseModel):
    subject_id: str
    email: str | None = None
    display_name: str | None = None
    roles: list[str] = []
    is_new_user: bool
    access_token: str = Field(..., description="JWT token for API authentication")


class AuthStatusResponse(BaseModel):
    configured: bool
    mode: str
    error: str | None = None
