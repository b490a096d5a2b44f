from pydantic import BaseModel, ConfigDict


class TokenPayload(BaseModel):
    sub: str  # Subject (stable id from the identity provider)
    exp: int  # Expiration timestamp
    iat: int | None = None  # Issued at timestamp (optional for forward auth tokens)
    email: str | None = None
    name: str | None = None
    picture: str | None = None


class Identity(BaseModel):
    """Externally issued identity. Immutable from this service's point of view."""

    model_config = ConfigDict(frozen=True)

    subject_id: str
    email: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None

    @classmethod
    def from_token(cls, payload: TokenPayload) -> "Identity":
        return cls(
            subject_id=payload.sub,
            email=payload.email,
            display_name=payload.name,
            avatar_url=payload.picture,
        )
