from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from intranet.api.dependencies import ChangeFeedDep
from intranet.config import get_settings
from intranet.database import get_db
from intranet.exceptions import Unauthenticated
from intranet.models.directory import DirectoryEntry
from intranet.schemas.auth import Identity, TokenPayload
from intranet.services.directory_service import DirectoryService
from intranet.utils.roles import ROLE_GROUPS, has_any_role

settings = get_settings()

# HTTP Bearer token scheme
bearer_scheme = HTTPBearer(auto_error=False)

# Forward auth header names (TinyAuth, Authelia, Authentik, etc.)
REMOTE_USER_HEADER = "Remote-User"
REMOTE_EMAIL_HEADER = "Remote-Email"
REMOTE_NAME_HEADER = "Remote-Name"

TOKEN_ALGORITHM = "HS256"


def create_access_token(identity: Identity, expires_delta: timedelta | None = None) -> str:
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(days=settings.access_token_ttl_days))
    to_encode = {
        "sub": identity.subject_id,
        "exp": expire,
        "iat": now,
        "email": identity.email,
        "name": identity.display_name,
        "picture": identity.avatar_url,
    }
    return jwt.encode(to_encode, settings.secret_key, algorithm=TOKEN_ALGORITHM)


def decode_token(token: str) -> TokenPayload:
    """Decode and validate a platform access token. Raises Unauthenticated."""
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[TOKEN_ALGORITHM],
            options={"verify_exp": True},
        )
        return TokenPayload(**payload)
    except JWTError as e:
        raise Unauthenticated(f"Invalid token: {e}") from None


def identity_from_headers(request: Request) -> Optional[Identity]:
    """Identity asserted by a trusted auth proxy, if any."""
    remote_user = request.headers.get(REMOTE_USER_HEADER)
    if not remote_user:
        return None
    return Identity(
        subject_id=remote_user,
        email=request.headers.get(REMOTE_EMAIL_HEADER),
        display_name=request.headers.get(REMOTE_NAME_HEADER) or remote_user,
    )


async def get_current_identity_optional(
    request: Request,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)],
) -> Optional[Identity]:
    """
    Resolve the caller's identity.

    Forward auth headers take precedence when AUTH_TRUST_HEADER is enabled;
    otherwise the Bearer token is decoded. No credentials means None, an
    invalid token is still an error.
    """
    if settings.auth_trust_header:
        identity = identity_from_headers(request)
        if identity is not None:
            return identity

    if credentials:
        return Identity.from_token(decode_token(credentials.credentials))
    return None


async def get_current_identity(
    identity: Annotated[Optional[Identity], Depends(get_current_identity_optional)],
) -> Identity:
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity


async def get_current_entry(
    identity: Annotated[Identity, Depends(get_current_identity)],
    db: Annotated[AsyncSession, Depends(get_db)],
    feed: ChangeFeedDep,
) -> DirectoryEntry:
    """
    The caller's directory entry.

    Every signed-in subject has one once bootstrap ran at sign-in. A token
    that predates it (or a forward-auth caller) is bootstrapped here.
    """
    service = DirectoryService(db, feed)
    entry = await service.get(identity.subject_id)
    if entry is None:
        entry, _ = await service.ensure_entry(identity)
        await db.commit()

    if not entry.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )
    return entry


def require_any_role(roles: Iterable[str]):
    """Dependency factory: the caller must hold at least one of ``roles``."""
    allowed = frozenset(roles)

    async def dependency(
        entry: Annotated[DirectoryEntry, Depends(get_current_entry)],
    ) -> DirectoryEntry:
        if not has_any_role(entry.role_set, allowed):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role for this operation",
            )
        return entry

    return dependency


def require_role_group(group: str):
    return require_any_role(ROLE_GROUPS[group])


# Type aliases for dependency injection
CurrentIdentity = Annotated[Identity, Depends(get_current_identity)]
CurrentIdentityOptional = Annotated[Optional[Identity], Depends(get_current_identity_optional)]
CurrentEntry = Annotated[DirectoryEntry, Depends(get_current_entry)]
ManagementEntry = Annotated[DirectoryEntry, Depends(require_role_group("management"))]
AdministratorEntry = Annotated[DirectoryEntry, Depends(require_role_group("administrators"))]
