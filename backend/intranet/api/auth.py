import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from intranet.api.dependencies import (
    ChangeFeedDep,
    ConnectivityDep,
    DirectoryStoreDep,
    require_store_ready,
)
from intranet.config import DEFAULT_SECRET_KEY, get_settings
from intranet.database import get_db
from intranet.schemas.auth import Identity
from intranet.schemas.session import RouteDecisionResponse
from intranet.schemas.user import AuthStatusResponse, UserSyncRequest, UserSyncResponse
from intranet.services.directory_service import DirectoryService
from intranet.services.routing_policy import normalize_path, redirect_target, routing_outcome
from intranet.services.session_observer import LoadingPhase, SessionSnapshot
from intranet.utils.auth import CurrentIdentityOptional, create_access_token
from intranet.utils.oidc import verify_id_token
from intranet.utils.roles import normalize_roles

router = APIRouter(prefix="/auth", tags=["Authentication"])
settings = get_settings()
logger = logging.getLogger(__name__)


def _is_dev_mode() -> bool:
    return settings.debug and settings.secret_key == DEFAULT_SECRET_KEY


def _oidc_configured() -> bool:
    return bool(settings.oidc_issuer_url and settings.oidc_client_id)


@router.get("/status", response_model=AuthStatusResponse)
async def auth_status() -> AuthStatusResponse:
    mode = settings.get_auth_mode()
    if mode == "unknown":
        return AuthStatusResponse(
            configured=False,
            mode=mode,
            error=(
                "No authentication method configured. "
                "Set OIDC_ISSUER_URL + OIDC_CLIENT_ID, or AUTH_TRUST_HEADER=true, or enable DEBUG mode."
            ),
        )
    return AuthStatusResponse(configured=True, mode=mode)


@router.post(
    "/sync",
    response_model=UserSyncResponse,
    dependencies=[Depends(require_store_ready)],
)
async def sync_user(
    sync_data: UserSyncRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    feed: ChangeFeedDep,
) -> UserSyncResponse:
    """Federated sign-in: verify the provider's assertion, bootstrap, issue a token."""
    identity = Identity(
        subject_id=sync_data.external_id,
        email=sync_data.email,
        display_name=sync_data.display_name,
        avatar_url=sync_data.avatar_url,
    )

    if _is_dev_mode():
        pass
    elif _oidc_configured():
        if not sync_data.id_token:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="OIDC id_token is required for authentication",
            )

        verified = await verify_id_token(
            sync_data.id_token,
            settings.oidc_issuer_url,
            settings.oidc_client_id,
        )
        if verified.subject_id != sync_data.external_id:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token subject does not match external_id",
            )
        # Claims from the verified token win over the request body
        identity = Identity(
            subject_id=verified.subject_id,
            email=verified.email or identity.email,
            display_name=verified.display_name or identity.display_name,
            avatar_url=verified.avatar_url or identity.avatar_url,
        )
    elif settings.auth_trust_header:
        pass
    else:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="No authentication method configured",
        )

    entry, is_new = await DirectoryService(db, feed).ensure_entry(identity)
    await db.commit()
    logger.info("Signed in %s (new entry: %s)", identity.subject_id, is_new)

    return UserSyncResponse(
        subject_id=entry.subject_id,
        email=entry.email,
        display_name=entry.display_name,
        roles=list(entry.roles),
        is_new_user=is_new,
        access_token=create_access_token(identity),
    )


@router.get(
    "/session",
    response_model=RouteDecisionResponse,
    dependencies=[Depends(require_store_ready)],
)
async def get_session(
    identity: CurrentIdentityOptional,
    directory: DirectoryStoreDep,
    connectivity: ConnectivityDep,
    path: Annotated[Optional[str], Query()] = "/",
) -> RouteDecisionResponse:
    """One-shot snapshot and routing decision, for clients without the websocket."""
    roles: frozenset[str] = frozenset()
    if identity is not None:
        entry = await directory.get(identity.subject_id)
        roles = normalize_roles(entry.roles) if entry else frozenset()

    snapshot = SessionSnapshot(
        identity=identity,
        roles=roles,
        connectivity=connectivity.status,
        loading_phase=LoadingPhase.READY,
    )
    return RouteDecisionResponse(
        path=normalize_path(path),
        outcome=routing_outcome(snapshot, path).value,
        redirect_to=redirect_target(snapshot, path),
        snapshot=snapshot.to_response(),
    )
