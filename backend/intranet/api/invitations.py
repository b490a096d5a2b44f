import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from intranet.api.dependencies import RedeemerDep, require_store_ready
from intranet.database import get_db
from intranet.schemas.invitation import (
    InvitationCreate,
    InvitationListResponse,
    InvitationResponse,
    RedeemRequest,
    RedeemResponse,
)
from intranet.schemas.user import DirectoryEntryResponse
from intranet.services.invitation_service import InvitationService
from intranet.utils.auth import AdministratorEntry, CurrentIdentity, ManagementEntry

router = APIRouter(
    prefix="/invitations",
    tags=["Invitations"],
    dependencies=[Depends(require_store_ready)],
)
logger = logging.getLogger(__name__)


@router.post("/redeem", response_model=RedeemResponse)
async def redeem_invitation(
    data: RedeemRequest,
    identity: CurrentIdentity,
    redeemer: RedeemerDep,
) -> RedeemResponse:
    result = await redeemer.redeem(identity, data.dni, data.code)
    # Domain errors are mapped to status codes by the app's exception handlers
    result.raise_for_error()
    return RedeemResponse(
        role=result.role,
        invitation_id=result.invitation_id,
        roles=list(result.roles),
    )


@router.post("", response_model=InvitationResponse, status_code=status.HTTP_201_CREATED)
async def create_invitation(
    data: InvitationCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    operator: ManagementEntry,
) -> InvitationResponse:
    try:
        invitation = await InvitationService(db).create(operator.subject_id, data)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from None
    await db.commit()
    return InvitationResponse.model_validate(invitation)


@router.get("", response_model=InvitationListResponse)
async def list_invitations(
    db: Annotated[AsyncSession, Depends(get_db)],
    operator: ManagementEntry,
) -> InvitationListResponse:
    service = InvitationService(db)
    invitations = await service.list_invitations()
    pending, used = await service.counts()
    return InvitationListResponse(
        invitations=[InvitationResponse.model_validate(i) for i in invitations],
        total=pending + used,
        pending=pending,
        used=used,
    )


@router.post("/{invitation_id}/reconcile", response_model=DirectoryEntryResponse)
async def reconcile_invitation(
    invitation_id: UUID,
    redeemer: RedeemerDep,
    operator: AdministratorEntry,
) -> DirectoryEntryResponse:
    logger.info("Reconciling invitation %s on behalf of %s", invitation_id, operator.subject_id)
    return await redeemer.reconcile(invitation_id)
