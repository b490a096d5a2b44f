import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from intranet.api.dependencies import ChangeFeedDep, require_store_ready
from intranet.database import get_db
from intranet.schemas.user import DirectoryEntryResponse, ProfileUpdate, RolesUpdate
from intranet.services.directory_service import DirectoryService
from intranet.utils.auth import AdministratorEntry, CurrentEntry, ManagementEntry
from intranet.utils.roles import ROLE_RANK, normalize_roles

router = APIRouter(
    prefix="/users",
    tags=["Users"],
    dependencies=[Depends(require_store_ready)],
)
logger = logging.getLogger(__name__)


@router.get("/me", response_model=DirectoryEntryResponse)
async def get_profile(current_entry: CurrentEntry) -> DirectoryEntryResponse:
    return DirectoryEntryResponse.from_entry(current_entry)


@router.patch("/me", response_model=DirectoryEntryResponse)
async def update_profile(
    data: ProfileUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
    feed: ChangeFeedDep,
    current_entry: CurrentEntry,
) -> DirectoryEntryResponse:
    update_data = data.model_dump(exclude_unset=True)
    entry = await DirectoryService(db, feed).update_profile(current_entry.subject_id, update_data)
    await db.commit()
    return DirectoryEntryResponse.from_entry(entry)


@router.get("", response_model=list[DirectoryEntryResponse])
async def list_users(
    db: Annotated[AsyncSession, Depends(get_db)],
    operator: ManagementEntry,
) -> list[DirectoryEntryResponse]:
    entries = await DirectoryService(db).list_entries()
    return [DirectoryEntryResponse.from_entry(entry) for entry in entries]


@router.put("/{subject_id}/roles", response_model=DirectoryEntryResponse)
async def replace_roles(
    subject_id: str,
    data: RolesUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
    feed: ChangeFeedDep,
    operator: AdministratorEntry,
) -> DirectoryEntryResponse:
    unknown = sorted(set(data.roles) - set(ROLE_RANK))
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown roles: {', '.join(unknown)}",
        )

    service = DirectoryService(db, feed)
    if await service.get(subject_id) is None:
        # Entries only come into existence through sign-in
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )

    entry = await service.replace_roles(subject_id, normalize_roles(data.roles))
    await db.commit()
    logger.info("Roles of %s set to %s by %s", subject_id, entry.roles, operator.subject_id)
    return DirectoryEntryResponse.from_entry(entry)
