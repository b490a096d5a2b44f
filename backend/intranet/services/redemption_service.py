"""
Invitation redemption.

Redeeming spans two stores that share no transaction, so it runs as three
separately committed steps:

1. look up an unused invitation for (dni, code)
2. consume it with a conditional update; this commit decides the winner
3. fold the invitation's role into the redeemer's directory entry

A failure after step 2 leaves a consumed invitation without a grant. That
state is never retried automatically; it is logged with both ids and
repaired by an operator through ``InvitationRedeemer.reconcile``.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from intranet.exceptions import (
    AccessControlError,
    ErrorKind,
    InvalidArgument,
    InvitationNotFoundOrConsumed,
    PartialRedemption,
    StoreUnavailable,
    Unauthenticated,
)
from intranet.schemas.auth import Identity
from intranet.schemas.user import DirectoryEntryResponse
from intranet.services.change_feed import ChangeFeed
from intranet.services.directory_service import DirectoryService
from intranet.services.invitation_service import InvitationService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedemptionResult:
    ok: bool
    role: Optional[str] = None
    invitation_id: Optional[UUID] = None
    roles: tuple[str, ...] = ()
    error: Optional[AccessControlError] = None

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None

    @property
    def message(self) -> Optional[str]:
        return self.error.message if self.error else None

    @classmethod
    def failure(cls, error: AccessControlError) -> "RedemptionResult":
        return cls(ok=False, error=error)

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


class InvitationRedeemer:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        feed: Optional[ChangeFeed] = None,
    ):
        self.session_maker = session_maker
        self.feed = feed

    async def redeem(self, identity: Optional[Identity], dni: str, code: str) -> RedemptionResult:
        if identity is None:
            return RedemptionResult.failure(Unauthenticated())

        dni = (dni or "").strip()
        code = (code or "").strip()
        if not dni or not code:
            return RedemptionResult.failure(InvalidArgument())

        subject_id = identity.subject_id

        try:
            async with self.session_maker() as db:
                invitations = InvitationService(db)
                candidates = await invitations.query(dni, code, used=False)
                if not candidates:
                    logger.warning("Redemption by %s: no unused invitation for dni %s", subject_id, dni)
                    return RedemptionResult.failure(InvitationNotFoundOrConsumed())

                invitation = candidates[0]
                invitation_id, role = invitation.id, invitation.role
                won = await invitations.mark_used(invitation_id, subject_id)
                await db.commit()
        except (SQLAlchemyError, OSError) as e:
            error = StoreUnavailable()
            logger.warning("Redemption by %s failed, store unavailable [%s]: %s", subject_id, error.error_id, e)
            return RedemptionResult.failure(error)

        if not won:
            logger.warning("Redemption by %s lost the race for invitation %s", subject_id, invitation_id)
            return RedemptionResult.failure(InvitationNotFoundOrConsumed())

        try:
            async with self.session_maker() as db:
                entry = await DirectoryService(db, self.feed).grant_role(
                    subject_id, role, dni=dni, invitation_id=invitation_id
                )
                await db.commit()
                roles = tuple(entry.roles)
        except (SQLAlchemyError, OSError):
            error = PartialRedemption(subject_id=subject_id, invitation_id=str(invitation_id))
            logger.error(
                "Partial redemption [%s]: invitation %s consumed by %s but role %s was not granted",
                error.error_id,
                invitation_id,
                subject_id,
                role,
                exc_info=True,
            )
            return RedemptionResult.failure(error)

        logger.info("Invitation %s redeemed by %s, granted %s", invitation_id, subject_id, role)
        return RedemptionResult(ok=True, role=role, invitation_id=invitation_id, roles=roles)

    async def reconcile(self, invitation_id: UUID) -> DirectoryEntryResponse:
        """
        Re-apply the grant of a consumed invitation to whoever consumed it.

        Idempotent: roles are merged as a set, so reconciling an invitation
        that was fully redeemed changes nothing but ``updated_at``.
        """
        try:
            async with self.session_maker() as db:
                invitation = await InvitationService(db).get(invitation_id)
                if invitation is None:
                    raise InvitationNotFoundOrConsumed("Invitation not found.")
                if not invitation.used or not invitation.used_by:
                    raise InvalidArgument("Invitation has not been redeemed yet.")

                entry = await DirectoryService(db, self.feed).grant_role(
                    invitation.used_by,
                    invitation.role,
                    dni=invitation.dni,
                    invitation_id=invitation.id,
                )
                await db.commit()
                logger.info(
                    "Reconciled invitation %s: %s holds %s",
                    invitation.id,
                    invitation.used_by,
                    invitation.role,
                )
                return DirectoryEntryResponse.from_entry(entry)
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable() from e
