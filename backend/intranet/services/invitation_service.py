import logging
import secrets
import string
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from intranet.database import utcnow
from intranet.models.invitation import Invitation
from intranet.schemas.invitation import InvitationCreate
from intranet.utils.roles import INVITABLE_ROLES

logger = logging.getLogger(__name__)


def generate_invite_code(length: int = 8) -> str:
    alphabet = string.ascii_uppercase + string.digits
    # Remove ambiguous characters
    alphabet = alphabet.replace("O", "").replace("0", "").replace("I", "").replace("1", "")
    return "".join(secrets.choice(alphabet) for _ in range(length))


class InvitationService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, invitation_id: UUID) -> Optional[Invitation]:
        result = await self.db.execute(select(Invitation).where(Invitation.id == invitation_id))
        return result.scalar_one_or_none()

    async def query(self, dni: str, code: str, used: bool = False) -> list[Invitation]:
        """Records matching (dni, code, used), oldest first."""
        result = await self.db.execute(
            select(Invitation)
            .where(Invitation.dni == dni, Invitation.code == code, Invitation.used == used)
            .order_by(Invitation.created_at)
        )
        # Exhaust the cursor so no read stays open across the conditional update
        return list(result.scalars().all())

    async def mark_used(self, invitation_id: UUID, subject_id: str) -> bool:
        """
        Flip ``used`` to true iff it is still false.

        Returns whether this caller won. The write is a single conditional
        UPDATE, so of several concurrent callers exactly one sees a row count
        of one.
        """
        result = await self.db.execute(
            update(Invitation)
            .where(Invitation.id == invitation_id, Invitation.used.is_(False))
            .values(used=True, used_by=subject_id, used_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def code_in_use(self, dni: str, code: str) -> bool:
        return bool(await self.query(dni, code, used=False))

    async def create(self, operator_id: str, data: InvitationCreate) -> Invitation:
        """Create an invitation. Role checks on the operator happen in the route."""
        dni = data.dni.strip()
        if not dni:
            raise ValueError("DNI is required")
        if data.role not in INVITABLE_ROLES:
            raise ValueError(
                f"Role {data.role!r} cannot be granted by invitation; "
                f"expected one of {', '.join(sorted(INVITABLE_ROLES))}"
            )

        if data.code is not None:
            code = data.code.strip()
            if not code:
                raise ValueError("Invitation code cannot be blank")
            if await self.code_in_use(dni, code):
                raise ValueError("An unused invitation with this code already exists for this DNI")
        else:
            code = generate_invite_code()
            while await self.code_in_use(dni, code):
                code = generate_invite_code()

        invitation = Invitation(
            dni=dni,
            code=code,
            role=data.role,
            email=data.email,
            created_by=operator_id,
        )
        self.db.add(invitation)
        await self.db.flush()
        await self.db.refresh(invitation)

        logger.info("Invitation %s created by %s for role %s", invitation.id, operator_id, data.role)
        return invitation

    async def list_invitations(self) -> list[Invitation]:
        result = await self.db.execute(select(Invitation).order_by(Invitation.created_at.desc()))
        return list(result.scalars().all())

    async def counts(self) -> tuple[int, int]:
        """Return (pending, used)."""
        result = await self.db.execute(
            select(Invitation.used, func.count()).group_by(Invitation.used)
        )
        by_state = {used: count for used, count in result.all()}
        return by_state.get(False, 0), by_state.get(True, 0)
