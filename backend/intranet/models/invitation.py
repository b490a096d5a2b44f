import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from intranet.database import Base, utcnow


class Invitation(Base):
    """Single-use (dni, code) credential that grants ``role`` on redemption."""

    __tablename__ = "invitations"
    __table_args__ = (Index("ix_invitations_lookup", "dni", "code", "used"),)

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    dni: Mapped[str] = mapped_column(String(20), nullable=False)
    code: Mapped[str] = mapped_column(String(32), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))

    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    used_by: Mapped[Optional[str]] = mapped_column(String(128))
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<Invitation {self.id} dni={self.dni!r} used={self.used}>"
