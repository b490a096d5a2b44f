import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from intranet.database import Base, utcnow
from intranet.utils.roles import normalize_roles, primary_role


class DirectoryEntry(Base):
    """The platform's own record of a subject: roles and profile."""

    __tablename__ = "directory_entries"

    subject_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(100))
    avatar_url: Mapped[Optional[str]] = mapped_column(String(500))
    dni: Mapped[Optional[str]] = mapped_column(String(20), index=True)

    # Set semantics, stored sorted by rank
    roles: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    invitation_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    # ISO-8601 timestamps, append-only
    login_history: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    @property
    def role_set(self) -> frozenset[str]:
        return normalize_roles(self.roles)

    @property
    def primary_role(self) -> Optional[str]:
        return primary_role(self.role_set)

    def __repr__(self) -> str:
        return f"<DirectoryEntry {self.subject_id!r} roles={self.roles!r}>"
