import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from intranet.database import utcnow
from intranet.models.directory import DirectoryEntry
from intranet.schemas.auth import Identity
from intranet.schemas.user import DirectoryEntryResponse
from intranet.services.change_feed import ChangeFeed, track_change
from intranet.utils.patch import PATCHABLE_FIELDS, DirectoryPatch, merge_entry

logger = logging.getLogger(__name__)

_STORED_FIELDS = PATCHABLE_FIELDS | {"roles", "login_history", "updated_at"}


def _entry_values(entry: DirectoryEntry) -> dict:
    return {name: getattr(entry, name) for name in _STORED_FIELDS}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DirectoryService:
    """
    Point reads and merge-style writes on directory entries.

    Like the other services this only flushes; callers own the commit. When
    a change feed is given, every write is queued and published after that
    commit.
    """

    def __init__(self, db: AsyncSession, feed: Optional[ChangeFeed] = None):
        self.db = db
        self.feed = feed

    async def get(self, subject_id: str) -> Optional[DirectoryEntry]:
        result = await self.db.execute(
            select(DirectoryEntry).where(DirectoryEntry.subject_id == subject_id)
        )
        return result.scalar_one_or_none()

    async def list_entries(self) -> list[DirectoryEntry]:
        result = await self.db.execute(
            select(DirectoryEntry).order_by(DirectoryEntry.created_at.desc())
        )
        return list(result.scalars().all())

    async def apply_patch(
        self, subject_id: str, patch: DirectoryPatch, merge: bool = True
    ) -> DirectoryEntry:
        """
        Upsert ``subject_id`` with ``patch``.

        A concurrent first insert for the same subject loses on the primary
        key; the patch is then re-applied once on top of the winner's row.
        That retry rolls back the session, so nothing else may be pending.
        """
        try:
            return await self._apply_patch(subject_id, patch, merge)
        except IntegrityError:
            await self.db.rollback()
            logger.info("Concurrent insert for %s, retrying as update", subject_id)
            return await self._apply_patch(subject_id, patch, merge)

    async def _apply_patch(
        self, subject_id: str, patch: DirectoryPatch, merge: bool
    ) -> DirectoryEntry:
        entry = await self.get(subject_id)
        current = _entry_values(entry) if entry is not None else None
        values = merge_entry(current, patch, merge=merge)

        if entry is None:
            entry = DirectoryEntry(subject_id=subject_id, **values)
            self.db.add(entry)
        else:
            for name, value in values.items():
                setattr(entry, name, value)

        await self.db.flush()
        if self.feed is not None:
            track_change(self.db, self.feed, subject_id, DirectoryEntryResponse.from_entry(entry))
        return entry

    async def ensure_entry(
        self, identity: Identity, min_interval: Optional[timedelta] = None
    ) -> tuple[DirectoryEntry, bool]:
        """
        Bootstrap the entry on sign-in. Returns (entry, created).

        Creates it with no roles on first login; afterwards only appends to
        the login history and refreshes the profile. Roles and dni are never
        touched here.

        With ``min_interval``, a login recorded less than that long ago is
        treated as the same login and nothing is written.
        """
        now = utcnow()
        existing = await self.get(identity.subject_id)
        if existing is not None and min_interval is not None:
            last = _as_utc(existing.last_login_at)
            if last is not None and now - last < min_interval:
                return existing, False
        profile = {
            "email": identity.email,
            "display_name": identity.display_name,
            "avatar_url": identity.avatar_url,
        }
        # Keep stored profile values when the provider omits them
        fields = {k: v for k, v in profile.items() if v is not None}
        fields["last_login_at"] = now

        patch = DirectoryPatch(fields=fields, append_logins=(now,), touched_at=now)
        entry = await self.apply_patch(identity.subject_id, patch)

        if existing is None:
            logger.info("Created directory entry for %s", identity.subject_id)
        return entry, existing is None

    async def grant_role(
        self, subject_id: str, role: str, dni: Optional[str] = None, invitation_id=None
    ) -> DirectoryEntry:
        fields: dict = {}
        if dni is not None:
            fields["dni"] = dni
        if invitation_id is not None:
            fields["invitation_id"] = invitation_id
        patch = DirectoryPatch(
            fields=fields, add_roles=frozenset({role}), touched_at=utcnow()
        )
        return await self.apply_patch(subject_id, patch)

    async def replace_roles(self, subject_id: str, roles: frozenset[str]) -> DirectoryEntry:
        patch = DirectoryPatch(replace_roles=roles, touched_at=utcnow())
        return await self.apply_patch(subject_id, patch)

    async def update_profile(self, subject_id: str, fields: dict) -> DirectoryEntry:
        patch = DirectoryPatch(fields=fields, touched_at=utcnow())
        return await self.apply_patch(subject_id, patch)
