import asyncio
import logging
from collections.abc import Callable
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from intranet.exceptions import StoreUnavailable
from intranet.schemas.auth import Identity
from intranet.schemas.user import DirectoryEntryResponse
from intranet.services.change_feed import ChangeFeed, Subscription
from intranet.services.directory_service import DirectoryService
from intranet.utils.patch import DirectoryPatch

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Optional[DirectoryEntryResponse]], None]
ErrorCallback = Callable[[Exception], None]


class DirectoryStore:
    """
    Session-owning facade over ``DirectoryService``.

    Each call runs in its own short transaction, which makes it usable from
    long-lived consumers (websocket sessions, the observer) that have no
    request-scoped session. Transport errors surface as ``StoreUnavailable``.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], feed: ChangeFeed):
        self.session_maker = session_maker
        self.feed = feed

    async def get(self, subject_id: str) -> Optional[DirectoryEntryResponse]:
        try:
            async with self.session_maker() as db:
                entry = await DirectoryService(db).get(subject_id)
                return DirectoryEntryResponse.from_entry(entry) if entry else None
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable() from e

    async def set(
        self, subject_id: str, patch: DirectoryPatch, merge: bool = True
    ) -> DirectoryEntryResponse:
        try:
            async with self.session_maker() as db:
                entry = await DirectoryService(db, self.feed).apply_patch(
                    subject_id, patch, merge=merge
                )
                await db.commit()
                return DirectoryEntryResponse.from_entry(entry)
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable() from e

    async def ensure_entry(
        self, identity: Identity, min_interval: Optional[timedelta] = None
    ) -> tuple[DirectoryEntryResponse, bool]:
        try:
            async with self.session_maker() as db:
                entry, created = await DirectoryService(db, self.feed).ensure_entry(
                    identity, min_interval=min_interval
                )
                await db.commit()
                return DirectoryEntryResponse.from_entry(entry), created
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable() from e

    def subscribe(
        self,
        subject_id: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        """
        Deliver the current entry once, then every committed change.

        Must be called from a running event loop; the initial read runs as a
        task. A push that lands before the initial read finishes wins, and
        the (older) read result is dropped.
        """
        pushed = False

        def deliver(entry: Optional[DirectoryEntryResponse]) -> None:
            nonlocal pushed
            pushed = True
            on_change(entry)

        feed_subscription = self.feed.subscribe(subject_id, deliver)

        async def initial_read() -> None:
            try:
                entry = await self.get(subject_id)
            except StoreUnavailable as e:
                if feed_subscription.active:
                    on_error(e)
                return
            if feed_subscription.active and not pushed:
                on_change(entry)

        task = asyncio.get_running_loop().create_task(initial_read())

        def teardown() -> None:
            feed_subscription.unsubscribe()
            if not task.done():
                task.cancel()

        return Subscription(teardown)
