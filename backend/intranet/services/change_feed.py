"""
In-process push notifications for directory entries.

Writers record the entries they changed on their session (``track_change``).
The SQLAlchemy ``after_commit`` hook publishes them, so subscribers only see
durable state. A rollback drops the pending notifications.
"""

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

PENDING_CHANGES_KEY = "directory_changes"

EntryCallback = Callable[[Optional[Any]], None]


class Subscription:
    """
    Cancellable handle returned by every ``subscribe``/``on_*`` call.

    ``unsubscribe`` is idempotent. Owners must call it when the scope that
    created the subscription ends.
    """

    def __init__(self, teardown: Optional[Callable[[], None]] = None):
        self._teardown = teardown
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        teardown, self._teardown = self._teardown, None
        if teardown is not None:
            teardown()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unsubscribe()


class ChangeFeed:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[tuple[Subscription, EntryCallback]]] = defaultdict(list)

    def subscribe(self, subject_id: str, callback: EntryCallback) -> Subscription:
        subscription = Subscription()
        pair = (subscription, callback)
        self._subscribers[subject_id].append(pair)

        def teardown() -> None:
            listeners = self._subscribers.get(subject_id)
            if listeners and pair in listeners:
                listeners.remove(pair)
                if not listeners:
                    del self._subscribers[subject_id]

        subscription._teardown = teardown
        return subscription

    def subscriber_count(self, subject_id: Optional[str] = None) -> int:
        if subject_id is not None:
            return len(self._subscribers.get(subject_id, ()))
        return sum(len(v) for v in self._subscribers.values())

    def publish(self, subject_id: str, entry: Optional[Any]) -> None:
        # Copy: callbacks may unsubscribe while we iterate
        for subscription, callback in list(self._subscribers.get(subject_id, ())):
            if not subscription.active:
                continue
            try:
                callback(entry)
            except Exception:
                logger.exception("Directory subscriber for %s failed", subject_id)


def track_change(db: AsyncSession, feed: ChangeFeed, subject_id: str, entry: Any) -> None:
    """Queue ``entry`` for publication once ``db`` commits."""
    db.info.setdefault(PENDING_CHANGES_KEY, []).append((feed, subject_id, entry))


@event.listens_for(Session, "after_commit")
def _publish_after_commit(session: Session) -> None:
    pending = session.info.pop(PENDING_CHANGES_KEY, None)
    if not pending:
        return
    for feed, subject_id, entry in pending:
        feed.publish(subject_id, entry)


@event.listens_for(Session, "after_rollback")
def _discard_after_rollback(session: Session) -> None:
    session.info.pop(PENDING_CHANGES_KEY, None)
