"""FastAPI dependency providers for the long-lived, app-scoped services."""

import enum
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.requests import HTTPConnection

from intranet.database import get_session_maker
from intranet.exceptions import StoreUnavailable
from intranet.services.change_feed import ChangeFeed
from intranet.services.connectivity import ConnectivityMonitor
from intranet.services.directory_store import DirectoryStore
from intranet.services.redemption_service import InvitationRedeemer


class StoreStatus(str, enum.Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"


def get_change_feed(conn: HTTPConnection) -> ChangeFeed:
    return conn.app.state.change_feed


def get_connectivity(conn: HTTPConnection) -> ConnectivityMonitor:
    return conn.app.state.connectivity


def require_store_ready(conn: HTTPConnection) -> None:
    """Store-backed endpoints answer 503 after a failed start-up until re-initialised."""
    if conn.app.state.store_status == StoreStatus.ERROR:
        raise StoreUnavailable(
            "The directory store failed to initialize. Retry via /health/reinitialize."
        )


def get_directory_store(
    session_maker: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_maker)],
    feed: Annotated[ChangeFeed, Depends(get_change_feed)],
) -> DirectoryStore:
    return DirectoryStore(session_maker, feed)


def get_redeemer(
    session_maker: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_maker)],
    feed: Annotated[ChangeFeed, Depends(get_change_feed)],
) -> InvitationRedeemer:
    return InvitationRedeemer(session_maker, feed)


ChangeFeedDep = Annotated[ChangeFeed, Depends(get_change_feed)]
ConnectivityDep = Annotated[ConnectivityMonitor, Depends(get_connectivity)]
DirectoryStoreDep = Annotated[DirectoryStore, Depends(get_directory_store)]
RedeemerDep = Annotated[InvitationRedeemer, Depends(get_redeemer)]
