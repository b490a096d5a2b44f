import asyncio
import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from intranet.config import get_settings
from intranet.exceptions import StoreUnavailable

settings = get_settings()
logger = logging.getLogger(__name__)

StoreProbe = Callable[[], Awaitable[None]]


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_pre_ping=True,
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        yield session


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Factory for long-lived consumers (websocket sessions, redemption steps)."""
    return async_session_maker


def store_probe(bind: AsyncEngine) -> StoreProbe:
    async def probe() -> None:
        async with bind.connect() as conn:
            await conn.execute(text("SELECT 1"))

    return probe


async def wait_for_store(
    probe: StoreProbe,
    timeout: float,
    interval: float,
) -> None:
    """
    Poll the store until it answers or ``timeout`` seconds pass.

    Raises StoreUnavailable once the window is exhausted so startup surfaces
    a distinct initialization error instead of hanging.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    attempt = 0
    last_error: Exception | None = None

    while True:
        attempt += 1
        try:
            await asyncio.wait_for(probe(), timeout=max(interval, 0.1))
            if attempt > 1:
                logger.info("Store became available after %d attempts", attempt)
            return
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
            last_error = e
            logger.debug("Store not ready (attempt %d): %s", attempt, e)

        if loop.time() + interval > deadline:
            break
        await asyncio.sleep(interval)

    logger.error(
        "Store initialization did not complete within %.1fs (%d attempts): %s",
        timeout,
        attempt,
        last_error,
    )
    raise StoreUnavailable(f"Store initialization timed out after {timeout:.0f}s")
