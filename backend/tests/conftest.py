import os
import tempfile

# Set test environment
os.environ["DEBUG"] = "true"
os.environ["SECRET_KEY"] = "change-me-in-production"
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'intranet_test.db')}",
)

import asyncio
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from intranet.api.dependencies import StoreStatus
from intranet.database import Base, get_db, get_session_maker
from intranet.exceptions import InvitationNotFoundOrConsumed, StoreUnavailable, Unauthenticated
from intranet.main import app
from intranet.models import DirectoryEntry, Invitation
from intranet.schemas.auth import Identity
from intranet.schemas.user import DirectoryEntryResponse
from intranet.services.change_feed import ChangeFeed, Subscription
from intranet.services.redemption_service import RedemptionResult
from intranet.utils.auth import create_access_token
from intranet.utils.roles import sorted_roles


@pytest_asyncio.fixture(scope="function")
async def async_engine(tmp_path):
    """Create a fresh SQLite database file for each test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'intranet.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def change_feed() -> ChangeFeed:
    return ChangeFeed()


@pytest_asyncio.fixture(scope="function")
async def client(session_maker, change_feed) -> AsyncGenerator[AsyncClient, None]:
    """Async test client bound to the per-test database and change feed."""

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_maker] = lambda: session_maker
    app.state.change_feed = change_feed
    app.state.store_status = StoreStatus.READY

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def make_identity(subject_id: Optional[str] = None, **claims: Any) -> Identity:
    subject_id = subject_id or f"subject-{uuid4()}"
    return Identity(
        subject_id=subject_id,
        email=claims.get("email", f"{subject_id}@municipio.example"),
        display_name=claims.get("display_name", "Test User"),
        avatar_url=claims.get("avatar_url"),
    )


def auth_headers_for(identity: Identity) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(identity)}"}


@pytest.fixture
def identity() -> Identity:
    return make_identity()


@pytest.fixture
def auth_headers(identity: Identity) -> dict[str, str]:
    """Create authorization headers for authenticated requests."""
    return auth_headers_for(identity)


@pytest.fixture
def create_entry(db_session: AsyncSession) -> Callable:
    """Factory inserting a directory entry with the given roles."""

    async def _create(
        identity: Optional[Identity] = None, roles: Optional[list[str]] = None, **fields: Any
    ) -> DirectoryEntry:
        identity = identity or make_identity()
        entry = DirectoryEntry(
            subject_id=identity.subject_id,
            email=identity.email,
            display_name=identity.display_name,
            roles=roles or [],
            login_history=[],
            **fields,
        )
        db_session.add(entry)
        await db_session.commit()
        return entry

    return _create


@pytest.fixture
def create_invitation(db_session: AsyncSession) -> Callable:
    async def _create(
        dni: str = "12345678A", code: str = "ABCD2345", role: str = "collaborator", **fields: Any
    ) -> Invitation:
        invitation = Invitation(
            dni=dni,
            code=code,
            role=role,
            created_by=fields.pop("created_by", "hr-operator"),
            **fields,
        )
        db_session.add(invitation)
        await db_session.commit()
        return invitation

    return _create


@pytest_asyncio.fixture
async def admin_headers(create_entry) -> dict[str, str]:
    admin = make_identity("admin-user")
    await create_entry(admin, roles=["admin"])
    return auth_headers_for(admin)


@pytest_asyncio.fixture
async def hr_headers(create_entry) -> dict[str, str]:
    hr = make_identity("hr-user")
    await create_entry(hr, roles=["hr"])
    return auth_headers_for(hr)


class FakeDirectory:
    """
    In-memory directory with the store's subscribe semantics.

    ``fail_reads`` makes reads report StoreUnavailable; ``push`` simulates a
    committed change from another writer. ``ensure_gate`` holds bootstrap
    until the event is set.
    """

    def __init__(self) -> None:
        self.entries: dict[str, DirectoryEntryResponse] = {}
        self.listeners: dict[str, list[tuple[Subscription, Callable]]] = {}
        self.fail_reads = False
        self.ensure_calls: list[str] = []
        self.ensure_gate: Optional[asyncio.Event] = None

    def put(self, subject_id: str, roles: list[str]) -> DirectoryEntryResponse:
        entry = DirectoryEntryResponse(
            subject_id=subject_id,
            roles=sorted_roles(roles),
            updated_at=datetime.now(timezone.utc),
        )
        self.entries[subject_id] = entry
        return entry

    def push(self, subject_id: str, roles: list[str]) -> None:
        entry = self.put(subject_id, roles)
        for subscription, on_change in list(self.listeners.get(subject_id, [])):
            if subscription.active:
                on_change(entry)

    async def get(self, subject_id: str) -> Optional[DirectoryEntryResponse]:
        if self.fail_reads:
            raise StoreUnavailable()
        return self.entries.get(subject_id)

    async def ensure_entry(
        self, identity: Identity, min_interval: Optional[timedelta] = None
    ) -> tuple[DirectoryEntryResponse, bool]:
        self.ensure_calls.append(identity.subject_id)
        if self.ensure_gate is not None:
            await self.ensure_gate.wait()
        if self.fail_reads:
            raise StoreUnavailable()
        created = identity.subject_id not in self.entries
        if created:
            self.put(identity.subject_id, [])
        return self.entries[identity.subject_id], created

    def subscribe(self, subject_id: str, on_change: Callable, on_error: Callable) -> Subscription:
        subscription = Subscription()
        pair = (subscription, on_change)
        self.listeners.setdefault(subject_id, []).append(pair)

        async def initial_read() -> None:
            try:
                entry = await self.get(subject_id)
            except StoreUnavailable as e:
                if subscription.active:
                    on_error(e)
                return
            if subscription.active:
                on_change(entry)

        task = asyncio.get_running_loop().create_task(initial_read())

        def teardown() -> None:
            self.listeners[subject_id].remove(pair)
            task.cancel()

        subscription._teardown = teardown
        return subscription

    def subscriber_count(self, subject_id: str) -> int:
        return len(self.listeners.get(subject_id, []))


class FakeRedeemer:
    """Redeemer that grants through the fake directory; one invitation per code."""

    def __init__(self, directory: FakeDirectory, invitations: dict[tuple[str, str], str]):
        self.directory = directory
        self.invitations = dict(invitations)

    async def redeem(self, identity, dni, code):
        if identity is None:
            return RedemptionResult.failure(Unauthenticated())
        role = self.invitations.pop((dni.strip(), code.strip()), None)
        if role is None:
            return RedemptionResult.failure(InvitationNotFoundOrConsumed())
        current = self.directory.entries.get(identity.subject_id)
        roles = set(current.roles if current else []) | {role}
        self.directory.push(identity.subject_id, list(roles))
        return RedemptionResult(ok=True, role=role, invitation_id=UUID(int=1), roles=tuple(roles))


@pytest.fixture
def fake_directory() -> FakeDirectory:
    return FakeDirectory()
