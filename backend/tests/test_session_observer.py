import asyncio

import pytest

from intranet.services.connectivity import Connectivity, ConnectivityMonitor
from intranet.services.directory_service import DirectoryService
from intranet.services.directory_store import DirectoryStore
from intranet.services.identity import TokenIdentityProvider
from intranet.services.session_observer import LoadingPhase, SessionObserver
from intranet.utils.auth import create_access_token

from conftest import make_identity

ALICE = make_identity("alice")
BOB = make_identity("bob")


async def never_called() -> None:
    raise AssertionError("store check should not run")


@pytest.fixture
def provider() -> TokenIdentityProvider:
    return TokenIdentityProvider()


@pytest.fixture
def monitor() -> ConnectivityMonitor:
    return ConnectivityMonitor(never_called, interval=60)


async def settle(observer: SessionObserver):
    await asyncio.sleep(0)
    return await observer.wait_settled(timeout=2)


class TestPhases:
    @pytest.mark.asyncio
    async def test_booting_until_first_identity_event(self, provider, fake_directory):
        async with SessionObserver(provider, fake_directory) as observer:
            assert observer.snapshot.loading_phase == LoadingPhase.BOOTING
            provider.restore(None)
            snapshot = await settle(observer)

        assert snapshot.loading_phase == LoadingPhase.READY
        assert snapshot.identity is None
        assert snapshot.roles == frozenset()

    @pytest.mark.asyncio
    async def test_sign_in_resolves_roles(self, provider, fake_directory):
        fake_directory.put("alice", ["hr", "collaborator"])
        phases = []

        async with SessionObserver(provider, fake_directory) as observer:
            observer.on_snapshot(lambda s: phases.append(s.loading_phase))
            provider.sign_in(create_access_token(ALICE))
            snapshot = await settle(observer)

        assert LoadingPhase.RESOLVING in phases
        assert snapshot.loading_phase == LoadingPhase.READY
        assert snapshot.roles == {"hr", "collaborator"}
        assert snapshot.primary_role == "hr"

    @pytest.mark.asyncio
    async def test_restore_with_invalid_token_is_signed_out(self, provider, fake_directory):
        async with SessionObserver(provider, fake_directory) as observer:
            provider.restore("not-a-token")
            snapshot = await settle(observer)

        assert snapshot.identity is None
        assert snapshot.loading_phase == LoadingPhase.READY

    @pytest.mark.asyncio
    async def test_sign_out_clears_roles(self, provider, fake_directory):
        fake_directory.put("alice", ["admin"])
        async with SessionObserver(provider, fake_directory) as observer:
            provider.sign_in(create_access_token(ALICE))
            await settle(observer)
            provider.sign_out()
            snapshot = await settle(observer)

        assert snapshot.identity is None
        assert snapshot.roles == frozenset()
        assert fake_directory.subscriber_count("alice") == 0


class TestBootstrap:
    @pytest.mark.asyncio
    async def test_first_sign_in_creates_entry_with_no_roles(self, provider, fake_directory):
        async with SessionObserver(provider, fake_directory) as observer:
            provider.sign_in(create_access_token(ALICE))
            snapshot = await settle(observer)

        assert fake_directory.ensure_calls == ["alice"]
        assert "alice" in fake_directory.entries
        assert snapshot.roles == frozenset()
        assert snapshot.loading_phase == LoadingPhase.READY

    @pytest.mark.asyncio
    async def test_absent_entry_means_no_roles(self, provider, fake_directory):
        async with SessionObserver(provider, fake_directory, bootstrap=False) as observer:
            provider.sign_in(create_access_token(ALICE))
            snapshot = await settle(observer)

        assert snapshot.roles == frozenset()
        assert fake_directory.entries == {}


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_pushes_update_roles(self, provider, fake_directory):
        async with SessionObserver(provider, fake_directory) as observer:
            provider.sign_in(create_access_token(ALICE))
            await settle(observer)

            fake_directory.push("alice", ["data"])
            assert observer.snapshot.roles == {"data"}

    @pytest.mark.asyncio
    async def test_subject_change_tears_down_previous_subscription(self, provider, fake_directory):
        fake_directory.put("alice", ["admin"])
        fake_directory.put("bob", ["collaborator"])

        async with SessionObserver(provider, fake_directory) as observer:
            provider.sign_in(create_access_token(ALICE))
            await settle(observer)
            provider.sign_in(create_access_token(BOB))
            snapshot = await settle(observer)

            assert fake_directory.subscriber_count("alice") == 0
            assert fake_directory.subscriber_count("bob") == 1
            assert snapshot.identity.subject_id == "bob"
            assert snapshot.roles == {"collaborator"}

            # Late delivery for the previous subject must not leak into Bob's snapshot
            fake_directory.push("alice", ["root"])
            assert observer.snapshot.roles == {"collaborator"}

    @pytest.mark.asyncio
    async def test_close_releases_everything(self, provider, fake_directory):
        observer = SessionObserver(provider, fake_directory)
        observer.start()
        provider.sign_in(create_access_token(ALICE))
        await settle(observer)

        await observer.close()

        assert fake_directory.subscriber_count("alice") == 0
        provider.sign_out()
        assert observer.snapshot.identity is not None

    @pytest.mark.asyncio
    async def test_reload_rereads_the_entry(self, provider, fake_directory):
        async with SessionObserver(provider, fake_directory) as observer:
            provider.sign_in(create_access_token(ALICE))
            await settle(observer)

            # Written without a push
            fake_directory.put("alice", ["collaborator"])
            snapshot = await observer.reload()

        assert snapshot.roles == {"collaborator"}


class TestFailuresAndOffline:
    @pytest.mark.asyncio
    async def test_directory_error_while_online_denies(self, provider, fake_directory):
        fake_directory.put("alice", ["admin"])
        async with SessionObserver(provider, fake_directory) as observer:
            provider.sign_in(create_access_token(ALICE))
            await settle(observer)
            assert observer.snapshot.roles == {"admin"}

            fake_directory.fail_reads = True
            snapshot = await observer.reload()

        assert snapshot.roles == frozenset()
        assert snapshot.loading_phase == LoadingPhase.READY

    @pytest.mark.asyncio
    async def test_offline_keeps_last_known_roles(self, provider, fake_directory, monitor):
        fake_directory.put("alice", ["hr"])
        async with SessionObserver(provider, fake_directory, monitor) as observer:
            provider.sign_in(create_access_token(ALICE))
            await settle(observer)

            monitor.set_status(Connectivity.OFFLINE)
            fake_directory.fail_reads = True
            snapshot = await observer.reload()
            assert snapshot.offline
            assert snapshot.roles == {"hr"}

            # Pushes are ignored while offline
            fake_directory.fail_reads = False
            fake_directory.push("alice", ["collaborator"])
            assert observer.snapshot.roles == {"hr"}

    @pytest.mark.asyncio
    async def test_back_online_forces_reread(self, provider, fake_directory, monitor):
        fake_directory.put("alice", ["hr"])
        async with SessionObserver(provider, fake_directory, monitor) as observer:
            provider.sign_in(create_access_token(ALICE))
            await settle(observer)

            monitor.set_status(Connectivity.OFFLINE)
            fake_directory.put("alice", ["hr", "data"])
            monitor.set_status(Connectivity.ONLINE)
            snapshot = await settle(observer)

        assert snapshot.connectivity == Connectivity.ONLINE
        assert snapshot.roles == {"hr", "data"}

    @pytest.mark.asyncio
    async def test_bootstrap_failure_still_resolves(self, provider, fake_directory):
        fake_directory.fail_reads = True
        async with SessionObserver(provider, fake_directory) as observer:
            provider.sign_in(create_access_token(ALICE))
            snapshot = await settle(observer)

        assert snapshot.loading_phase == LoadingPhase.READY
        assert snapshot.roles == frozenset()

    @pytest.mark.asyncio
    async def test_reconnect_during_first_login_keeps_the_bootstrap(
        self, provider, fake_directory, monitor
    ):
        fake_directory.ensure_gate = asyncio.Event()
        async with SessionObserver(provider, fake_directory, monitor) as observer:
            monitor.set_status(Connectivity.OFFLINE)
            provider.sign_in(create_access_token(BOB))
            await asyncio.sleep(0)
            assert observer.snapshot.loading_phase == LoadingPhase.RESOLVING

            monitor.set_status(Connectivity.ONLINE)
            fake_directory.ensure_gate.set()
            snapshot = await settle(observer)

        assert fake_directory.ensure_calls == ["bob"]
        assert "bob" in fake_directory.entries
        assert snapshot.loading_phase == LoadingPhase.READY
        assert snapshot.roles == frozenset()


class TestLoginRecording:
    @pytest.mark.asyncio
    async def test_reconnecting_session_does_not_record_another_login(
        self, session_maker, change_feed
    ):
        store = DirectoryStore(session_maker, change_feed)
        token = create_access_token(ALICE)

        for _ in range(2):
            provider = TokenIdentityProvider()
            async with SessionObserver(provider, store) as observer:
                provider.restore(token)
                await settle(observer)

        async with session_maker() as db:
            entry = await DirectoryService(db).get("alice")
        assert len(entry.login_history) == 1

    @pytest.mark.asyncio
    async def test_logins_further_apart_are_recorded(self, session_maker, change_feed):
        store = DirectoryStore(session_maker, change_feed)
        token = create_access_token(ALICE)

        for _ in range(2):
            provider = TokenIdentityProvider()
            async with SessionObserver(provider, store, login_interval=None) as observer:
                provider.restore(token)
                await settle(observer)

        async with session_maker() as db:
            entry = await DirectoryService(db).get("alice")
        assert len(entry.login_history) == 2
