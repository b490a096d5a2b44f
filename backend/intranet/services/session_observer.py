"""
Session & role observer.

Folds three event sources into one ``SessionSnapshot``:

* identity changes from the identity provider
* directory pushes for the signed-in subject
* store connectivity transitions

Phases run ``booting -> ready`` (signed out) or ``booting -> resolving ->
ready`` (signed in); every subject change goes back through ``resolving``.
Offline is a tag on the snapshot, not a phase: while offline the roles stay
at their last known value and directory deliveries are ignored until the
store is reachable again, which forces a re-read.
"""

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import timedelta
from functools import partial
from typing import Optional, Protocol

from intranet.exceptions import StoreUnavailable
from intranet.schemas.auth import Identity
from intranet.schemas.session import SessionSnapshotResponse
from intranet.schemas.user import DirectoryEntryResponse
from intranet.services.change_feed import Subscription
from intranet.services.connectivity import Connectivity, ConnectivityMonitor
from intranet.services.identity import TokenIdentityProvider
from intranet.utils.roles import normalize_roles, primary_role, sorted_roles

logger = logging.getLogger(__name__)

# Identity events closer together than this count as one login
LOGIN_UPDATE_INTERVAL = timedelta(seconds=30)


class LoadingPhase(str, enum.Enum):
    BOOTING = "booting"
    RESOLVING = "resolving"
    READY = "ready"


@dataclass(frozen=True)
class SessionSnapshot:
    identity: Optional[Identity] = None
    roles: frozenset[str] = field(default_factory=frozenset)
    connectivity: Connectivity = Connectivity.ONLINE
    loading_phase: LoadingPhase = LoadingPhase.BOOTING

    @property
    def primary_role(self) -> Optional[str]:
        return primary_role(self.roles)

    @property
    def offline(self) -> bool:
        return self.connectivity == Connectivity.OFFLINE

    def to_response(self) -> SessionSnapshotResponse:
        return SessionSnapshotResponse(
            identity=self.identity,
            roles=sorted_roles(self.roles),
            primary_role=self.primary_role,
            connectivity=self.connectivity.value,
            loading_phase=self.loading_phase.value,
        )


class DirectoryReader(Protocol):
    async def ensure_entry(
        self, identity: Identity, min_interval: Optional[timedelta] = None
    ) -> tuple[DirectoryEntryResponse, bool]: ...

    def subscribe(
        self,
        subject_id: str,
        on_change: Callable[[Optional[DirectoryEntryResponse]], None],
        on_error: Callable[[Exception], None],
    ) -> Subscription: ...


SnapshotCallback = Callable[[SessionSnapshot], None]


class SessionObserver:
    def __init__(
        self,
        identity_provider: TokenIdentityProvider,
        directory: DirectoryReader,
        connectivity: Optional[ConnectivityMonitor] = None,
        bootstrap: bool = True,
        login_interval: Optional[timedelta] = LOGIN_UPDATE_INTERVAL,
    ):
        self.identity_provider = identity_provider
        self.directory = directory
        self.connectivity = connectivity
        self.bootstrap = bootstrap
        self.login_interval = login_interval

        self._snapshot = SessionSnapshot()
        self._listeners: list[SnapshotCallback] = []
        self._subscriptions: list[Subscription] = []
        self._directory_subscription: Optional[Subscription] = None
        self._activation: Optional[asyncio.Task] = None
        # Survives re-reads of the same subject so a login is never dropped
        self._bootstraps: dict[str, asyncio.Task] = {}
        self._delivered: Optional[asyncio.Event] = None
        # Bumped on every re-subscription; deliveries tagged with an older
        # generation come from a torn down subscription.
        self._generation = 0
        self._started = False

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    def on_snapshot(self, callback: SnapshotCallback) -> Subscription:
        self._listeners.append(callback)

        def teardown() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return Subscription(teardown)

    def _update(self, **changes) -> None:
        snapshot = replace(self._snapshot, **changes)
        if snapshot == self._snapshot:
            return
        self._snapshot = snapshot
        for callback in list(self._listeners):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Snapshot listener failed")

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        if self.connectivity is not None:
            self._update(connectivity=self.connectivity.status)
            self._subscriptions.append(self.connectivity.subscribe(self._on_connectivity))
        self._subscriptions.append(self.identity_provider.on_state_change(self._on_identity))
        if self.identity_provider.resolved:
            self._on_identity(self.identity_provider.identity)

    async def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        await self._deactivate()
        await self._cancel_bootstraps()
        self._listeners.clear()

    async def __aenter__(self) -> "SessionObserver":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def wait_settled(self, timeout: float = 10.0) -> SessionSnapshot:
        """Wait until the pending subject resolution, if any, is finished."""

        async def settle() -> None:
            while self._activation is not None and not self._activation.done():
                await asyncio.wait({self._activation})

        await asyncio.wait_for(settle(), timeout)
        return self._snapshot

    async def reload(self) -> SessionSnapshot:
        """Re-read the active subject's entry without going through resolving."""
        identity = self._snapshot.identity
        if identity is None:
            return self._snapshot
        self._activate(identity, bootstrap=False)
        return await self.wait_settled()

    def _on_identity(self, identity: Optional[Identity]) -> None:
        current = self._snapshot.identity
        if identity is None:
            self._teardown_directory()
            self._update(identity=None, roles=frozenset(), loading_phase=LoadingPhase.READY)
            return

        if current is not None and current.subject_id == identity.subject_id and (
            self._directory_subscription is not None
        ):
            # Same subject, refreshed profile claims
            self._update(identity=identity)
            return

        self._update(identity=identity, roles=frozenset(), loading_phase=LoadingPhase.RESOLVING)
        self._activate(identity, bootstrap=self.bootstrap)

    def _on_connectivity(self, status: Connectivity) -> None:
        was_offline = self._snapshot.offline
        self._update(connectivity=status)
        identity = self._snapshot.identity
        if was_offline and status == Connectivity.ONLINE and identity is not None:
            logger.info("Back online, re-reading roles for %s", identity.subject_id)
            self._activate(identity, bootstrap=False)

    def _teardown_directory(self) -> None:
        self._generation += 1
        if self._directory_subscription is not None:
            self._directory_subscription.unsubscribe()
            self._directory_subscription = None
        if self._activation is not None and not self._activation.done():
            self._activation.cancel()
        self._activation = None

    async def _deactivate(self) -> None:
        task = self._activation
        self._teardown_directory()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _cancel_bootstraps(self) -> None:
        tasks = list(self._bootstraps.values())
        self._bootstraps.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _activate(self, identity: Identity, bootstrap: bool) -> None:
        self._teardown_directory()
        if bootstrap and identity.subject_id not in self._bootstraps:
            task = asyncio.get_running_loop().create_task(self._run_bootstrap(identity))
            self._bootstraps[identity.subject_id] = task
            task.add_done_callback(
                lambda _, subject_id=identity.subject_id: self._bootstraps.pop(subject_id, None)
            )
        generation = self._generation
        self._activation = asyncio.get_running_loop().create_task(
            self._resolve(identity, generation)
        )

    async def _run_bootstrap(self, identity: Identity) -> None:
        try:
            await self.directory.ensure_entry(identity, min_interval=self.login_interval)
        except StoreUnavailable as e:
            logger.warning(
                "Directory bootstrap for %s failed [%s]", identity.subject_id, e.error_id
            )

    async def _resolve(self, identity: Identity, generation: int) -> None:
        pending = self._bootstraps.get(identity.subject_id)
        if pending is not None:
            # Shielded: a re-read cancels this task, never the bootstrap itself
            await asyncio.shield(pending)
        if generation != self._generation:
            return

        delivered = asyncio.Event()
        self._delivered = delivered
        self._directory_subscription = self.directory.subscribe(
            identity.subject_id,
            on_change=partial(self._on_entry, generation, identity.subject_id),
            on_error=partial(self._on_directory_error, generation, identity.subject_id),
        )
        await delivered.wait()

    def _is_current(self, generation: int, subject_id: str) -> bool:
        identity = self._snapshot.identity
        return (
            generation == self._generation
            and identity is not None
            and identity.subject_id == subject_id
        )

    def _mark_delivered(self) -> None:
        if self._delivered is not None:
            self._delivered.set()

    def _on_entry(
        self, generation: int, subject_id: str, entry: Optional[DirectoryEntryResponse]
    ) -> None:
        if not self._is_current(generation, subject_id):
            logger.debug("Ignoring stale directory delivery for %s", subject_id)
            return
        self._mark_delivered()

        if self._snapshot.offline and self._snapshot.loading_phase == LoadingPhase.READY:
            # Frozen at last known roles until connectivity returns
            return

        roles = normalize_roles(entry.roles) if entry is not None else frozenset()
        self._update(roles=roles, loading_phase=LoadingPhase.READY)

    def _on_directory_error(self, generation: int, subject_id: str, error: Exception) -> None:
        if not self._is_current(generation, subject_id):
            return
        self._mark_delivered()

        if self._snapshot.offline:
            logger.info("Directory unreachable while offline, keeping roles for %s", subject_id)
            self._update(loading_phase=LoadingPhase.READY)
            return

        logger.error("Directory read for %s failed, denying access: %s", subject_id, error)
        self._update(roles=frozenset(), loading_phase=LoadingPhase.READY)
