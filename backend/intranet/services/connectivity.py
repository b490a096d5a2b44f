import asyncio
import enum
import logging
from collections.abc import Callable
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from intranet.database import StoreProbe
from intranet.services.change_feed import Subscription

logger = logging.getLogger(__name__)


class Connectivity(str, enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"


ConnectivityCallback = Callable[[Connectivity], None]


class ConnectivityMonitor:
    """
    Periodically probes the store and reports online/offline transitions.

    Listeners only hear about changes, never about repeated identical
    results. The status starts as online; the first failed probe flips it.
    """

    def __init__(self, probe: StoreProbe, interval: float = 5.0, probe_timeout: Optional[float] = None):
        self.probe = probe
        self.interval = interval
        self.probe_timeout = probe_timeout or max(interval, 1.0)
        self._status = Connectivity.ONLINE
        self._listeners: list[ConnectivityCallback] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def status(self) -> Connectivity:
        return self._status

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, callback: ConnectivityCallback) -> Subscription:
        self._listeners.append(callback)

        def teardown() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return Subscription(teardown)

    def set_status(self, status: Connectivity) -> None:
        if status == self._status:
            return
        self._status = status
        if status == Connectivity.OFFLINE:
            logger.warning("Store unreachable, switching to offline mode")
        else:
            logger.info("Store reachable again")
        for callback in list(self._listeners):
            try:
                callback(status)
            except Exception:
                logger.exception("Connectivity listener failed")

    async def check(self) -> Connectivity:
        try:
            await asyncio.wait_for(self.probe(), timeout=self.probe_timeout)
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
            logger.debug("Connectivity probe failed: %s", e)
            self.set_status(Connectivity.OFFLINE)
        else:
            self.set_status(Connectivity.ONLINE)
        return self._status

    async def _run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
