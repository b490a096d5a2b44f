import logging
from dataclasses import dataclass
from typing import Optional

from intranet.schemas.auth import Identity
from intranet.schemas.session import RouteDecisionResponse
from intranet.services.connectivity import ConnectivityMonitor
from intranet.services.identity import TokenIdentityProvider
from intranet.services.redemption_service import InvitationRedeemer, RedemptionResult
from intranet.services.routing_policy import (
    RenderOutcome,
    normalize_path,
    redirect_target,
    routing_outcome,
)
from intranet.services.session_observer import DirectoryReader, SessionObserver, SessionSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteDecision:
    path: str
    outcome: RenderOutcome
    redirect_to: Optional[str]
    snapshot: SessionSnapshot

    def to_response(self) -> RouteDecisionResponse:
        return RouteDecisionResponse(
            path=self.path,
            outcome=self.outcome.value,
            redirect_to=self.redirect_to,
            snapshot=self.snapshot.to_response(),
        )


class SessionContext:
    """
    One signed-in (or signing-in) client session.

    Owns its identity provider and observer; everything a screen needs goes
    through here instead of ambient globals. Close it when the client leaves.
    """

    def __init__(
        self,
        directory: DirectoryReader,
        redeemer: InvitationRedeemer,
        connectivity: Optional[ConnectivityMonitor] = None,
    ):
        self.identity_provider = TokenIdentityProvider()
        self.observer = SessionObserver(self.identity_provider, directory, connectivity)
        self.redeemer = redeemer
        self.path = "/"

    @property
    def snapshot(self) -> SessionSnapshot:
        return self.observer.snapshot

    @property
    def identity(self) -> Optional[Identity]:
        return self.observer.snapshot.identity

    async def open(self, token: Optional[str] = None) -> SessionSnapshot:
        self.observer.start()
        self.identity_provider.restore(token)
        return await self.observer.wait_settled()

    async def close(self) -> None:
        await self.observer.close()

    async def __aenter__(self) -> "SessionContext":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def sign_in(self, token: str) -> SessionSnapshot:
        self.identity_provider.sign_in(token)
        return await self.observer.wait_settled()

    async def sign_out(self) -> SessionSnapshot:
        self.identity_provider.sign_out()
        return await self.observer.wait_settled()

    async def reload(self) -> SessionSnapshot:
        return await self.observer.reload()

    def route(self, path: Optional[str] = None) -> RouteDecision:
        if path is not None:
            self.path = normalize_path(path)
        snapshot = self.snapshot
        return RouteDecision(
            path=self.path,
            outcome=routing_outcome(snapshot, self.path),
            redirect_to=redirect_target(snapshot, self.path),
            snapshot=snapshot,
        )

    async def redeem_invitation(self, dni: str, code: str) -> RedemptionResult:
        result = await self.redeemer.redeem(self.identity, dni, code)
        if result.ok:
            # Returned snapshot must already carry the new role
            await self.reload()
        return result
