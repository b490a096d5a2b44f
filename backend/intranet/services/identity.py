import logging
from collections.abc import Callable
from typing import Optional

from intranet.exceptions import Unauthenticated
from intranet.schemas.auth import Identity
from intranet.services.change_feed import Subscription
from intranet.utils.auth import decode_token

logger = logging.getLogger(__name__)

IdentityCallback = Callable[[Optional[Identity]], None]


class TokenIdentityProvider:
    """
    Per-session view of the external identity, driven by platform tokens.

    Tokens are issued by ``POST /auth/sync`` after federated sign-in; this
    adapter only validates them and announces identity changes. ``restore``
    produces the first event of a session (possibly ``None``).
    """

    def __init__(self) -> None:
        self._identity: Optional[Identity] = None
        self._resolved = False
        self._listeners: list[IdentityCallback] = []

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def resolved(self) -> bool:
        return self._resolved

    def on_state_change(self, callback: IdentityCallback) -> Subscription:
        self._listeners.append(callback)

        def teardown() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return Subscription(teardown)

    def _emit(self, identity: Optional[Identity]) -> None:
        self._identity = identity
        self._resolved = True
        for callback in list(self._listeners):
            try:
                callback(identity)
            except Exception:
                logger.exception("Identity listener failed")

    def restore(self, token: Optional[str]) -> Optional[Identity]:
        """Resolve the persisted session. An expired or bad token counts as signed out."""
        identity = None
        if token:
            try:
                identity = Identity.from_token(decode_token(token))
            except Unauthenticated as e:
                logger.info("Discarding persisted session: %s", e.message)
        self._emit(identity)
        return identity

    def sign_in(self, token: str) -> Identity:
        if not token:
            raise Unauthenticated("An access token is required to sign in.")
        identity = Identity.from_token(decode_token(token))
        self._emit(identity)
        return identity

    def sign_out(self) -> None:
        self._emit(None)
