"""
Which screen a session gets for a path.

``routing_outcome`` is a pure function of the snapshot and the path; the
rules are checked in order and the first match wins. Authorization is
existential: holding any authorized role is enough.
"""

import enum
from typing import Optional
from urllib.parse import urlsplit

from intranet.services.session_observer import LoadingPhase, SessionSnapshot
from intranet.utils.roles import UNAUTHORIZED_ROLES, is_authorized

HOME_PATH = "/"
ONBOARDING_PATH = "/candidate"
# Paths that render on their own, without the authenticated shell
STANDALONE_PATHS = frozenset({HOME_PATH, ONBOARDING_PATH})
ONBOARDING_PATHS = frozenset({ONBOARDING_PATH})


class RenderOutcome(str, enum.Enum):
    LOADING = "loading"
    SIGN_IN = "sign_in"
    UNAUTHORIZED = "unauthorized"
    CENTRAL_DASHBOARD = "central_dashboard"
    PASS_THROUGH = "pass_through"


def normalize_path(path: Optional[str]) -> str:
    """Drop query string and fragment, collapse a trailing slash."""
    if not path:
        return HOME_PATH
    path = urlsplit(path).path or HOME_PATH
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1:
        path = path.rstrip("/") or HOME_PATH
    return path


def routing_outcome(snapshot: SessionSnapshot, path: Optional[str]) -> RenderOutcome:
    path = normalize_path(path)

    if snapshot.loading_phase in (LoadingPhase.BOOTING, LoadingPhase.RESOLVING):
        return RenderOutcome.LOADING

    if snapshot.identity is None:
        if path in STANDALONE_PATHS:
            return RenderOutcome.SIGN_IN
        # Rendered as loading while the client is sent home
        return RenderOutcome.LOADING

    roles = snapshot.roles
    if not is_authorized(roles):
        if not roles and path in STANDALONE_PATHS:
            # Fresh account: the onboarding form lives on these pages
            return RenderOutcome.PASS_THROUGH
        if roles and roles <= UNAUTHORIZED_ROLES and path in ONBOARDING_PATHS:
            return RenderOutcome.PASS_THROUGH
        return RenderOutcome.UNAUTHORIZED

    if path == HOME_PATH:
        return RenderOutcome.CENTRAL_DASHBOARD
    return RenderOutcome.PASS_THROUGH


def redirect_target(snapshot: SessionSnapshot, path: Optional[str]) -> Optional[str]:
    """Where the client should navigate instead, if anywhere."""
    path = normalize_path(path)
    if (
        snapshot.loading_phase == LoadingPhase.READY
        and snapshot.identity is None
        and path not in STANDALONE_PATHS
    ):
        return HOME_PATH
    return None
