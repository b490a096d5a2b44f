"""Service layer for business logic."""

from intranet.services.change_feed import ChangeFeed, Subscription
from intranet.services.directory_service import DirectoryService
from intranet.services.directory_store import DirectoryStore
from intranet.services.invitation_service import InvitationService
from intranet.services.redemption_service import InvitationRedeemer, RedemptionResult

__all__ = [
    "ChangeFeed",
    "Subscription",
    "DirectoryService",
    "DirectoryStore",
    "InvitationService",
    "InvitationRedeemer",
    "RedemptionResult",
]
