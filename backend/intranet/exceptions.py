"""Domain errors of the access-control core.

Every error carries an ``ErrorKind`` so callers that prefer values over
exceptions (the redemption protocol returns a ``RedemptionResult``) and the
HTTP layer (exception handlers in ``intranet.main``) speak the same taxonomy.
``error_id`` correlates the message shown to a user with the log line an
operator searches for.
"""

import enum
from uuid import uuid4


class ErrorKind(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    INVALID_ARGUMENT = "invalid_argument"
    INVITATION_NOT_FOUND_OR_CONSUMED = "invitation_not_found_or_consumed"
    STORE_UNAVAILABLE = "store_unavailable"
    PARTIAL_REDEMPTION = "partial_redemption"


class AccessControlError(Exception):
    kind: ErrorKind
    default_message: str = "Access control error"

    def __init__(self, message: str | None = None, error_id: str | None = None):
        self.message = message or self.default_message
        self.error_id = error_id or str(uuid4())
        super().__init__(self.message)


class Unauthenticated(AccessControlError):
    kind = ErrorKind.UNAUTHENTICATED
    default_message = "You must sign in to continue."


class InvalidArgument(AccessControlError):
    kind = ErrorKind.INVALID_ARGUMENT
    default_message = "DNI and invitation code are required."


class InvitationNotFoundOrConsumed(AccessControlError):
    kind = ErrorKind.INVITATION_NOT_FOUND_OR_CONSUMED
    # Same wording for "wrong code" and "already used" on purpose.
    default_message = "Incorrect DNI or code, or the invitation has already been used."


class StoreUnavailable(AccessControlError):
    kind = ErrorKind.STORE_UNAVAILABLE
    default_message = "The directory store is unavailable. Please try again later."


class PartialRedemption(AccessControlError):
    """Invitation consumed but the role grant failed. Operator remediation only."""

    kind = ErrorKind.PARTIAL_REDEMPTION
    default_message = (
        "Your invitation could not be completed. Contact an administrator "
        "and quote the error id."
    )

    def __init__(
        self,
        subject_id: str,
        invitation_id: str,
        message: str | None = None,
        error_id: str | None = None,
    ):
        self.subject_id = subject_id
        self.invitation_id = invitation_id
        super().__init__(message, error_id)
