# src/plato/services/exceptions.py

"""
Errors raised by the invitation services.

Every error carries a `user_message` that is safe to show as-is; backend
response bodies never end up in it unless the backend sent a deliberate
JSON `message` for a client error.
"""


class PlatoInvitationError(Exception):
    """Base class for invitation flow errors."""

    user_message = "Something went wrong with this invitation."
    retryable = False

    def __init__(self, user_message: str | None = None):
        if user_message:
            self.user_message = user_message
        super().__init__(self.user_message)


class MissingTokenError(PlatoInvitationError):
    """No invitation token was supplied with the request."""

    user_message = "The invitation link appears to be invalid or incomplete."


class InvalidInvitationError(PlatoInvitationError):
    """Token is unknown, expired, revoked or already used."""

    user_message = "This invitation has expired, been used already, or is invalid."


class SessionProbeTransportError(PlatoInvitationError):
    """The auth backend could not be reached to check the session."""

    user_message = "We couldn't check whether you're signed in. Please try again."
    retryable = True


class AcceptFailureError(PlatoInvitationError):
    """The accept action failed; the user may retry explicitly."""

    user_message = "Failed to accept invitation."
    retryable = True


class AlreadyAcceptedError(PlatoInvitationError):
    """The token was already consumed or the user is already a member."""

    user_message = "You are already a member of this organization."


class SessionExpiredError(PlatoInvitationError):
    """The backend rejected the caller's credentials mid-flow."""

    user_message = "Your session has ended. Please sign in again."
