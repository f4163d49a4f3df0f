"""Custom exceptions for TourCal sync."""

from typing import Any, Optional


class TourCalError(Exception):
    """Base exception for TourCal sync."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class TransientTransportError(TourCalError):
    """Transport retries exhausted. Fatal for the call, not for the session."""

    def __init__(
        self,
        message: str,
        attempts: int = 0,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.attempts = attempts


class NetworkUnavailableError(TransientTransportError):
    """The request never reached the store (DNS, connect, timeout)."""

    pass


class SessionExpired(TourCalError):
    """
    The store rejected our credential.

    The session has already been invalidated when this is raised; callers
    must re-authenticate rather than retry.
    """

    def __init__(self, message: str = "Session expired", context: Optional[dict[str, Any]] = None):
        super().__init__(message, context)


class IdentityConfirmationError(TourCalError):
    """The caller-identity endpoint did not confirm the pending credential."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.status_code = status_code


class RecordStoreError(TourCalError):
    """A per-record server error code returned inside a 2xx body."""

    def __init__(
        self,
        message: str,
        server_error_code: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.server_error_code = server_error_code


class ConflictError(RecordStoreError):
    """Concurrency token mismatch on write."""

    def __init__(
        self,
        message: str,
        server_change_tag: Optional[str] = None,
        server_error_code: Optional[str] = "CONFLICT",
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, server_error_code, context)
        self.server_change_tag = server_change_tag


class ProtocolError(TourCalError):
    """
    Terminal failure of the invitation claim protocol.

    Each subclass fixes the state name plus the title and remediation copy
    shown to the user.
    """

    state: str = "FAILED"
    title: str = "Something Went Wrong"
    remediation: str = "An unexpected error occurred. Please try again."

    def __init__(self, message: Optional[str] = None, context: Optional[dict[str, Any]] = None):
        super().__init__(message or self.remediation, context)


class InvitationNotFound(ProtocolError):
    """No TourInvite matches the token."""

    state = "NOT_FOUND"
    title = "Invite Not Found"
    remediation = "This invite link is invalid or has expired."


class ResourceNotFound(ProtocolError):
    """The crew member record never became visible in a shared zone."""

    state = "NOT_FOUND"
    title = "Could Not Join"
    remediation = (
        "The crew member record for this invite could not be found. "
        "Make sure the tour owner has shared the tour with you first, then try again."
    )


class AlreadyClaimedByOther(ProtocolError):
    """The crew member slot belongs to someone else."""

    state = "ALREADY_CLAIMED_BY_OTHER"
    title = "Invite Already Used"
    remediation = "This invite has already been claimed by another user. Contact the person who invited you."


class IdentityUnresolved(ProtocolError):
    """We could not learn who the caller is in time to claim safely."""

    state = "IDENTITY_UNRESOLVED"
    title = "Still Signing You In"
    remediation = "We couldn't confirm your account yet. Wait a moment and open the invite link again."
