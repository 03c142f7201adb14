"""Calendar sync error taxonomy"""

from typing import Optional


class CalendarSyncError(RuntimeError):
    """Base error for the calendar sync domain."""


class ConnectionUnavailableError(CalendarSyncError):
    """Raised when a connection does not exist or is inactive."""


class UnsupportedProviderError(CalendarSyncError):
    """Raised when no adapter is registered for a connection's provider."""


class CredentialError(CalendarSyncError):
    """Raised when stored credentials cannot be decrypted, refreshed or used."""


class ReauthRequired(CredentialError):
    """
    The provider needs the owner to reconnect the calendar.

    Never retried automatically by the orchestrator.
    """


class ProviderError(CalendarSyncError):
    """Raised when a provider API call fails."""

    retryable = True

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


class AuthExpired(ProviderError):
    """401 from the provider; credentials are refreshed and the call replayed once."""


class NotFound(ProviderError):
    """The external event is gone. Success for deletes, a reconciliation signal otherwise."""

    retryable = False


class RateLimited(ProviderError):
    """The provider throttled the call."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = 429,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class UnknownProviderError(ProviderError):
    """Any other provider or transport failure, including timeouts."""
