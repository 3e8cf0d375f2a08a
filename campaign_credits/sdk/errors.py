"""
Provider error taxonomy.

Adapters translate every SDK, transport and parsing failure into one of
these types, so the orchestrator never sees a provider-specific exception.
"""

from typing import Optional


class ProviderError(Exception):
    """Base class for a failed provider call.

    Every provider error makes the orchestrator refund the task's
    reservation and continue with the next task.
    """
    kind = "error"
    retryable = True

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status_code = status_code

    def user_message(self) -> str:
        """Message shown to the operator for the failed field."""
        if self.retryable:
            return f"{self.message} Please try again."
        return self.message


class ProviderTransientError(ProviderError):
    """Timeout, connection failure, 5xx or malformed response."""
    kind = "transient"


class ProviderRateLimitedError(ProviderTransientError):
    """Provider rejected the call with a rate limit (HTTP 429)."""
    kind = "rate_limited"

    def user_message(self) -> str:
        return f"{self.message} Please wait a moment and try again."


class ProviderPermanentError(ProviderError):
    """Bad request, invalid credentials, region restriction and similar."""
    kind = "permanent"
    retryable = False


class ProviderUnsupportedError(ProviderPermanentError):
    """The provider or model cannot perform the requested capability."""
    kind = "unsupported"


def error_for_status(status_code: int, message: str, provider: str) -> ProviderError:
    """Classify an HTTP error status returned by a provider API."""
    if status_code == 429:
        return ProviderRateLimitedError(message, provider, status_code)
    if status_code in (408, 409) or status_code >= 500:
        return ProviderTransientError(message, provider, status_code)
    return ProviderPermanentError(message, provider, status_code)
