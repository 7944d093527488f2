from __future__ import annotations


class GovernanceError(Exception):
    """Base error for the governance engine."""


class ConfigurationMissing(GovernanceError):
    """Required adapter configuration is missing."""


class ProviderError(GovernanceError):
    """Account provider call failure."""

    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def code(self) -> str:
        return type(self).__name__


class ProviderUnavailable(ProviderError):
    """Provider unreachable or answering with 5xx."""

    retryable = True


class ProviderCircuitOpen(ProviderUnavailable):
    """Circuit breaker is open; the call was not attempted."""

    retryable = False


class ProviderTimeout(ProviderError):
    """Provider call exceeded its timeout."""

    retryable = True


class ProviderAuthFailure(ProviderError):
    """Provider rejected our credentials."""


class ProviderBadRequest(ProviderError):
    """Provider rejected the request itself."""


class StoreUnavailable(GovernanceError):
    """Persistent store unreachable; the current run cannot continue."""


class NotificationDeliveryFailed(GovernanceError):
    """Dispatcher could not deliver a notification."""
