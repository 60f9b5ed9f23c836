"""
Error taxonomy for the reconciliation service.

Retryable:
    TransientFetchError      network / timeout / non-2xx from the metadata API
    MalformedMetadataError   payload with an unexpected shape (may be an upstream glitch)

Logged, never fatal:
    StoreError               persistence failure; the cycle is abandoned
    NotifyError              social sink failure; never retried by the engines
    SubscriptionError        transport failure; handled by the chain client's reconnect loop
"""

from typing import Optional


class HeroWatchError(Exception):
    """Base class for service errors."""


class MetadataError(HeroWatchError):
    """Metadata could not be obtained for a token."""

    def __init__(self, message: str, token_id: Optional[int] = None):
        super().__init__(message)
        self.token_id = token_id


class TransientFetchError(MetadataError):
    """Network failure, timeout or non-2xx response."""

    def __init__(self, message: str, token_id: Optional[int] = None, status_code: Optional[int] = None):
        super().__init__(message, token_id)
        self.status_code = status_code


class MalformedMetadataError(MetadataError):
    """Response body is not the expected metadata document."""


class StoreError(HeroWatchError):
    """Persistence layer failure."""


class NotifyError(HeroWatchError):
    """Announcement could not be delivered."""


class SubscriptionError(HeroWatchError):
    """Chain transport failure (request timeout, closed socket, RPC error)."""


class ConfigError(HeroWatchError, ValueError):
    """Invalid or missing configuration value."""


RETRYABLE_ERRORS = (TransientFetchError, MalformedMetadataError)
