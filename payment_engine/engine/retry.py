"""
Gateway errors and the backoff policy for retrying them.

Gateways raise these errors; adapters retry the transient ones (429 rate
limits, 5xx) following a RetryPolicy and translate whatever is left into
the engine's error taxonomy. Declines and bad requests are permanent and
never retried.
"""

from dataclasses import dataclass
from typing import Optional

from payment_engine.config import settings

RETRIABLE_STATUS_CODES = {429, 502, 503, 504}


class GatewayError(Exception):
    """Base exception for payment gateway errors."""

    def __init__(self, message: str, status_code: int = 503, retriable: Optional[bool] = None):
        super().__init__(message)
        self.status_code = status_code
        self.retriable = status_code in RETRIABLE_STATUS_CODES if retriable is None else retriable


class RateLimitError(GatewayError):
    """429 from the gateway, optionally telling us when to come back."""

    def __init__(self, message: str = "Rate limited", retry_after: Optional[float] = None):
        super().__init__(message, status_code=429, retriable=True)
        self.retry_after = retry_after


class PermanentGatewayError(GatewayError):
    """Declined card, unknown session, bad request: retrying cannot help."""

    def __init__(self, message: str, status_code: int = 402):
        super().__init__(message, status_code=status_code, retriable=False)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient gateway errors."""

    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.retry_max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    def should_retry(self, error: GatewayError, retries_done: int) -> bool:
        return error.retriable and retries_done < self.max_retries

    def delay(self, error: GatewayError, retries_done: int) -> float:
        """Seconds to wait before the next call; a rate limit's retry_after takes precedence."""
        if isinstance(error, RateLimitError) and error.retry_after:
            return min(error.retry_after, self.max_delay)
        return min(self.base_delay * (2 ** retries_done), self.max_delay)
