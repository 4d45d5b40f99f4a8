"""Error taxonomy for provider calls and job orchestration."""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Categories a provider failure is classified into."""

    Auth = "auth"
    """Authentication failed (401/403, invalid key). Terminal for the credential."""

    RateLimit = "rate_limit"
    """Rate limit hit (429). Retryable after the minute window resets."""

    Quota = "quota"
    """Quota exhausted. Retryable after the longer reset."""

    Network = "network"
    """Transient transport failure or timeout. Retried in place first."""

    Unknown = "unknown"
    """Anything else. Treated conservatively."""

    @property
    def retries_in_place(self) -> bool:
        """Whether a failed call is worth repeating on the same credential."""
        return self == ErrorCategory.Network


class ProviderError(Exception):
    """Normalized failure raised by LLM clients.

    Example:
        ```python
        raise ProviderError(
            category=ErrorCategory.RateLimit,
            message="429 Too Many Requests",
            status_code=429,
        )
        ```
    """

    default_category = ErrorCategory.Unknown

    def __init__(
        self,
        message: str,
        category: ErrorCategory | str | None = None,
        status_code: int | None = None,
        retry_after: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize ProviderError.

        Args:
            message: Human-readable error message.
            category: Error category; defaults to the subclass category.
            status_code: HTTP status code if the failure came from a response.
            retry_after: Seconds from a Retry-After header, if any.
            details: Additional error details.
        """
        if category is None:
            category = self.default_category
        self.category = ErrorCategory(category)
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(category={self.category.value}, "
            f"message={self.message!r}, status_code={self.status_code})"
        )

    def __str__(self) -> str:
        return self.message


class AuthError(ProviderError):
    default_category = ErrorCategory.Auth


class RateLimitError(ProviderError):
    default_category = ErrorCategory.RateLimit


class QuotaExceededError(ProviderError):
    default_category = ErrorCategory.Quota


class NetworkError(ProviderError):
    default_category = ErrorCategory.Network


class UnknownError(ProviderError):
    default_category = ErrorCategory.Unknown


class PoolExhaustedError(Exception):
    """Raised to the job caller when no credential can serve a batch.

    Only surfaces under FallbackStrategy.Fail.
    """

    def __init__(self, message: str, pending_items: int = 0) -> None:
        self.pending_items = pending_items
        super().__init__(message)
