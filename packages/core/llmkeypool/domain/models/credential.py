"""Credential data model and CredentialStatus enum."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from llmkeypool.domain.models.clock import utc_now


class CredentialStatus(str, Enum):
    """Enumeration of possible states for a credential.

    Exactly one status holds at any time. Only ``Active`` credentials are
    handed out for requests; ``RateLimited`` and ``QuotaExceeded`` become
    eligible again once reclaimed, ``Invalid`` is terminal.
    """

    Active = "active"
    """Credential is working normally."""

    RateLimited = "rate_limited"
    """Provider rejected a request with a rate limit; retry after reset."""

    QuotaExceeded = "quota_exceeded"
    """Provider reported an exhausted quota; retry after the longer reset."""

    Invalid = "invalid"
    """Authentication failed. No automatic recovery."""

    Error = "error"
    """Repeated transient or unclassified failures."""


TERMINAL_ON_SUCCESS = frozenset({CredentialStatus.QuotaExceeded, CredentialStatus.Invalid})
"""Statuses a successful call must not overwrite."""

UNSELECTABLE = frozenset({CredentialStatus.Invalid, CredentialStatus.Error})
"""Statuses that exclude a credential from selection outright."""


class HealthCheck(BaseModel):
    """Result of the most recent health check for a credential."""

    last_checked_at: datetime | None = Field(
        default=None,
        description="Timestamp of the last check, None if never checked",
    )
    is_healthy: bool = Field(
        default=True,
        description="Whether the last check succeeded (or was merely rate limited)",
    )
    last_error: str | None = Field(
        default=None,
        description="Error text from the last failed check",
    )
    permanent: bool = Field(
        default=False,
        description="True when the failure cannot recover without operator action",
    )

    model_config = ConfigDict(validate_assignment=True)


class Credential(BaseModel):
    """One external API secret plus its mutable usage and health state.

    The secret is held encrypted and excluded from serialization and repr.
    Only ``label``, ``masked`` and ``secret_hash`` are ever exposed.
    """

    id: str = Field(
        ...,
        description="Stable, unique identifier (not the secret itself)",
        min_length=1,
    )
    label: str = Field(
        ...,
        description="Human readable label, e.g. 'Key 1'",
        min_length=1,
    )
    secret: str = Field(
        ...,
        description="Encrypted secret material",
        min_length=1,
        exclude=True,
        repr=False,
    )
    secret_hash: str = Field(
        ...,
        description="One-way hash of the secret used as persistence key",
        min_length=1,
    )
    masked: str = Field(
        ...,
        description="Masked form of the secret safe for display",
    )
    status: CredentialStatus = Field(
        default=CredentialStatus.Active,
        description="Current operational status",
    )
    status_updated_at: datetime = Field(
        default_factory=utc_now,
        description="Timestamp when status last changed",
    )
    error_count: int = Field(
        default=0,
        description="Consecutive failures since the last success",
        ge=0,
    )
    error_streak: int = Field(
        default=0,
        description="Consecutive failures of the same category as last_error_category",
        ge=0,
    )
    last_error_category: str | None = Field(
        default=None,
        description="Category of the most recent failure",
    )
    request_count: int = Field(
        default=0,
        description="Total successful requests made with this credential",
        ge=0,
    )
    last_used_at: datetime | None = Field(
        default=None,
        description="Timestamp of last usage (success or failure)",
    )
    rate_limit_reset_at: datetime | None = Field(
        default=None,
        description="When a rate_limited/quota_exceeded credential may be retried",
    )
    health: HealthCheck = Field(
        default_factory=HealthCheck,
        description="Result of the last health check",
    )

    model_config = ConfigDict(
        frozen=False,
        validate_assignment=True,
        str_strip_whitespace=True,
    )

    @field_validator("label")
    @classmethod
    def validate_label(cls, v: str) -> str:
        """Validate label length."""
        if len(v) > 100:
            raise ValueError("Label must be 100 characters or less")
        return v

    @property
    def is_cooling_down(self) -> bool:
        """Whether the credential is waiting for a provider-side reset."""
        return self.status in (CredentialStatus.RateLimited, CredentialStatus.QuotaExceeded)

    def note_failure(self, category: str) -> int:
        """Count a failure and return how many in a row had this category."""
        self.error_count += 1
        if category == self.last_error_category:
            self.error_streak += 1
        else:
            self.error_streak = 1
            self.last_error_category = category
        return self.error_streak

    def clear_errors(self) -> None:
        self.error_count = 0
        self.error_streak = 0
        self.last_error_category = None

    def __repr__(self) -> str:
        """String representation that never exposes the secret."""
        return (
            f"Credential(label={self.label!r}, masked={self.masked!r}, "
            f"status={self.status.value}, error_count={self.error_count}, "
            f"request_count={self.request_count})"
        )

    __str__ = __repr__


class HealthCheckResult(BaseModel):
    """Outcome of probing one credential."""

    label: str
    masked: str
    status: CredentialStatus
    is_healthy: bool
    permanent: bool = False
    busy: bool = Field(default=False, description="Healthy but currently rate limited")
    error: str | None = None
    checked_at: datetime


class CredentialQuotaStatus(BaseModel):
    """Observability view of one credential for ``get_quota_status``."""

    label: str
    masked: str
    status: CredentialStatus
    quota_remaining_percent: float = Field(ge=0.0, le=100.0)
    quota_details: str
    error_count: int = 0
    request_count: int = 0
    is_healthy: bool = True
    rate_limit_reset_at: datetime | None = None
