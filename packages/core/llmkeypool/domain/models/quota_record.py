"""QuotaRecord data model with three independent quota windows."""

from __future__ import annotations

from datetime import UTC, datetime, time, timedelta, tzinfo
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from llmkeypool.domain.models.clock import utc_now


class WindowKind(str, Enum):
    """Enumeration of the quota windows tracked per credential and model.

    Defines both what a window counts and how its reset boundary advances.
    """

    RequestsPerMinute = "rpm"
    """Requests per minute. Resets 60 seconds after the window opened."""

    TokensPerMinute = "tpm"
    """Tokens per minute. Resets 60 seconds after the window opened."""

    RequestsPerDay = "rpd"
    """Requests per day. Resets at the next midnight of the reset timezone."""

    def calculate_next_reset(self, current_time: datetime, reset_tz: tzinfo = UTC) -> datetime:
        """Calculate the next reset boundary measured from ``current_time``.

        Args:
            current_time: Aware datetime to calculate from.
            reset_tz: Timezone whose midnight anchors the daily window.

        Returns:
            The aware UTC datetime at which the window next resets.
        """
        if self == WindowKind.RequestsPerDay:
            local = current_time.astimezone(reset_tz)
            next_day = local.date() + timedelta(days=1)
            midnight = datetime.combine(next_day, time.min, tzinfo=reset_tz)
            return midnight.astimezone(UTC)
        return current_time + timedelta(seconds=60)


class ModelQuotas(BaseModel):
    """Static per-model ceilings for the three windows."""

    rpm: int = Field(..., gt=0, description="Requests per minute")
    tpm: int = Field(..., gt=0, description="Tokens per minute")
    rpd: int = Field(..., gt=0, description="Requests per day")

    model_config = ConfigDict(frozen=True)


# Free-tier ceilings observed for the Gemini API.
DEFAULT_MODEL_QUOTAS: dict[str, ModelQuotas] = {
    "gemini-3-pro-preview": ModelQuotas(rpm=5, tpm=250_000, rpd=100),
    "gemini-2.0-flash-lite": ModelQuotas(rpm=30, tpm=1_000_000, rpd=200),
    "gemini-2.5-flash-lite": ModelQuotas(rpm=15, tpm=250_000, rpd=1000),
    "gemini-2.0-flash": ModelQuotas(rpm=15, tpm=1_000_000, rpd=200),
    "gemini-2.5-flash": ModelQuotas(rpm=10, tpm=250_000, rpd=250),
    "gemini-2.5-pro": ModelQuotas(rpm=2, tpm=125_000, rpd=50),
}

UNKNOWN_MODEL_QUOTAS = ModelQuotas(rpm=2, tpm=125_000, rpd=50)
"""Most conservative ceilings, used for models missing from the table."""


class QuotaWindow(BaseModel):
    """A counter with a fixed capacity and a reset clock.

    ``used`` only grows within a window. Rolling forward is idempotent: it
    resets ``used`` to zero at most once per elapsed boundary and always
    computes the next boundary from the supplied ``now``.
    """

    kind: WindowKind
    limit: int = Field(..., gt=0)
    used: int = Field(default=0, ge=0)
    reset_at: datetime

    model_config = ConfigDict(validate_assignment=True)

    def roll_forward(self, now: datetime, reset_tz: tzinfo = UTC) -> bool:
        """Reset the window if ``now`` has crossed ``reset_at``.

        Returns:
            True if the window was reset, False otherwise.
        """
        if now < self.reset_at:
            return False
        self.used = 0
        self.reset_at = self.kind.calculate_next_reset(now, reset_tz)
        return True

    def has_room(self, amount: int) -> bool:
        """Whether ``amount`` more units fit in the window."""
        return self.used + amount <= self.limit

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def remaining_percent(self) -> float:
        return max(0.0, min(100.0, (self.limit - self.used) / self.limit * 100.0))

    def used_at(self, now: datetime) -> int:
        """Usage as of ``now``; a window past its boundary counts as empty."""
        return 0 if now >= self.reset_at else self.used

    def is_exhausted_at(self, now: datetime) -> bool:
        return self.used_at(now) >= self.limit


class QuotaRecord(BaseModel):
    """Composite of the RPM, TPM and RPD windows for one (credential, model) pair.

    Created lazily on first use of the pair, persisted after every usage
    update, and reconciled against the clock when loaded.
    """

    credential_hash: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    rpm: QuotaWindow
    tpm: QuotaWindow
    rpd: QuotaWindow
    status: str = Field(default="active")
    last_updated: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(validate_assignment=True)

    @field_validator("credential_hash", "model")
    @classmethod
    def validate_ids(cls, v: str) -> str:
        """Validate key fields are non-empty."""
        if not v.strip():
            raise ValueError("Quota record key fields cannot be empty")
        return v.strip()

    @classmethod
    def fresh(
        cls,
        credential_hash: str,
        model: str,
        quotas: ModelQuotas,
        now: datetime,
        reset_tz: tzinfo = UTC,
    ) -> QuotaRecord:
        """Build a record with empty windows opening at ``now``."""
        return cls(
            credential_hash=credential_hash,
            model=model,
            rpm=QuotaWindow(
                kind=WindowKind.RequestsPerMinute,
                limit=quotas.rpm,
                reset_at=WindowKind.RequestsPerMinute.calculate_next_reset(now, reset_tz),
            ),
            tpm=QuotaWindow(
                kind=WindowKind.TokensPerMinute,
                limit=quotas.tpm,
                reset_at=WindowKind.TokensPerMinute.calculate_next_reset(now, reset_tz),
            ),
            rpd=QuotaWindow(
                kind=WindowKind.RequestsPerDay,
                limit=quotas.rpd,
                reset_at=WindowKind.RequestsPerDay.calculate_next_reset(now, reset_tz),
            ),
            last_updated=now,
        )

    @property
    def key(self) -> tuple[str, str]:
        return (self.credential_hash, self.model)

    def windows(self) -> tuple[QuotaWindow, QuotaWindow, QuotaWindow]:
        return (self.rpm, self.tpm, self.rpd)

    def roll_forward(self, now: datetime, reset_tz: tzinfo = UTC) -> list[WindowKind]:
        """Roll every expired window forward.

        Returns:
            The kinds of the windows that were reset.
        """
        return [w.kind for w in self.windows() if w.roll_forward(now, reset_tz)]

    def to_store_dict(self) -> dict[str, Any]:
        """Serialize to the flat persistence layout."""
        return {
            "credentialHash": self.credential_hash,
            "model": self.model,
            "rpmUsed": self.rpm.used,
            "rpmLimit": self.rpm.limit,
            "rpmResetAt": self.rpm.reset_at.isoformat(),
            "tpmUsed": self.tpm.used,
            "tpmLimit": self.tpm.limit,
            "tpmResetAt": self.tpm.reset_at.isoformat(),
            "rpdUsed": self.rpd.used,
            "rpdLimit": self.rpd.limit,
            "rpdResetAt": self.rpd.reset_at.isoformat(),
            "status": self.status,
            "lastUpdated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_store_dict(cls, data: dict[str, Any]) -> QuotaRecord:
        """Rebuild a record from the flat persistence layout.

        Raises:
            ValueError: If required fields are missing or malformed.
        """
        try:
            return cls(
                credential_hash=str(data["credentialHash"]),
                model=str(data["model"]),
                rpm=QuotaWindow(
                    kind=WindowKind.RequestsPerMinute,
                    limit=int(data["rpmLimit"]),
                    used=int(data["rpmUsed"]),
                    reset_at=_parse_timestamp(data["rpmResetAt"]),
                ),
                tpm=QuotaWindow(
                    kind=WindowKind.TokensPerMinute,
                    limit=int(data["tpmLimit"]),
                    used=int(data["tpmUsed"]),
                    reset_at=_parse_timestamp(data["tpmResetAt"]),
                ),
                rpd=QuotaWindow(
                    kind=WindowKind.RequestsPerDay,
                    limit=int(data["rpdLimit"]),
                    used=int(data["rpdUsed"]),
                    reset_at=_parse_timestamp(data["rpdResetAt"]),
                ),
                status=str(data.get("status", "active")),
                last_updated=_parse_timestamp(data["lastUpdated"]),
            )
        except KeyError as e:
            raise ValueError(f"Quota record missing field: {e.args[0]}") from e

    def __repr__(self) -> str:
        """String representation of quota record."""
        return (
            f"QuotaRecord(credential_hash={self.credential_hash[:8]!r}, model={self.model!r}, "
            f"rpm={self.rpm.used}/{self.rpm.limit}, tpm={self.tpm.used}/{self.tpm.limit}, "
            f"rpd={self.rpd.used}/{self.rpd.limit})"
        )


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
