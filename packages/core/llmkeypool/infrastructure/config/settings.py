"""Configuration settings using pydantic-settings."""

from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from llmkeypool.domain.models.work_item import FallbackStrategy


def _split_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


class OrchestratorSettings(BaseSettings):
    """Configuration settings for BatchOrchestrator.

    Settings can be loaded from environment variables or passed as keyword
    arguments. Environment variables are prefixed with ``LLMKEYPOOL_``
    (e.g. ``LLMKEYPOOL_BATCH_SIZE=10``). API keys are also read from
    ``GEMINI_API_KEYS``.

    Example:
        ```python
        # From environment variables
        settings = OrchestratorSettings()

        # From keyword arguments
        settings = OrchestratorSettings(api_keys="key-a,key-b", batch_size=10)
        ```
    """

    model_config = SettingsConfigDict(
        env_prefix="LLMKEYPOOL_",
        case_sensitive=False,
        extra="ignore",
    )

    # Credentials and models
    api_keys: str = Field(
        default="",
        validation_alias=AliasChoices("api_keys", "LLMKEYPOOL_API_KEYS", "GEMINI_API_KEYS"),
        description="Comma-separated API keys",
        repr=False,
    )
    model: str = Field(
        default="gemini-2.5-flash-lite",
        description="Model used for batch calls",
    )
    fallback_models: str = Field(
        default="",
        description="Comma-separated models tried when the pool is exhausted on the active model",
    )

    # Batching
    batch_size: int = Field(default=15, gt=0, description="Items per batch")
    max_concurrent_batches: int = Field(default=3, gt=0, description="Concurrent batches")
    fallback_strategy: FallbackStrategy = Field(
        default=FallbackStrategy.RuleBased,
        description="Behavior when no credential can serve a batch",
    )

    # Generation
    request_timeout_ms: int = Field(default=30000, gt=0, description="Per-call timeout")
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_output_tokens: int = Field(default=2048, gt=0)

    # Retry and rotation
    retry_attempts: int = Field(default=3, ge=1, description="Attempts per credential for network errors")
    max_rotation_attempts: int | None = Field(
        default=None,
        ge=0,
        description="Credential rotations per batch; pool size when unset",
    )
    retry_backoff_seconds: float = Field(default=1.0, ge=0.0, description="Backoff base")
    max_backoff_seconds: float = Field(default=30.0, ge=0.0, description="Backoff cap")
    credential_wait_attempts: int = Field(
        default=3,
        ge=0,
        description="Polls while waiting for a rate-limited credential to recover",
    )
    credential_wait_seconds: float = Field(
        default=15.0,
        ge=0.0,
        description="Longest single wait between polls",
    )

    # Credential lifecycle
    rate_limit_cooldown_seconds: int = Field(default=60, gt=0)
    quota_cooldown_seconds: int = Field(default=3600, gt=0)
    network_error_threshold: int = Field(default=5, ge=1)
    unknown_error_threshold: int = Field(default=3, ge=1)
    quota_reset_timezone: str = Field(
        default="America/Los_Angeles",
        description="Timezone whose midnight resets the daily quota",
    )

    # Infrastructure
    redis_url: str | None = Field(default=None, description="Redis URL for shared quota state")
    config_file: str | None = Field(default=None, description="YAML/JSON configuration file")

    # Observability configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_json: bool = Field(default=True, description="Render logs as JSON lines")

    @field_validator("quota_reset_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Validate the timezone name."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level

    @property
    def api_key_list(self) -> list[str]:
        return _split_csv(self.api_keys)

    @property
    def fallback_model_list(self) -> list[str]:
        return [m for m in _split_csv(self.fallback_models) if m != self.model]

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "OrchestratorSettings":
        """Create settings from a dictionary.

        List values for ``api_keys`` and ``fallback_models`` are joined.

        Args:
            config: Dictionary with configuration values.

        Returns:
            OrchestratorSettings instance.
        """
        values = dict(config)
        for name in ("api_keys", "fallback_models"):
            if isinstance(values.get(name), (list, tuple)):
                values[name] = ",".join(str(v) for v in values[name])
        return cls(**values)
