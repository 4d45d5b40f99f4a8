"""structlog-backed observability manager with secret redaction."""

import logging
from datetime import UTC, datetime
from typing import Any

import structlog

from llmkeypool.domain.interfaces.observability_manager import (
    ObservabilityError,
    ObservabilityManager,
)

REDACTED = "[REDACTED]"

SENSITIVE_FIELDS = frozenset(
    {
        "secret",
        "api_key",
        "api_keys",
        "apikey",
        "credential_secret",
        "x-goog-api-key",
        "authorization",
        "encryption_key",
    }
)

# Gemini keys start with "AIza"; the others cover keys pasted from sibling providers.
SECRET_PREFIXES = ("AIza", "sk-", "pk-", "xai-")
MIN_SECRET_LENGTH = 21


def _looks_like_secret(value: str) -> bool:
    return value.startswith(SECRET_PREFIXES) and len(value) >= MIN_SECRET_LENGTH and " " not in value


def sanitize_for_logging(data: Any) -> Any:
    """Return a copy of ``data`` with credential material replaced by ``REDACTED``.

    Values under secret-bearing field names are dropped whatever their
    content; bare strings shaped like provider keys are dropped wherever
    they appear. Dicts, lists and tuples are walked recursively.
    """
    if isinstance(data, dict):
        return {
            key: REDACTED
            if isinstance(key, str) and key.lower() in SENSITIVE_FIELDS
            else sanitize_for_logging(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [sanitize_for_logging(item) for item in data]
    if isinstance(data, str) and _looks_like_secret(data):
        return REDACTED
    return data


class DefaultObservabilityManager(ObservabilityManager):
    """Writes orchestrator events and logs through structlog.

    Every payload passes through ``sanitize_for_logging`` first, so a key
    can never reach a log line even when a caller puts one in context.
    """

    def __init__(self, log_level: str = "INFO", json_format: bool = True) -> None:
        """Configure structlog and the ``llmkeypool`` stdlib logger.

        Args:
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
            json_format: Render JSON lines when True, console output otherwise.
        """
        level = logging.getLevelName(log_level.upper())
        if not isinstance(level, int):
            level = logging.INFO

        renderer = structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer()
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                renderer,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )
        logging.basicConfig(
            level=level,
            format="%(message)s" if json_format else "%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        logging.getLogger("llmkeypool").setLevel(level)

        self.log_level = logging.getLevelName(level)
        self._logger = structlog.get_logger("llmkeypool")

    async def emit_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Write one INFO line named after ``event_type``.

        Raises:
            ObservabilityError: If the event could not be written.
        """
        try:
            fields = sanitize_for_logging(payload)
            if metadata:
                fields["metadata"] = {
                    "timestamp": datetime.now(UTC).isoformat(),
                    **sanitize_for_logging(metadata),
                }
            self._logger.info(event_type, event_type=event_type, **fields)
        except Exception as e:
            raise ObservabilityError(f"Failed to emit event {event_type}: {e}") from e

    async def log(
        self,
        level: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Log ``message`` at ``level``; unknown levels fall back to INFO.

        Raises:
            ObservabilityError: If the message could not be written.
        """
        try:
            write = getattr(self._logger, level.lower(), self._logger.info)
            write(sanitize_for_logging(message), **sanitize_for_logging(context or {}))
        except Exception as e:
            raise ObservabilityError(f"Failed to log message: {e}") from e
