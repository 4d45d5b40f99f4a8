"""Error classification strategies."""

import asyncio

from llmkeypool.domain.interfaces.error_classifier import ErrorClassifier
from llmkeypool.domain.models.system_error import ErrorCategory, ProviderError


class MessageErrorClassifier(ErrorClassifier):
    """Classifies by explicit category, then HTTP status, then message text.

    Text rules are checked in order; the first group with a matching phrase
    wins. Subclasses extend the phrase lists for a specific provider.
    """

    RATE_LIMIT_PHRASES: tuple[str, ...] = ("rate limit", "ratelimit", "too many requests", "429")
    KEY_PHRASES: tuple[str, ...] = ("invalid api key", "api key is invalid")
    AUTH_PHRASES: tuple[str, ...] = KEY_PHRASES + ("unauthorized", "forbidden", "401", "403")
    NETWORK_PHRASES: tuple[str, ...] = (
        "network",
        "timeout",
        "timed out",
        "econnrefused",
        "enotfound",
        "connection refused",
        "connection reset",
        "fetch failed",
    )

    def classify(self, error: BaseException) -> ErrorCategory:
        if isinstance(error, ProviderError) and error.category != ErrorCategory.Unknown:
            return error.category

        if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
            return ErrorCategory.Network

        status_code = getattr(error, "status_code", None)
        if isinstance(status_code, int):
            by_status = self._classify_status(status_code)
            if by_status is not None:
                return by_status
            # Without 401/403 only wording that names the key itself means auth.
            return self._classify_message(str(error).lower(), key_only=True)

        return self._classify_message(str(error).lower())

    def _classify_status(self, status_code: int) -> ErrorCategory | None:
        if status_code in (401, 403):
            return ErrorCategory.Auth
        if status_code == 429:
            return ErrorCategory.RateLimit
        if status_code == 408 or status_code >= 500:
            return ErrorCategory.Network
        return None

    def _is_quota(self, message: str) -> bool:
        return "quota" in message and "exceeded" in message

    def _classify_message(self, message: str, key_only: bool = False) -> ErrorCategory:
        if any(p in message for p in self.RATE_LIMIT_PHRASES):
            return ErrorCategory.RateLimit
        if self._is_quota(message):
            return ErrorCategory.Quota
        auth_phrases = self.KEY_PHRASES if key_only else self.AUTH_PHRASES
        if any(p in message for p in auth_phrases):
            return ErrorCategory.Auth
        if any(p in message for p in self.NETWORK_PHRASES):
            return ErrorCategory.Network
        return ErrorCategory.Unknown


class GeminiErrorClassifier(MessageErrorClassifier):
    """Adds the wording the Gemini API uses in its error bodies."""

    RATE_LIMIT_PHRASES = MessageErrorClassifier.RATE_LIMIT_PHRASES + (
        "resource has been exhausted",
        "resource_exhausted",
    )
    KEY_PHRASES = MessageErrorClassifier.KEY_PHRASES + ("api key not valid", "api_key_invalid")
    AUTH_PHRASES = MessageErrorClassifier.AUTH_PHRASES + (
        "api key not valid",
        "api_key_invalid",
        "permission denied",
        "permission_denied",
    )

    def _is_quota(self, message: str) -> bool:
        if super()._is_quota(message):
            return True
        return "quota" in message and "per day" in message

    def _classify_message(self, message: str, key_only: bool = False) -> ErrorCategory:
        # Daily quota wording also mentions resource exhaustion; check it first.
        if "quota" in message and "per day" in message:
            return ErrorCategory.Quota
        return super()._classify_message(message, key_only)
