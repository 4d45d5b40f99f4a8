"""Gemini REST client implementation."""

from __future__ import annotations

import time
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from llmkeypool.domain.interfaces.llm_client import LLMClient
from llmkeypool.domain.models.llm_response import LLMResponse
from llmkeypool.domain.models.system_error import (
    AuthError,
    NetworkError,
    ProviderError,
    QuotaExceededError,
    RateLimitError,
    UnknownError,
)
from llmkeypool.domain.models.work_item import GenerationParams


class GeminiClient(LLMClient):
    """Calls the Gemini ``generateContent`` endpoint over httpx.

    The API key travels in the ``x-goog-api-key`` header, never in the URL,
    so it cannot leak through request logging.

    Example:
        ```python
        client = GeminiClient()
        response = await client.call(secret, "gemini-2.5-flash-lite", "Hello", GenerationParams())
        print(response.text, response.tokens_used)
        ```
    """

    BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
    """Gemini API base URL."""

    def __init__(
        self,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize GeminiClient.

        Args:
            base_url: Optional API base URL override.
            http_client: Optional shared AsyncClient. When None, a client is
                created per call.
        """
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self._http_client = http_client

    def _build_request(self, prompt: str, params: GenerationParams) -> dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": params.temperature,
                "maxOutputTokens": params.max_output_tokens,
            },
        }

    async def call(
        self,
        credential_secret: str,
        model: str,
        prompt: str,
        params: GenerationParams,
    ) -> LLMResponse:
        url = f"{self.base_url}/models/{model}:generateContent"
        headers = {"x-goog-api-key": credential_secret, "Content-Type": "application/json"}
        timeout = params.timeout_ms / 1000
        started = time.monotonic()

        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    url, json=self._build_request(prompt, params), headers=headers, timeout=timeout
                )
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.post(url, json=self._build_request(prompt, params), headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise self.map_error(e) from e
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request to Gemini timed out after {timeout}s") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Network error connecting to Gemini: {e}") from e
        except ValueError as e:
            raise UnknownError(f"Invalid JSON from Gemini: {e}") from e

        return self.normalize_response(data, model, int((time.monotonic() - started) * 1000))

    def normalize_response(self, data: dict[str, Any], model: str, latency_ms: int) -> LLMResponse:
        """Extract text and token usage from a ``generateContent`` response.

        Raises:
            UnknownError: If the response carries no candidate text.
        """
        candidates = data.get("candidates") or []
        parts: list[dict[str, Any]] = []
        if candidates:
            parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(str(p.get("text", "")) for p in parts)
        if not text:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            raise UnknownError(
                f"Gemini returned no text (block reason: {block_reason or 'none'})",
                details={"finish_reason": candidates[0].get("finishReason") if candidates else None},
            )

        usage = data.get("usageMetadata") or {}
        tokens = usage.get("totalTokenCount")
        return LLMResponse(
            text=text,
            tokens_used=int(tokens) if isinstance(tokens, (int, float)) else None,
            model=data.get("modelVersion") or model,
            latency_ms=latency_ms,
        )

    def map_error(self, error: httpx.HTTPStatusError) -> ProviderError:
        """Map an HTTP error response to the error taxonomy."""
        response = error.response
        status_code = response.status_code
        details = self._extract_error_details(response)
        message = details.get("message") or response.text or f"Gemini API error ({status_code})"
        lowered = message.lower()
        retry_after = self._extract_retry_after(response)

        if status_code in (401, 403) or (status_code == 400 and "api key not valid" in lowered):
            return AuthError(message, status_code=status_code, details=details)
        if status_code == 429:
            if "quota" in lowered and "per day" in lowered:
                return QuotaExceededError(message, status_code=status_code, retry_after=retry_after, details=details)
            return RateLimitError(message, status_code=status_code, retry_after=retry_after, details=details)
        if status_code == 408 or status_code >= 500:
            return NetworkError(message, status_code=status_code, details=details)
        return UnknownError(message, status_code=status_code, details=details)

    def _extract_retry_after(self, response: httpx.Response) -> int | None:
        header = response.headers.get("retry-after")
        if not header:
            return None
        try:
            return int(header)
        except ValueError:
            pass
        try:
            retry_date = parsedate_to_datetime(header)
        except (TypeError, ValueError):
            return None
        delta = (retry_date - datetime.now(UTC)).total_seconds()
        return int(delta) if delta > 0 else None

    def _extract_error_details(self, response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            return {}
        return {
            "message": error.get("message"),
            "status": error.get("status"),
            "code": error.get("code"),
        }
