"""LLMClient interface for provider calls."""

from abc import ABC, abstractmethod

from llmkeypool.domain.models.llm_response import LLMResponse
from llmkeypool.domain.models.work_item import GenerationParams


class LLMClient(ABC):
    """Abstract interface for a text-generation provider.

    Implementations perform one call with the given plaintext secret and
    normalize failures into the ProviderError taxonomy
    (``llmkeypool.domain.models.system_error``). They hold no credential
    state of their own.
    """

    @abstractmethod
    async def call(
        self,
        credential_secret: str,
        model: str,
        prompt: str,
        params: GenerationParams,
    ) -> LLMResponse:
        """Generate text for ``prompt``.

        Args:
            credential_secret: Plaintext API key for this call only.
            model: Provider model name.
            prompt: Full prompt text.
            params: Generation options.

        Returns:
            LLMResponse with text and token usage.

        Raises:
            ProviderError: Classified provider or transport failure.
        """
        pass
