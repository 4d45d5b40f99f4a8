"""LLM provider clients."""

from llmkeypool.infrastructure.adapters.gemini_client import GeminiClient

__all__ = ["GeminiClient"]
