"""Domain interfaces for dependency injection."""

from llmkeypool.domain.interfaces.error_classifier import ErrorClassifier
from llmkeypool.domain.interfaces.llm_client import LLMClient
from llmkeypool.domain.interfaces.observability_manager import (
    ObservabilityError,
    ObservabilityManager,
)
from llmkeypool.domain.interfaces.quota_store import QuotaStore, QuotaStoreError

__all__ = [
    "ErrorClassifier",
    "LLMClient",
    "ObservabilityError",
    "ObservabilityManager",
    "QuotaStore",
    "QuotaStoreError",
]
