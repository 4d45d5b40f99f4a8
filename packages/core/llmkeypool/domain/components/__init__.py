"""Domain components."""

from llmkeypool.domain.components.credential_manager import (
    CredentialManager,
    InvalidStateTransitionError,
)
from llmkeypool.domain.components.credential_pool import (
    CredentialNotFoundError,
    CredentialPool,
    NoCredentialsError,
)
from llmkeypool.domain.components.error_classifier import (
    GeminiErrorClassifier,
    MessageErrorClassifier,
)
from llmkeypool.domain.components.job_control import JobControl
from llmkeypool.domain.components.quota_tracker import QuotaTracker
from llmkeypool.domain.components.rule_based import RuleBasedDecider

__all__ = [
    "CredentialManager",
    "InvalidStateTransitionError",
    "CredentialPool",
    "CredentialNotFoundError",
    "NoCredentialsError",
    "GeminiErrorClassifier",
    "MessageErrorClassifier",
    "JobControl",
    "QuotaTracker",
    "RuleBasedDecider",
]
