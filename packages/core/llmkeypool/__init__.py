"""llmkeypool - Resilient multi-key LLM batch orchestration."""

from llmkeypool.domain.components.credential_manager import InvalidStateTransitionError
from llmkeypool.domain.components.credential_pool import (
    CredentialNotFoundError,
    CredentialPool,
    NoCredentialsError,
)
from llmkeypool.domain.models.credential import (
    CredentialQuotaStatus,
    CredentialStatus,
    HealthCheckResult,
)
from llmkeypool.domain.models.progress import JobPhase, JobProgress
from llmkeypool.domain.models.system_error import (
    AuthError,
    ErrorCategory,
    NetworkError,
    PoolExhaustedError,
    ProviderError,
    QuotaExceededError,
    RateLimitError,
    UnknownError,
)
from llmkeypool.domain.models.work_item import (
    BatchResult,
    FallbackStrategy,
    RegenerationResult,
    TaskParams,
    TaskType,
    WorkItem,
)
from llmkeypool.infrastructure.config.file_loader import ConfigurationError
from llmkeypool.infrastructure.config.settings import OrchestratorSettings
from llmkeypool.orchestrator import BatchOrchestrator

__version__ = "0.1.0"

__all__ = [
    "BatchOrchestrator",
    "OrchestratorSettings",
    "ConfigurationError",
    "CredentialPool",
    "CredentialStatus",
    "CredentialQuotaStatus",
    "HealthCheckResult",
    "CredentialNotFoundError",
    "NoCredentialsError",
    "InvalidStateTransitionError",
    "JobPhase",
    "JobProgress",
    "ErrorCategory",
    "ProviderError",
    "AuthError",
    "RateLimitError",
    "QuotaExceededError",
    "NetworkError",
    "UnknownError",
    "PoolExhaustedError",
    "TaskType",
    "FallbackStrategy",
    "WorkItem",
    "BatchResult",
    "TaskParams",
    "RegenerationResult",
]
