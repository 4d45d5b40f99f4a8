"""Domain models for llmkeypool."""

from llmkeypool.domain.models.clock import Clock, utc_now
from llmkeypool.domain.models.credential import (
    Credential,
    CredentialQuotaStatus,
    CredentialStatus,
    HealthCheck,
    HealthCheckResult,
)
from llmkeypool.domain.models.llm_response import LLMResponse, estimate_tokens
from llmkeypool.domain.models.progress import JobPhase, JobProgress
from llmkeypool.domain.models.quota_record import (
    DEFAULT_MODEL_QUOTAS,
    UNKNOWN_MODEL_QUOTAS,
    ModelQuotas,
    QuotaRecord,
    QuotaWindow,
    WindowKind,
)
from llmkeypool.domain.models.state_transition import StateTransition
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
    GenerationParams,
    RegenerationResult,
    TaskParams,
    TaskType,
    WorkItem,
)

__all__ = [
    "Clock",
    "utc_now",
    "Credential",
    "CredentialStatus",
    "CredentialQuotaStatus",
    "HealthCheck",
    "HealthCheckResult",
    "LLMResponse",
    "estimate_tokens",
    "JobPhase",
    "JobProgress",
    "WindowKind",
    "ModelQuotas",
    "QuotaWindow",
    "QuotaRecord",
    "DEFAULT_MODEL_QUOTAS",
    "UNKNOWN_MODEL_QUOTAS",
    "StateTransition",
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
    "GenerationParams",
    "TaskParams",
    "RegenerationResult",
]
