"""Work items submitted by callers and the results returned for them."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TaskType(str, Enum):
    """Kinds of work the orchestrator knows how to prompt for."""

    SemanticFiltering = "semantic_filtering"
    """Decide inclusion/exclusion of papers against free-text criteria."""

    CategoryIdentification = "category_identification"
    """Assign a primary research category to each paper."""

    DocumentRegeneration = "document_regeneration"
    """Fold batches of papers into a running draft, one batch at a time."""

    @property
    def order_dependent(self) -> bool:
        """Whether batches must run strictly one after another."""
        return self == TaskType.DocumentRegeneration


class FallbackStrategy(str, Enum):
    """Behavior when no credential in the pool can serve a batch."""

    RuleBased = "rule_based"
    """Decide locally by keyword matching; results are tagged non-LLM."""

    Skip = "skip"
    """Leave the items unresolved (omitted from results)."""

    Fail = "fail"
    """Abort the whole job with PoolExhaustedError."""


class WorkItem(BaseModel):
    """A unit of caller-supplied work.

    The payload is opaque to the orchestrator apart from the paper metadata
    fields used for prompting and keyword matching (title, abstract,
    authors, year, venue, keywords).
    """

    id: str = Field(..., min_length=1, description="Caller-assigned identity")
    task_type: TaskType = Field(default=TaskType.SemanticFiltering)
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    @property
    def title(self) -> str:
        return str(self.payload.get("title") or "")

    @property
    def abstract(self) -> str:
        return str(self.payload.get("abstract") or "")

    @property
    def authors(self) -> list[str]:
        authors = self.payload.get("authors") or []
        if isinstance(authors, str):
            return [authors]
        return [str(a) for a in authors]

    def searchable_text(self) -> str:
        """Concatenate the fields used for keyword matching."""
        keywords = self.payload.get("keywords") or []
        if isinstance(keywords, str):
            keywords = [keywords]
        return " ".join([self.title, self.abstract, *[str(k) for k in keywords]])


class BatchResult(BaseModel):
    """Outcome for a single work item."""

    item_id: str
    included: bool = False
    reasoning: str = ""
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    error: str | None = None
    category: str | None = None
    llm_derived: bool = True
    model: str | None = None

    model_config = ConfigDict(validate_assignment=True)

    @property
    def succeeded(self) -> bool:
        return self.error is None


class GenerationParams(BaseModel):
    """Provider-facing generation options."""

    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_output_tokens: int = Field(default=2048, gt=0)
    timeout_ms: int = Field(default=30000, gt=0)

    model_config = ConfigDict(frozen=True)


class TaskParams(BaseModel):
    """Caller-supplied task parameters.

    Every field left as None is filled from OrchestratorSettings when the
    job starts.
    """

    task_type: TaskType = TaskType.SemanticFiltering
    inclusion_prompt: str | None = None
    exclusion_prompt: str | None = None
    inclusion_keywords: list[str] = Field(default_factory=list)
    exclusion_keywords: list[str] = Field(default_factory=list)
    topic: str | None = None
    initial_document: str = ""
    batch_size: int | None = Field(default=None, gt=0)
    max_concurrent_batches: int | None = Field(default=None, gt=0)
    fallback_strategy: FallbackStrategy | None = None
    model: str | None = None
    fallback_models: list[str] | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_output_tokens: int | None = Field(default=None, gt=0)
    timeout_ms: int | None = Field(default=None, gt=0)
    retry_attempts: int | None = Field(default=None, ge=1)
    max_rotation_attempts: int | None = Field(default=None, ge=0)

    model_config = ConfigDict(frozen=True)

    @field_validator("inclusion_keywords", "exclusion_keywords")
    @classmethod
    def normalize_keywords(cls, v: list[str]) -> list[str]:
        """Drop blank keywords and surrounding whitespace."""
        return [k.strip() for k in v if k and k.strip()]


class RegenerationResult(BaseModel):
    """Final draft and per-item outcomes of a document regeneration job."""

    document: str
    results: list[BatchResult] = Field(default_factory=list)
