"""Normalized response returned by LLM clients."""

from pydantic import BaseModel, ConfigDict, Field


class LLMResponse(BaseModel):
    """Text plus token accounting for one provider call.

    ``tokens_used`` is None when the provider did not report usage; callers
    then fall back to an estimate.
    """

    text: str = Field(..., description="Generated text")
    tokens_used: int | None = Field(default=None, ge=0, description="Provider token count")
    model: str | None = Field(default=None, description="Model that served the call")
    credential_id: str | None = Field(default=None, description="Credential that served the call")
    latency_ms: int | None = Field(default=None, ge=0)

    model_config = ConfigDict(frozen=True)


def estimate_tokens(*texts: str) -> int:
    """Rough token estimate: one token per four characters, at least one."""
    chars = sum(len(t) for t in texts)
    return max(1, -(-chars // 4))
