"""StateTransition audit record for credential status changes."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from llmkeypool.domain.models.clock import utc_now


class StateTransition(BaseModel):
    """One credential status change, kept for audit and debugging.

    ``entity_id`` is the credential id; the secret never appears here.
    """

    entity_id: str = Field(..., min_length=1, description="Credential id")
    label: str | None = Field(default=None, description="Credential label")
    from_state: str
    to_state: str
    trigger: str = Field(
        ...,
        min_length=1,
        description="Cause: auth, rate_limit, quota, network, unknown, reclaim, health_check, ...",
    )
    transition_timestamp: datetime = Field(default_factory=utc_now)
    context: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)
