"""Progress reporting model for batch jobs."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class JobPhase(str, Enum):
    """Phases a job reports through its progress callback."""

    Queued = "queued"
    Batching = "batching"
    Dispatching = "dispatching"
    AwaitingCredential = "awaiting_credential"
    Calling = "calling"
    Retrying = "retrying"
    Paused = "paused"
    Completed = "completed"
    Stopped = "stopped"
    Exhausted = "exhausted"


class JobProgress(BaseModel):
    """Snapshot handed to progress callbacks.

    ``is_waiting``/``wait_reason`` flag degraded states such as a backoff
    while every credential cools down. ``active_model`` and
    ``active_credentials`` let operators watch rotation happen.
    """

    phase: JobPhase
    current_batch: int = Field(default=0, ge=0)
    total_batches: int = Field(default=0, ge=0)
    processed_items: int = Field(default=0, ge=0)
    total_items: int = Field(default=0, ge=0)
    is_waiting: bool = False
    wait_reason: str | None = None
    active_model: str | None = None
    active_credentials: int = Field(default=0, ge=0)
    elapsed_seconds: float = Field(default=0.0, ge=0.0)
    estimated_seconds_remaining: float | None = None

    model_config = ConfigDict(frozen=True)
