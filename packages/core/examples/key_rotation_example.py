"""Example: Key Rotation During a Batch Filtering Job

This example runs a literature-review filtering job across a pool of three
API keys against a simulated Gemini client, so it needs no network access.

Scenario:
- 3 keys in the pool; Key 2 starts answering 429 after its first call
- 20 papers, batches of 4, 2 batches in flight at a time
- Goal: watch the orchestrator rotate away from the rate-limited key and
  finish the job without losing any paper
"""

import asyncio
import json
import os
import re

from cryptography.fernet import Fernet

# Set encryption key for in-memory key encryption (required in production)
os.environ.setdefault("LLMKEYPOOL_ENCRYPTION_KEY", Fernet.generate_key().decode())

from llmkeypool import BatchOrchestrator, JobProgress, TaskParams, WorkItem
from llmkeypool.domain.interfaces.llm_client import LLMClient
from llmkeypool.domain.interfaces.observability_manager import (
    ObservabilityManager,
)
from llmkeypool.domain.models.llm_response import LLMResponse
from llmkeypool.domain.models.system_error import RateLimitError
from llmkeypool.domain.models.work_item import GenerationParams

KEYS = [
    "AIzaSy-example-key-one-000000000001",
    "AIzaSy-example-key-two-000000000002",
    "AIzaSy-example-key-three-00000000003",
]
_ITEM_ID = re.compile(r"^ID: (.+)$", re.MULTILINE)


class SimpleObservabilityManager(ObservabilityManager):
    """Prints state transitions and model switches, drops everything else."""

    async def emit_event(
        self,
        event_type: str,
        payload: dict,
        metadata: dict | None = None,
    ) -> None:
        if event_type == "state_transition":
            print(
                f"    [state] {payload['label']}: {payload['from_state']} -> "
                f"{payload['to_state']} ({payload['reason']})"
            )
        elif event_type == "batch_fallback":
            print(f"    [fallback] batch {payload['batch']} via {payload['strategy']}")

    async def log(
        self,
        level: str,
        message: str,
        context: dict | None = None,
    ) -> None:
        """Log a message (no-op for this example)."""
        pass


class SimulatedGeminiClient(LLMClient):
    """Answers every paper as included; one key is rate limited after one call."""

    def __init__(self, throttled_secret: str) -> None:
        self.throttled_secret = throttled_secret
        self.calls_per_secret: dict[str, int] = {}

    async def call(
        self,
        credential_secret: str,
        model: str,
        prompt: str,
        params: GenerationParams,
    ) -> LLMResponse:
        count = self.calls_per_secret.get(credential_secret, 0) + 1
        self.calls_per_secret[credential_secret] = count
        await asyncio.sleep(0.05)

        if credential_secret == self.throttled_secret and count > 1:
            raise RateLimitError("429 Resource has been exhausted", status_code=429)

        answers = [
            {
                "id": item_id,
                "meets_inclusion": True,
                "meets_exclusion": False,
                "reasoning": "Evaluates LLMs on a benchmark.",
                "confidence": 0.8,
            }
            for item_id in _ITEM_ID.findall(prompt)
        ]
        return LLMResponse(text=json.dumps(answers), tokens_used=250, model=model)


def make_papers(count: int) -> list[WorkItem]:
    return [
        WorkItem(
            id=f"paper-{i:02d}",
            payload={
                "title": f"Benchmarking language models, part {i}",
                "abstract": "We evaluate large language models on reasoning benchmarks.",
                "authors": ["Doe, J.", "Roe, R."],
                "year": 2020 + i % 5,
            },
        )
        for i in range(1, count + 1)
    ]


def print_progress(progress: JobProgress) -> None:
    if progress.is_waiting:
        print(f"  ... {progress.phase.value}: {progress.wait_reason}")
    elif progress.phase.value in ("queued", "completed", "stopped"):
        print(
            f"  [{progress.phase.value}] {progress.processed_items}/{progress.total_items} papers, "
            f"{progress.active_credentials} active keys on {progress.active_model}"
        )


async def demonstrate_key_rotation() -> None:
    """Run one filtering job and show per-key status afterwards."""
    print("=" * 70)
    print("Key Rotation Example: Filtering 20 Papers Across 3 Gemini Keys")
    print("=" * 70)

    client = SimulatedGeminiClient(throttled_secret=KEYS[1])
    orchestrator = BatchOrchestrator(
        llm_client=client,
        observability_manager=SimpleObservabilityManager(),
        config={
            "api_keys": KEYS,
            "batch_size": 4,
            "max_concurrent_batches": 2,
            "retry_backoff_seconds": 0.1,
        },
    )

    print("\n[Step 1] Running the job...")
    async with orchestrator:
        results = await orchestrator.submit_batch_job(
            make_papers(20),
            TaskParams(
                inclusion_prompt="Papers that evaluate large language models.",
                inclusion_keywords=["language model"],
            ),
            progress_callback=print_progress,
        )

        print("\n[Step 2] Results")
        print("-" * 70)
        included = sum(1 for r in results if r.included)
        from_llm = sum(1 for r in results if r.llm_derived)
        print(f"  {len(results)} results, {included} included, {from_llm} decided by the model")

        print("\n[Step 3] Quota status per key")
        print("-" * 70)
        for status in await orchestrator.get_quota_status():
            print(
                f"  {status.label} ({status.masked}): {status.status.value:<13} "
                f"{status.quota_details} | {status.request_count} requests"
            )

    print("\n" + "=" * 70)
    print("[SUCCESS] Key Rotation Example Complete!")
    print("=" * 70)
    print("\nKey Takeaways:")
    print("  1. A rate-limited key is taken out of rotation with a cooldown")
    print("  2. Its batch is retried on another key without losing papers")
    print("  3. Concurrent batches never share a key")


if __name__ == "__main__":
    asyncio.run(demonstrate_key_rotation())
