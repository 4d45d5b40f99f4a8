"""BatchOrchestrator - Main entry point for resilient multi-key batch processing."""

import asyncio
import inspect
import random
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from llmkeypool.domain.components.credential_manager import CredentialManager
from llmkeypool.domain.components.credential_pool import CredentialPool
from llmkeypool.domain.components.job_control import JobControl
from llmkeypool.domain.components.prompts import (
    build_prompt,
    parse_batch_response,
    parse_regeneration_response,
)
from llmkeypool.domain.components.quota_tracker import QuotaTracker
from llmkeypool.domain.components.rule_based import RuleBasedDecider
from llmkeypool.domain.interfaces.error_classifier import ErrorClassifier
from llmkeypool.domain.interfaces.llm_client import LLMClient
from llmkeypool.domain.interfaces.observability_manager import ObservabilityManager
from llmkeypool.domain.interfaces.quota_store import QuotaStore
from llmkeypool.domain.models.clock import Clock, utc_now
from llmkeypool.domain.models.credential import (
    Credential,
    CredentialQuotaStatus,
    HealthCheckResult,
)
from llmkeypool.domain.models.llm_response import LLMResponse, estimate_tokens
from llmkeypool.domain.models.progress import JobPhase, JobProgress
from llmkeypool.domain.models.quota_record import ModelQuotas
from llmkeypool.domain.models.system_error import (
    ErrorCategory,
    NetworkError,
    PoolExhaustedError,
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
from llmkeypool.infrastructure.adapters.gemini_client import GeminiClient
from llmkeypool.infrastructure.config.file_loader import ConfigurationFileLoader
from llmkeypool.infrastructure.config.settings import OrchestratorSettings
from llmkeypool.infrastructure.observability.logger import DefaultObservabilityManager
from llmkeypool.infrastructure.state_store.memory_store import InMemoryQuotaStore
from llmkeypool.infrastructure.state_store.redis_store import RedisQuotaStore
from llmkeypool.infrastructure.utils.secrets import EncryptionService

ProgressCallback = Callable[[JobProgress], Awaitable[None] | None]

# Backoff base per error category, in units of retry_backoff_seconds
BACKOFF_BASE: dict[ErrorCategory, float] = {
    ErrorCategory.Network: 1.0,
    ErrorCategory.RateLimit: 3.0,
    ErrorCategory.Quota: 3.0,
}
DEFAULT_BACKOFF_BASE = 2.0
DRAFT_NOT_UPDATED = "Draft not updated for this paper."


class _JobState:
    """Mutable bookkeeping for one running job."""

    def __init__(
        self,
        job_id: str,
        total_items: int,
        total_batches: int,
        callback: ProgressCallback | None,
        fallback_models: list[str],
    ) -> None:
        self.job_id = job_id
        self.total_items = total_items
        self.total_batches = total_batches
        self.callback = callback
        self.remaining_models = list(fallback_models)
        self.completed_batches = 0
        self.processed_items = 0
        self.fallback_batches = 0
        self.started = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started

    @property
    def estimated_remaining(self) -> float | None:
        if not self.processed_items:
            return None
        rate = self.elapsed / self.processed_items
        return max(0.0, rate * (self.total_items - self.processed_items))


class BatchOrchestrator:
    """Main entry point for library.

    BatchOrchestrator fans batches of work items out across a pool of API
    keys, tracks each key's quota windows, classifies failures, retries or
    rotates, and degrades to a configured fallback when the pool is
    exhausted.

    Example:
        ```python
        # Keys from LLMKEYPOOL_API_KEYS / GEMINI_API_KEYS
        orchestrator = BatchOrchestrator()

        # With explicit configuration
        orchestrator = BatchOrchestrator(config={"api_keys": "key-a,key-b", "batch_size": 10})

        async with orchestrator:
            results = await orchestrator.submit_batch_job(
                items,
                TaskParams(inclusion_prompt="Papers on LLM evaluation"),
                progress_callback=print,
            )
        ```
    """

    def __init__(
        self,
        llm_client: LLMClient | None = None,
        credential_pool: CredentialPool | None = None,
        quota_store: QuotaStore | None = None,
        observability_manager: ObservabilityManager | None = None,
        config: OrchestratorSettings | dict[str, Any] | None = None,
        error_classifier: ErrorClassifier | None = None,
        model_quotas: dict[str, ModelQuotas] | None = None,
        clock: Clock = utc_now,
        encryption_service: EncryptionService | None = None,
    ) -> None:
        """Initialize BatchOrchestrator with dependencies.

        Args:
            llm_client: Optional LLMClient. Defaults to GeminiClient.
            credential_pool: Optional CredentialPool. If not provided, built
                from the configured API keys.
            quota_store: Optional QuotaStore. Defaults to RedisQuotaStore when
                a Redis URL is configured, InMemoryQuotaStore otherwise.
            observability_manager: Optional ObservabilityManager. Defaults to
                DefaultObservabilityManager.
            config: Optional configuration. Can be:
                   - OrchestratorSettings instance
                   - Dictionary with configuration values
                   - None (loads from environment variables)
            error_classifier: Optional failure classifier.
            model_quotas: Optional per-model quota table. Defaults to the
                configuration file's table, then the built-in one.
            clock: Source of the current time.
            encryption_service: Optional EncryptionService for the pool.

        Raises:
            ValueError: If configuration is invalid.
            NoCredentialsError: If no API key is configured.
        """
        if config is None:
            self._config = OrchestratorSettings()
        elif isinstance(config, dict):
            self._config = OrchestratorSettings.from_dict(config)
        elif isinstance(config, OrchestratorSettings):
            self._config = config
        else:
            raise ValueError(
                f"Invalid config type: {type(config)}. Expected OrchestratorSettings, dict, or None"
            )

        if self._config.config_file:
            loader = ConfigurationFileLoader(self._config.config_file)
            self._config = loader.load_settings(
                self._config.model_dump(exclude_unset=True, exclude={"config_file"}, by_alias=False)
            )
            if model_quotas is None:
                model_quotas = loader.load_model_quotas()

        if observability_manager is None:
            self._observability_manager: ObservabilityManager = DefaultObservabilityManager(
                log_level=self._config.log_level,
                json_format=self._config.log_json,
            )
        else:
            self._observability_manager = observability_manager

        if quota_store is None:
            if self._config.redis_url:
                self._quota_store: QuotaStore = RedisQuotaStore(redis_url=self._config.redis_url)
            else:
                self._quota_store = InMemoryQuotaStore()
        else:
            self._quota_store = quota_store

        if credential_pool is None:
            self._pool = CredentialPool(self._config.api_key_list, encryption_service=encryption_service)
        else:
            self._pool = credential_pool

        self._llm_client = llm_client or GeminiClient()

        self._quota_tracker = QuotaTracker(
            quota_store=self._quota_store,
            observability_manager=self._observability_manager,
            model_quotas=model_quotas,
            reset_timezone=self._config.quota_reset_timezone,
            clock=clock,
        )

        self._credential_manager = CredentialManager(
            pool=self._pool,
            quota_tracker=self._quota_tracker,
            observability_manager=self._observability_manager,
            model=self._config.model,
            error_classifier=error_classifier,
            quota_store=self._quota_store,
            clock=clock,
            rate_limit_cooldown_seconds=self._config.rate_limit_cooldown_seconds,
            quota_cooldown_seconds=self._config.quota_cooldown_seconds,
            network_error_threshold=self._config.network_error_threshold,
            unknown_error_threshold=self._config.unknown_error_threshold,
        )

        self._control = JobControl()
        self._rule_based = RuleBasedDecider()

    async def __aenter__(self) -> "BatchOrchestrator":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Release external connections held by the quota store."""
        if isinstance(self._quota_store, RedisQuotaStore):
            await self._quota_store.close()

    @property
    def config(self) -> OrchestratorSettings:
        return self._config

    @property
    def credential_pool(self) -> CredentialPool:
        return self._pool

    @property
    def credential_manager(self) -> CredentialManager:
        return self._credential_manager

    @property
    def quota_tracker(self) -> QuotaTracker:
        return self._quota_tracker

    @property
    def quota_store(self) -> QuotaStore:
        return self._quota_store

    @property
    def observability_manager(self) -> ObservabilityManager:
        return self._observability_manager

    @property
    def is_paused(self) -> bool:
        return self._control.is_paused

    @property
    def is_stopped(self) -> bool:
        return self._control.is_stopped

    # Job control

    def pause(self) -> None:
        """Suspend the job before its next batch is issued. Idempotent."""
        self._control.pause()

    def resume(self) -> None:
        """Continue a paused job. Idempotent."""
        self._control.resume()

    def stop(self) -> None:
        """Stop issuing batches; in-flight batches settle. Idempotent."""
        self._control.stop()

    # Observability

    async def get_quota_status(self) -> list[CredentialQuotaStatus]:
        """Per-credential status and remaining quota for the active model."""
        await self._credential_manager.reclaim_expired()
        return await self._credential_manager.quota_status()

    async def run_health_check(self, test_model: str | None = None) -> list[HealthCheckResult]:
        """Check every credential with one minimal request."""
        return await self._credential_manager.run_health_check(
            self._llm_client,
            test_model=test_model,
            timeout_ms=self._config.request_timeout_ms,
        )

    async def reset_rate_limited(self) -> int:
        """Return every rate-limited credential to active; returns how many."""
        return len(await self._credential_manager.reset_rate_limited())

    # Jobs

    def _resolve_params(self, task_params: TaskParams | None) -> TaskParams:
        params = task_params or TaskParams()
        settings = self._config
        defaults = {
            "batch_size": settings.batch_size,
            "max_concurrent_batches": settings.max_concurrent_batches,
            "fallback_strategy": settings.fallback_strategy,
            "model": settings.model,
            "fallback_models": settings.fallback_model_list,
            "temperature": settings.temperature,
            "max_output_tokens": settings.max_output_tokens,
            "timeout_ms": settings.request_timeout_ms,
            "retry_attempts": settings.retry_attempts,
            "max_rotation_attempts": (
                settings.max_rotation_attempts
                if settings.max_rotation_attempts is not None
                else len(self._pool)
            ),
        }
        update = {name: value for name, value in defaults.items() if getattr(params, name) is None}
        return params.model_copy(update=update)

    async def _emit(self, event_type: str, payload: dict[str, Any], metadata: dict[str, Any] | None = None) -> None:
        try:
            await self._observability_manager.emit_event(
                event_type=event_type,
                payload=payload,
                metadata=metadata,
            )
        except Exception as e:
            # Log error but don't fail the job if event emission fails
            await self._observability_manager.log(
                level="WARNING",
                message=f"Failed to emit {event_type} event: {e}",
                context={"job_id": payload.get("job_id")},
            )

    async def _report(
        self,
        job: _JobState,
        phase: JobPhase,
        is_waiting: bool = False,
        wait_reason: str | None = None,
        current_batch: int | None = None,
    ) -> None:
        if job.callback is None:
            return
        progress = JobProgress(
            phase=phase,
            current_batch=job.completed_batches if current_batch is None else current_batch,
            total_batches=job.total_batches,
            processed_items=job.processed_items,
            total_items=job.total_items,
            is_waiting=is_waiting,
            wait_reason=wait_reason,
            active_model=self._credential_manager.model,
            active_credentials=self._pool.active_count(),
            elapsed_seconds=job.elapsed,
            estimated_seconds_remaining=job.estimated_remaining,
        )
        try:
            result = job.callback(progress)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            # A broken callback must not abort the job
            await self._observability_manager.log(
                level="WARNING",
                message=f"Progress callback failed: {e}",
                context={"job_id": job.job_id, "phase": phase.value},
            )

    async def _wait_if_paused(self, job: _JobState) -> bool:
        if self._control.is_paused:
            await self._report(job, JobPhase.Paused, is_waiting=True, wait_reason="Job paused")
        return await self._control.wait_if_paused()

    def _backoff_delay(self, attempt: int, category: ErrorCategory) -> float:
        scale = self._config.retry_backoff_seconds
        base = BACKOFF_BASE.get(category, DEFAULT_BACKOFF_BASE) * scale
        delay = base * (2 ** (attempt - 1)) + random.uniform(0, scale)
        return min(delay, self._config.max_backoff_seconds)

    async def _call_on_credential(
        self,
        credential: Credential,
        prompt: str,
        estimated: int,
        params: TaskParams,
        job: _JobState,
        batch_number: int,
    ) -> LLMResponse | None:
        """Call on one credential, retrying network failures in place.

        Returns None when the caller should rotate to another credential.
        """
        generation = GenerationParams(
            temperature=params.temperature,
            max_output_tokens=params.max_output_tokens,
            timeout_ms=params.timeout_ms,
        )
        attempt = 0
        while True:
            attempt += 1
            model = self._credential_manager.model
            await self._report(job, JobPhase.Calling, current_batch=batch_number)
            try:
                response = await asyncio.wait_for(
                    self._llm_client.call(self._pool.reveal_secret(credential), model, prompt, generation),
                    timeout=params.timeout_ms / 1000,
                )
            except TimeoutError:
                error: Exception = NetworkError(f"Call exceeded timeout of {params.timeout_ms} ms")
            except Exception as e:
                error = e
            else:
                tokens = response.tokens_used or estimate_tokens(prompt, response.text)
                await self._credential_manager.record_success(credential, tokens)
                return response.model_copy(
                    update={"credential_id": credential.id, "model": response.model or model}
                )

            category = await self._credential_manager.record_failure(credential, error)
            await self._observability_manager.log(
                level="WARNING",
                message="Batch call failed",
                context={
                    "job_id": job.job_id,
                    "batch": batch_number,
                    "label": credential.label,
                    "category": category.value,
                    "attempt": attempt,
                    "error": str(error)[:200],
                },
            )

            if (
                category.retries_in_place
                and attempt < params.retry_attempts
                and await self._credential_manager.has_capacity(credential, estimated)
            ):
                await self._report(
                    job,
                    JobPhase.Retrying,
                    is_waiting=True,
                    wait_reason=f"Retrying after network error on {credential.label}",
                    current_batch=batch_number,
                )
                await asyncio.sleep(self._backoff_delay(attempt, category))
                continue
            return None

    def _next_fallback_model(self, job: _JobState) -> str | None:
        while job.remaining_models:
            model = job.remaining_models.pop(0)
            if model != self._credential_manager.model:
                return model
        return None

    async def _call_with_rotation(
        self,
        prompt: str,
        params: TaskParams,
        job: _JobState,
        batch_number: int,
    ) -> LLMResponse | None:
        """Serve one prompt from the pool.

        Rotates across credentials, waits for rate-limited ones to recover,
        then tries the fallback models. Returns None when the pool is
        exhausted.
        """
        estimated = estimate_tokens(prompt)
        rotations = 0
        wait_attempts = 0
        tried: set[str] = set()
        observed_model = self._credential_manager.model

        while True:
            if self._control.is_stopped:
                return None
            await self._credential_manager.reclaim_expired()
            await self._report(job, JobPhase.AwaitingCredential, current_batch=batch_number)
            credential = await self._credential_manager.acquire_credential(
                estimated, wait=True, exclude=tried
            )

            if credential is None:
                if self._credential_manager.model != observed_model:
                    # Another batch already switched models; retry on the new one.
                    observed_model = self._credential_manager.model
                    tried.clear()
                    continue

                delay = self._credential_manager.seconds_until_recovery()
                if delay is not None and wait_attempts < self._config.credential_wait_attempts:
                    wait_attempts += 1
                    await self._report(
                        job,
                        JobPhase.AwaitingCredential,
                        is_waiting=True,
                        wait_reason=(
                            f"All credentials are rate limited; waiting {delay:.0f}s for a reset "
                            f"(attempt {wait_attempts}/{self._config.credential_wait_attempts})"
                        ),
                        current_batch=batch_number,
                    )
                    await asyncio.sleep(min(delay, self._config.credential_wait_seconds))
                    continue

                next_model = self._next_fallback_model(job)
                if next_model is not None:
                    await self._credential_manager.switch_model(next_model)
                    observed_model = next_model
                    wait_attempts = 0
                    rotations = 0
                    tried.clear()
                    continue
                return None

            try:
                response = await self._call_on_credential(
                    credential, prompt, estimated, params, job, batch_number
                )
            finally:
                await self._credential_manager.release_credential(credential)

            if response is not None:
                return response
            tried.add(credential.id)
            rotations += 1
            if rotations > params.max_rotation_attempts:
                await self._observability_manager.log(
                    level="WARNING",
                    message="Rotation limit reached for batch",
                    context={"job_id": job.job_id, "batch": batch_number, "rotations": rotations},
                )
                return None

    async def _apply_fallback(
        self,
        batch: Sequence[WorkItem],
        params: TaskParams,
        job: _JobState,
        batch_number: int,
    ) -> list[BatchResult]:
        job.fallback_batches += 1
        await self._emit(
            "batch_fallback",
            payload={
                "job_id": job.job_id,
                "batch": batch_number,
                "items": len(batch),
                "strategy": params.fallback_strategy.value,
            },
        )
        await self._report(
            job,
            JobPhase.Exhausted,
            is_waiting=False,
            wait_reason=f"No credential available; applying {params.fallback_strategy.value} fallback",
            current_batch=batch_number,
        )

        if params.fallback_strategy == FallbackStrategy.Fail:
            raise PoolExhaustedError(
                f"No credential could serve batch {batch_number} of job {job.job_id}",
                pending_items=len(batch),
            )
        if params.fallback_strategy == FallbackStrategy.Skip:
            return []
        return self._rule_based.decide_batch(batch, params)

    async def _process_batch(
        self,
        batch: Sequence[WorkItem],
        params: TaskParams,
        job: _JobState,
        batch_number: int,
    ) -> list[BatchResult]:
        prompt = build_prompt(batch, params)
        response = await self._call_with_rotation(prompt, params, job, batch_number)
        if response is None:
            if self._control.is_stopped:
                return []
            return await self._apply_fallback(batch, params, job, batch_number)

        results = parse_batch_response(response.text, batch, params, model=response.model)
        await self._emit(
            "batch_completed",
            payload={
                "job_id": job.job_id,
                "batch": batch_number,
                "items": len(batch),
                "errors": sum(1 for r in results if r.error),
                "model": response.model,
                "latency_ms": response.latency_ms,
            },
        )
        return results

    def _make_batches(self, items: Sequence[WorkItem], batch_size: int) -> list[list[WorkItem]]:
        return [list(items[i : i + batch_size]) for i in range(0, len(items), batch_size)]

    async def _start_job(
        self,
        items: Sequence[WorkItem],
        params: TaskParams,
        progress_callback: ProgressCallback | None,
    ) -> tuple[_JobState, list[list[WorkItem]]]:
        self._control.reset()
        batches = self._make_batches(items, params.batch_size)
        job = _JobState(
            job_id=str(uuid.uuid4()),
            total_items=len(items),
            total_batches=len(batches),
            callback=progress_callback,
            fallback_models=params.fallback_models or [],
        )
        if params.model != self._credential_manager.model:
            await self._credential_manager.switch_model(params.model)

        await self._emit(
            "job_started",
            payload={
                "job_id": job.job_id,
                "task_type": params.task_type.value,
                "items": len(items),
                "batches": len(batches),
                "model": self._credential_manager.model,
                "credentials": len(self._pool),
            },
        )
        await self._report(job, JobPhase.Queued)
        await self._report(job, JobPhase.Batching)
        return job, batches

    async def _finish_job(self, job: _JobState, results: list[BatchResult]) -> None:
        phase = JobPhase.Stopped if self._control.is_stopped else JobPhase.Completed
        await self._emit(
            "job_completed",
            payload={
                "job_id": job.job_id,
                "phase": phase.value,
                "results": len(results),
                "processed_items": job.processed_items,
                "fallback_batches": job.fallback_batches,
                "elapsed_seconds": round(job.elapsed, 3),
            },
        )
        await self._report(job, phase)

    async def submit_batch_job(
        self,
        items: Sequence[WorkItem],
        task_params: TaskParams | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> list[BatchResult]:
        """Process ``items`` in batches and return one result per resolved item.

        Order-independent tasks run up to ``max_concurrent_batches`` batches
        at once, each on its own credential. Document regeneration runs
        sequentially (see :meth:`regenerate_document`).

        Args:
            items: Work items; results are matched back by item id.
            task_params: Task parameters; unset fields come from settings.
            progress_callback: Optional sync or async callable receiving JobProgress.

        Returns:
            Results in item order. Items skipped by the ``skip`` fallback or
            not reached before ``stop()`` are absent.

        Raises:
            PoolExhaustedError: If the pool is exhausted under the ``fail`` strategy.
        """
        params = self._resolve_params(task_params)
        if params.task_type.order_dependent:
            regenerated = await self.regenerate_document(items, params, progress_callback)
            return regenerated.results

        job, batches = await self._start_job(items, params, progress_callback)
        semaphore = asyncio.Semaphore(params.max_concurrent_batches)
        results_by_id: dict[str, BatchResult] = {}

        async def run_batch(batch_number: int, batch: list[WorkItem]) -> None:
            async with semaphore:
                if not await self._wait_if_paused(job):
                    return
                await self._report(job, JobPhase.Dispatching, current_batch=batch_number)
                batch_results = await self._process_batch(batch, params, job, batch_number)
                for result in batch_results:
                    results_by_id[result.item_id] = result
                job.completed_batches += 1
                job.processed_items += len(batch)
                await self._report(job, JobPhase.Dispatching, current_batch=batch_number)

        tasks = [asyncio.create_task(run_batch(n, b)) for n, b in enumerate(batches, 1)]
        try:
            await asyncio.gather(*tasks)
        except PoolExhaustedError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self._report(job, JobPhase.Exhausted)
            raise

        results = [results_by_id[item.id] for item in items if item.id in results_by_id]
        await self._finish_job(job, results)
        return results

    async def regenerate_document(
        self,
        items: Sequence[WorkItem],
        task_params: TaskParams | None = None,
        progress_callback: ProgressCallback | None = None,
        initial_document: str | None = None,
    ) -> RegenerationResult:
        """Fold ``items`` into a document one batch at a time.

        Batches run strictly in order; each prompt carries the draft produced
        by the previous batch. A batch that cannot be served leaves the draft
        unchanged.

        Raises:
            PoolExhaustedError: If the pool is exhausted under the ``fail`` strategy.
        """
        params = self._resolve_params(task_params)
        if params.task_type != TaskType.DocumentRegeneration:
            params = params.model_copy(update={"task_type": TaskType.DocumentRegeneration})
        draft = params.initial_document if initial_document is None else initial_document

        job, batches = await self._start_job(items, params, progress_callback)
        results: list[BatchResult] = []

        for batch_number, batch in enumerate(batches, 1):
            if not await self._wait_if_paused(job):
                break
            await self._report(job, JobPhase.Dispatching, current_batch=batch_number)

            prompt = build_prompt(batch, params, draft=draft)
            response = await self._call_with_rotation(prompt, params, job, batch_number)
            if response is None:
                if self._control.is_stopped:
                    break
                fallback = await self._apply_fallback(batch, params, job, batch_number)
                results.extend(
                    r.model_copy(update={"reasoning": f"{DRAFT_NOT_UPDATED} {r.reasoning}"})
                    for r in fallback
                )
            else:
                draft = parse_regeneration_response(response.text) or draft
                results.extend(
                    BatchResult(
                        item_id=item.id,
                        included=True,
                        reasoning="Integrated into the draft",
                        model=response.model,
                    )
                    for item in batch
                )
                await self._emit(
                    "batch_completed",
                    payload={
                        "job_id": job.job_id,
                        "batch": batch_number,
                        "items": len(batch),
                        "model": response.model,
                        "document_chars": len(draft),
                    },
                )

            job.completed_batches += 1
            job.processed_items += len(batch)
            await self._report(job, JobPhase.Dispatching, current_batch=batch_number)

        await self._finish_job(job, results)
        return RegenerationResult(document=draft, results=results)
