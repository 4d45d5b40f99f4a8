"""CredentialManager component for credential selection and status lifecycle."""

import asyncio
from collections.abc import Collection
from datetime import datetime, timedelta
from typing import Any

from llmkeypool.domain.components.credential_pool import CredentialPool
from llmkeypool.domain.components.error_classifier import GeminiErrorClassifier
from llmkeypool.domain.components.quota_tracker import QuotaTracker
from llmkeypool.domain.interfaces.error_classifier import ErrorClassifier
from llmkeypool.domain.interfaces.llm_client import LLMClient
from llmkeypool.domain.interfaces.observability_manager import (
    ObservabilityManager,
)
from llmkeypool.domain.interfaces.quota_store import QuotaStore
from llmkeypool.domain.models.clock import Clock, utc_now
from llmkeypool.domain.models.credential import (
    TERMINAL_ON_SUCCESS,
    UNSELECTABLE,
    Credential,
    CredentialQuotaStatus,
    CredentialStatus,
    HealthCheck,
    HealthCheckResult,
)
from llmkeypool.domain.models.llm_response import estimate_tokens
from llmkeypool.domain.models.quota_record import QuotaRecord, WindowKind
from llmkeypool.domain.models.state_transition import StateTransition
from llmkeypool.domain.models.system_error import ErrorCategory
from llmkeypool.domain.models.work_item import GenerationParams

HEALTH_CHECK_PROMPT = "Reply with the single word OK."


class InvalidStateTransitionError(Exception):
    """Raised when an invalid status transition is attempted."""

    pass


class CredentialManager:
    """Selects credentials for calls and owns every credential status change.

    Selection prefers the credential with the most quota headroom for the
    active model. A credential is never handed to two in-flight calls at
    once. All rotation state lives on the instance, so independent managers
    never interfere.
    """

    # Valid status transitions according to the state machine
    _VALID_TRANSITIONS: dict[CredentialStatus, set[CredentialStatus]] = {
        CredentialStatus.Active: {
            CredentialStatus.RateLimited,
            CredentialStatus.QuotaExceeded,
            CredentialStatus.Invalid,
            CredentialStatus.Error,
        },
        CredentialStatus.RateLimited: {
            CredentialStatus.Active,
            CredentialStatus.QuotaExceeded,
            CredentialStatus.Invalid,
            CredentialStatus.Error,
        },
        CredentialStatus.QuotaExceeded: {
            CredentialStatus.Active,
            CredentialStatus.Invalid,
            CredentialStatus.Error,
        },
        CredentialStatus.Error: {
            CredentialStatus.Active,
            CredentialStatus.RateLimited,
            CredentialStatus.QuotaExceeded,
            CredentialStatus.Invalid,
        },
        CredentialStatus.Invalid: set(),  # Terminal: needs a new key
    }

    def __init__(
        self,
        pool: CredentialPool,
        quota_tracker: QuotaTracker,
        observability_manager: ObservabilityManager,
        model: str,
        error_classifier: ErrorClassifier | None = None,
        quota_store: QuotaStore | None = None,
        clock: Clock = utc_now,
        rate_limit_cooldown_seconds: int = 60,
        quota_cooldown_seconds: int = 3600,
        network_error_threshold: int = 5,
        unknown_error_threshold: int = 3,
    ) -> None:
        """Initialize CredentialManager with dependencies.

        Args:
            pool: Credentials to manage.
            quota_tracker: QuotaTracker holding per-model usage.
            observability_manager: ObservabilityManager for events and logging.
            model: Model currently in use.
            error_classifier: Failure classifier. Defaults to GeminiErrorClassifier.
            quota_store: Optional store receiving the transition audit trail.
            clock: Source of the current time.
            rate_limit_cooldown_seconds: Cooldown after a rate limit.
            quota_cooldown_seconds: Cooldown after an exhausted quota.
            network_error_threshold: Consecutive network errors before ``error``.
            unknown_error_threshold: Consecutive unknown errors before ``error``.
        """
        self._pool = pool
        self._tracker = quota_tracker
        self._observability = observability_manager
        self._model = model
        self._classifier = error_classifier or GeminiErrorClassifier()
        self._store = quota_store
        self._clock = clock
        self._rate_limit_cooldown = rate_limit_cooldown_seconds
        self._quota_cooldown = quota_cooldown_seconds
        self._network_threshold = network_error_threshold
        self._unknown_threshold = unknown_error_threshold

        self._in_flight: set[str] = set()
        self._condition = asyncio.Condition()
        self._transitions: list[StateTransition] = []

    @property
    def model(self) -> str:
        return self._model

    @property
    def pool(self) -> CredentialPool:
        return self._pool

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def state_transitions(self) -> list[StateTransition]:
        """Audit trail of every status change made by this manager."""
        return list(self._transitions)

    def _now(self) -> datetime:
        return self._clock()

    async def _emit(self, event_type: str, payload: dict[str, Any], metadata: dict[str, Any] | None = None) -> None:
        try:
            await self._observability.emit_event(
                event_type=event_type,
                payload=payload,
                metadata=metadata,
            )
        except Exception as e:
            # Log error but don't fail the operation if event emission fails
            await self._observability.log(
                level="WARNING",
                message=f"Failed to emit {event_type} event: {e}",
                context={"label": payload.get("label")},
            )

    def _is_valid_transition(self, from_status: CredentialStatus, to_status: CredentialStatus) -> bool:
        if from_status == to_status:
            return True
        return to_status in self._VALID_TRANSITIONS.get(from_status, set())

    async def update_status(
        self,
        credential: Credential,
        new_status: CredentialStatus,
        reason: str,
        reset_at: datetime | None = None,
        context: dict[str, Any] | None = None,
    ) -> StateTransition:
        """Change a credential's status with validation and audit trail.

        Args:
            credential: Credential to update.
            new_status: Desired status.
            reason: Trigger of the change (error category, "reclaim", ...).
            reset_at: When a cooling-down credential may be retried.
            context: Extra context recorded with the transition.

        Returns:
            The recorded StateTransition.

        Raises:
            InvalidStateTransitionError: If the transition table forbids the change.
        """
        from_status = credential.status
        if not self._is_valid_transition(from_status, new_status):
            raise InvalidStateTransitionError(
                f"Invalid status transition from {from_status.value} to {new_status.value}"
            )

        now = self._now()
        if new_status in (CredentialStatus.RateLimited, CredentialStatus.QuotaExceeded):
            credential.rate_limit_reset_at = reset_at
        else:
            credential.rate_limit_reset_at = None

        transition = StateTransition(
            entity_id=credential.id,
            label=credential.label,
            from_state=from_status.value,
            to_state=new_status.value,
            trigger=reason,
            transition_timestamp=now,
            context={
                **(context or {}),
                "rate_limit_reset_at": reset_at.isoformat() if reset_at else None,
            },
        )
        if from_status == new_status:
            return transition

        credential.status = new_status
        credential.status_updated_at = now
        self._transitions.append(transition)

        if self._store is not None:
            await self._store.save_state_transition(transition)
        record = self._tracker.get_cached(credential.secret_hash, self._model)
        if record is not None:
            await self._tracker.set_status(record, new_status.value)

        await self._emit(
            "state_transition",
            payload={
                "label": credential.label,
                "masked": credential.masked,
                "from_state": from_status.value,
                "to_state": new_status.value,
                "reason": reason,
                "rate_limit_reset_at": reset_at.isoformat() if reset_at else None,
            },
            metadata={"transition_timestamp": now.isoformat()},
        )
        return transition

    def _is_selectable_by_state(self, credential: Credential) -> bool:
        # Cooling-down credentials become selectable only once reclaimed.
        if credential.status in UNSELECTABLE or credential.is_cooling_down:
            return False
        return credential.health.is_healthy

    async def _record_for(self, credential: Credential, model: str | None = None) -> QuotaRecord:
        return await self._tracker.initialize(credential, model or self._model)

    async def _eligible(
        self,
        estimated_cost: int,
        include_in_flight: bool = False,
        exclude: Collection[str] = (),
    ) -> list[Credential]:
        ranked: list[tuple[bool, float, int, Credential]] = []
        for credential in self._pool:
            if not self._is_selectable_by_state(credential):
                continue
            if not include_in_flight and credential.id in self._in_flight:
                continue
            record = await self._record_for(credential)
            if not await self._tracker.has_headroom(record, estimated_cost):
                continue
            ranked.append(
                (
                    credential.id in exclude,
                    self._tracker.remaining_percent(record),
                    credential.error_count,
                    credential,
                )
            )

        # Excluded credentials rank last and serve only when nothing else qualifies.
        ranked.sort(key=lambda entry: (entry[0], -entry[1], entry[2]))
        return [entry[3] for entry in ranked]

    async def select_credential(self, estimated_cost: int) -> Credential | None:
        """Pick the idle credential with the most headroom, or None."""
        eligible = await self._eligible(estimated_cost)
        return eligible[0] if eligible else None

    async def select_all_eligible(self, estimated_cost: int) -> list[Credential]:
        """All idle eligible credentials, most headroom first."""
        return await self._eligible(estimated_cost)

    async def acquire_credential(
        self,
        estimated_cost: int,
        wait: bool = True,
        exclude: Collection[str] = (),
    ) -> Credential | None:
        """Select a credential and mark it in flight.

        Credential ids in ``exclude`` (those a batch already failed on) are
        handed out only when no other idle credential qualifies. If no idle
        credential qualifies but a busy one would, waits for a release when
        ``wait`` is True. Returns None without blocking when no credential
        could qualify at all.
        """
        async with self._condition:
            while True:
                eligible = await self._eligible(estimated_cost, exclude=exclude)
                if eligible:
                    credential = eligible[0]
                    self._in_flight.add(credential.id)
                    await self._observability.log(
                        level="DEBUG",
                        message="credential_acquired",
                        context={
                            "label": credential.label,
                            "masked": credential.masked,
                            "model": self._model,
                            "in_flight": len(self._in_flight),
                        },
                    )
                    return credential

                if not wait or not self._in_flight:
                    return None
                if not await self._eligible(estimated_cost, include_in_flight=True):
                    return None
                await self._condition.wait()

    async def release_credential(self, credential: Credential) -> None:
        """Return a credential to the idle set and wake any waiters."""
        async with self._condition:
            self._in_flight.discard(credential.id)
            self._condition.notify_all()

    async def record_success(self, credential: Credential, tokens_used: int | None = None) -> None:
        """Book a successful call.

        Clears the consecutive error count and, when ``tokens_used`` is
        given, records the usage against the active model's quota.
        """
        credential.clear_errors()
        credential.request_count += 1
        credential.last_used_at = self._now()

        if tokens_used is not None:
            record = await self._record_for(credential)
            await self._tracker.record_usage(record, tokens_used)

        if credential.status not in TERMINAL_ON_SUCCESS and credential.status != CredentialStatus.Active:
            await self.update_status(credential, CredentialStatus.Active, "success")

    async def record_failure(self, credential: Credential, error: BaseException) -> ErrorCategory:
        """Classify a failed call and apply the resulting status change.

        Returns:
            The error category, so the caller can choose retry or rotation.
        """
        category = self._classifier.classify(error)
        now = self._now()
        streak = credential.note_failure(category.value)
        credential.last_used_at = now

        new_status: CredentialStatus | None = None
        reset_at: datetime | None = None
        if category == ErrorCategory.Auth:
            new_status = CredentialStatus.Invalid
        elif category == ErrorCategory.RateLimit:
            retry_after = getattr(error, "retry_after", None)
            seconds = retry_after if isinstance(retry_after, int) and retry_after > 0 else self._rate_limit_cooldown
            new_status = CredentialStatus.RateLimited
            reset_at = now + timedelta(seconds=seconds)
        elif category == ErrorCategory.Quota:
            new_status = CredentialStatus.QuotaExceeded
            reset_at = now + timedelta(seconds=self._quota_cooldown)
        elif category == ErrorCategory.Network:
            if streak >= self._network_threshold:
                new_status = CredentialStatus.Error
        elif streak >= self._unknown_threshold:
            new_status = CredentialStatus.Error

        if new_status is not None and new_status != credential.status:
            if self._is_valid_transition(credential.status, new_status):
                await self.update_status(
                    credential,
                    new_status,
                    category.value,
                    reset_at=reset_at,
                    context={"error": str(error)[:200], "error_count": credential.error_count},
                )
            else:
                await self._observability.log(
                    level="DEBUG",
                    message="Ignoring status change not allowed by transition table",
                    context={
                        "label": credential.label,
                        "from_state": credential.status.value,
                        "to_state": new_status.value,
                    },
                )
        return category

    async def has_capacity(self, credential: Credential, estimated_cost: int) -> bool:
        """Whether an in-place retry on ``credential`` is still worthwhile."""
        if not self._is_selectable_by_state(credential):
            return False
        record = await self._record_for(credential)
        return await self._tracker.has_headroom(record, estimated_cost)

    async def reclaim_expired(self) -> list[StateTransition]:
        """Return cooled-down credentials to ``active``.

        A credential is reclaimed only when its cooldown elapsed and, if a
        quota record exists for the active model, its minute window has
        room again; ``quota_exceeded`` credentials additionally need room
        in the daily window. Calling this repeatedly changes nothing more.
        """
        now = self._now()
        recovered: list[StateTransition] = []
        for credential in self._pool:
            if not credential.is_cooling_down:
                continue
            if credential.rate_limit_reset_at is not None and now < credential.rate_limit_reset_at:
                continue

            record = self._tracker.get_cached(credential.secret_hash, self._model)
            if record is not None:
                if self._tracker.window_exhausted(record, WindowKind.RequestsPerMinute):
                    continue
                if credential.status == CredentialStatus.QuotaExceeded and self._tracker.window_exhausted(
                    record, WindowKind.RequestsPerDay
                ):
                    continue

            credential.clear_errors()
            recovered.append(
                await self.update_status(
                    credential,
                    CredentialStatus.Active,
                    "reclaim",
                    context={"recovered_at": now.isoformat()},
                )
            )
        return recovered

    def seconds_until_recovery(self) -> float | None:
        """Shortest wait until a currently blocked credential may serve again.

        Considers rate-limited credentials and active credentials whose
        minute windows are full. Returns None when nothing will recover
        by itself (only invalid, errored or quota-exhausted credentials).
        """
        now = self._now()
        waits: list[float] = []
        for credential in self._pool:
            if credential.status == CredentialStatus.RateLimited:
                reset_at = credential.rate_limit_reset_at or now
                waits.append(max(0.0, (reset_at - now).total_seconds()))
            elif credential.status == CredentialStatus.Active and credential.health.is_healthy:
                record = self._tracker.get_cached(credential.secret_hash, self._model)
                if record is None or self._tracker.window_exhausted(record, WindowKind.RequestsPerDay):
                    continue
                reset_at = min(record.rpm.reset_at, record.tpm.reset_at)
                waits.append(max(0.0, (reset_at - now).total_seconds()))
        return min(waits) if waits else None

    async def switch_model(self, model: str) -> list[StateTransition]:
        """Make ``model`` the active model.

        Quota is tracked per model, so rate-limited credentials get a fresh
        start on the new model.
        """
        previous = self._model
        self._model = model
        transitions = await self.reset_rate_limited(reason="model_switched")
        await self._emit(
            "model_switched",
            payload={
                "from_model": previous,
                "to_model": model,
                "reset_credentials": len(transitions),
            },
        )
        return transitions

    async def reset_rate_limited(self, reason: str = "manual_reset") -> list[StateTransition]:
        """Return every rate-limited credential to ``active``."""
        transitions = []
        for credential in self._pool:
            if credential.status == CredentialStatus.RateLimited:
                credential.clear_errors()
                transitions.append(await self.update_status(credential, CredentialStatus.Active, reason))
        return transitions

    async def run_health_check(
        self,
        llm_client: LLMClient,
        test_model: str | None = None,
        timeout_ms: int = 30000,
    ) -> list[HealthCheckResult]:
        """Check every credential with one minimal request.

        Success marks the credential healthy and brings an ``error``
        credential back to ``active``. A rate limit counts as healthy but
        busy. An auth failure is permanent and makes the credential
        ``invalid``. Anything else leaves it unhealthy until the next check.
        """
        model = test_model or self._model
        params = GenerationParams(temperature=0.0, max_output_tokens=8, timeout_ms=timeout_ms)
        results: list[HealthCheckResult] = []

        for credential in self._pool:
            now = self._now()
            if credential.status == CredentialStatus.Invalid:
                credential.health = HealthCheck(
                    last_checked_at=now,
                    is_healthy=False,
                    last_error=credential.health.last_error or "Credential is invalid",
                    permanent=True,
                )
                results.append(self._health_result(credential, busy=False))
                continue

            busy = False
            try:
                response = await asyncio.wait_for(
                    llm_client.call(self._pool.reveal_secret(credential), model, HEALTH_CHECK_PROMPT, params),
                    timeout=timeout_ms / 1000,
                )
            except Exception as e:
                category = self._classifier.classify(e)
                if category == ErrorCategory.RateLimit:
                    busy = True
                    credential.health = HealthCheck(last_checked_at=now, is_healthy=True, last_error=str(e))
                elif category == ErrorCategory.Auth:
                    credential.health = HealthCheck(
                        last_checked_at=now, is_healthy=False, last_error=str(e), permanent=True
                    )
                    await self.update_status(
                        credential, CredentialStatus.Invalid, "health_check", context={"error": str(e)[:200]}
                    )
                else:
                    credential.health = HealthCheck(last_checked_at=now, is_healthy=False, last_error=str(e))
            else:
                credential.health = HealthCheck(last_checked_at=now, is_healthy=True)
                record = await self._record_for(credential, model)
                tokens = response.tokens_used or estimate_tokens(HEALTH_CHECK_PROMPT, response.text)
                await self._tracker.record_usage(record, tokens)
                if credential.status == CredentialStatus.Error:
                    credential.clear_errors()
                    await self.update_status(credential, CredentialStatus.Active, "health_check")

            result = self._health_result(credential, busy=busy)
            results.append(result)
            await self._emit(
                "health_check",
                payload={
                    "label": credential.label,
                    "masked": credential.masked,
                    "model": model,
                    "is_healthy": result.is_healthy,
                    "busy": busy,
                    "permanent": result.permanent,
                },
            )
        return results

    def _health_result(self, credential: Credential, busy: bool) -> HealthCheckResult:
        return HealthCheckResult(
            label=credential.label,
            masked=credential.masked,
            status=credential.status,
            is_healthy=credential.health.is_healthy,
            permanent=credential.health.permanent,
            busy=busy,
            error=credential.health.last_error,
            checked_at=credential.health.last_checked_at or self._now(),
        )

    async def quota_status(self) -> list[CredentialQuotaStatus]:
        """Per-credential observability view for the active model."""
        statuses = []
        for credential in self._pool:
            record = await self._record_for(credential)
            statuses.append(
                CredentialQuotaStatus(
                    label=credential.label,
                    masked=credential.masked,
                    status=credential.status,
                    quota_remaining_percent=self._tracker.remaining_percent(record),
                    quota_details=self._tracker.format_status(record),
                    error_count=credential.error_count,
                    request_count=credential.request_count,
                    is_healthy=credential.health.is_healthy,
                    rate_limit_reset_at=credential.rate_limit_reset_at,
                )
            )
        return statuses
