"""Tests for CredentialManager component."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from llmkeypool.domain.components.credential_manager import (
    CredentialManager,
    InvalidStateTransitionError,
)
from llmkeypool.domain.components.credential_pool import CredentialPool
from llmkeypool.domain.components.quota_tracker import QuotaTracker
from llmkeypool.domain.interfaces.llm_client import LLMClient
from llmkeypool.domain.interfaces.observability_manager import ObservabilityManager
from llmkeypool.domain.models.credential import CredentialStatus
from llmkeypool.domain.models.llm_response import LLMResponse
from llmkeypool.domain.models.quota_record import ModelQuotas
from llmkeypool.domain.models.system_error import (
    AuthError,
    ErrorCategory,
    NetworkError,
    QuotaExceededError,
    RateLimitError,
)
from llmkeypool.domain.models.work_item import GenerationParams
from llmkeypool.infrastructure.state_store.memory_store import InMemoryQuotaStore

MODEL = "test-model"
KEYS = [
    "AIzaSy-manager-test-key-1111111111",
    "AIzaSy-manager-test-key-2222222222",
    "AIzaSy-manager-test-key-3333333333",
]


class FakeClock:
    """Controllable clock."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class MockObservabilityManager(ObservabilityManager):
    """Mock ObservabilityManager for testing."""

    def __init__(self) -> None:
        self.events: list[dict] = []
        self.logs: list[dict] = []
        self.emit_error: Exception | None = None

    async def emit_event(self, event_type: str, payload: dict, metadata: dict | None = None) -> None:
        if self.emit_error:
            raise self.emit_error
        self.events.append({"event_type": event_type, "payload": payload, "metadata": metadata or {}})

    async def log(self, level: str, message: str, context: dict | None = None) -> None:
        self.logs.append({"level": level, "message": message, "context": context or {}})


class MockLLMClient(LLMClient):
    """Mock LLMClient answering per secret."""

    def __init__(self, failures: dict[str, Exception] | None = None) -> None:
        self.failures = failures or {}
        self.calls: list[tuple[str, str]] = []

    async def call(self, credential_secret: str, model: str, prompt: str, params: GenerationParams) -> LLMResponse:
        self.calls.append((credential_secret, model))
        if credential_secret in self.failures:
            raise self.failures[credential_secret]
        return LLMResponse(text="OK", tokens_used=5, model=model)


class TestCredentialManagerBase:
    """Shared setup for CredentialManager tests."""

    def setup_method(self) -> None:
        # Noon Pacific, far from the daily boundary
        self.clock = FakeClock(datetime(2025, 6, 10, 19, 0, tzinfo=UTC))
        self.store = InMemoryQuotaStore()
        self.observability = MockObservabilityManager()
        self.pool = CredentialPool(KEYS)
        self.tracker = QuotaTracker(
            quota_store=self.store,
            observability_manager=self.observability,
            model_quotas={
                MODEL: ModelQuotas(rpm=10, tpm=100_000, rpd=3),
                "other-model": ModelQuotas(rpm=10, tpm=100_000, rpd=100),
            },
            clock=self.clock,
        )
        self.manager = CredentialManager(
            pool=self.pool,
            quota_tracker=self.tracker,
            observability_manager=self.observability,
            model=MODEL,
            quota_store=self.store,
            clock=self.clock,
        )
        self.key1, self.key2, self.key3 = list(self.pool)

    async def rate_limit(self, credential, seconds: int = 60) -> None:
        await self.manager.update_status(
            credential,
            CredentialStatus.RateLimited,
            "rate_limit",
            reset_at=self.clock() + timedelta(seconds=seconds),
        )


class TestStatusTransitions(TestCredentialManagerBase):
    """Tests for update_status and the transition table."""

    @pytest.mark.asyncio
    async def test_valid_transition_is_recorded(self) -> None:
        transition = await self.manager.update_status(self.key1, CredentialStatus.Error, "unknown")

        assert self.key1.status == CredentialStatus.Error
        assert transition.from_state == "active"
        assert transition.to_state == "error"
        assert transition.trigger == "unknown"
        assert self.manager.state_transitions == [transition]
        stored = await self.store.list_state_transitions(self.key1.id)
        assert [t.to_state for t in stored] == ["error"]
        assert any(e["event_type"] == "state_transition" for e in self.observability.events)

    @pytest.mark.asyncio
    async def test_invalid_is_terminal(self) -> None:
        await self.manager.update_status(self.key1, CredentialStatus.Invalid, "auth")

        with pytest.raises(InvalidStateTransitionError):
            await self.manager.update_status(self.key1, CredentialStatus.Active, "manual")
        assert self.key1.status == CredentialStatus.Invalid

    @pytest.mark.asyncio
    async def test_quota_exceeded_cannot_drop_to_rate_limited(self) -> None:
        await self.manager.update_status(self.key1, CredentialStatus.QuotaExceeded, "quota")

        with pytest.raises(InvalidStateTransitionError):
            await self.manager.update_status(self.key1, CredentialStatus.RateLimited, "rate_limit")

    @pytest.mark.asyncio
    async def test_same_status_is_noop(self) -> None:
        await self.manager.update_status(self.key1, CredentialStatus.Active, "noop")

        assert self.manager.state_transitions == []

    @pytest.mark.asyncio
    async def test_reset_time_kept_only_while_cooling_down(self) -> None:
        await self.rate_limit(self.key1)
        assert self.key1.rate_limit_reset_at == self.clock() + timedelta(seconds=60)

        await self.manager.update_status(self.key1, CredentialStatus.Active, "reclaim")

        assert self.key1.rate_limit_reset_at is None

    @pytest.mark.asyncio
    async def test_event_failure_does_not_break_transition(self) -> None:
        self.observability.emit_error = RuntimeError("sink down")

        await self.manager.update_status(self.key1, CredentialStatus.Error, "unknown")

        assert self.key1.status == CredentialStatus.Error
        assert any(log["level"] == "WARNING" for log in self.observability.logs)

    @pytest.mark.asyncio
    async def test_status_mirrored_to_quota_record(self) -> None:
        await self.manager.select_credential(10)

        await self.rate_limit(self.key1)

        stored = await self.store.get_quota_record(self.key1.secret_hash, MODEL)
        assert stored.status == "rate_limited"


class TestSelection(TestCredentialManagerBase):
    """Tests for credential selection and acquisition."""

    @pytest.mark.asyncio
    async def test_selects_only_active_credential(self) -> None:
        await self.rate_limit(self.key1)
        await self.rate_limit(self.key3)

        selected = await self.manager.select_credential(10)

        assert selected is self.key2

    @pytest.mark.asyncio
    async def test_prefers_most_headroom(self) -> None:
        await self.manager.record_success(self.key1, tokens_used=10)

        selected = await self.manager.select_credential(10)

        assert selected is self.key2

    @pytest.mark.asyncio
    async def test_skips_invalid_error_and_unhealthy(self) -> None:
        await self.manager.update_status(self.key1, CredentialStatus.Invalid, "auth")
        await self.manager.update_status(self.key2, CredentialStatus.Error, "unknown")
        self.key3.health.is_healthy = False

        assert await self.manager.select_credential(10) is None

    @pytest.mark.asyncio
    async def test_skips_credentials_without_headroom(self) -> None:
        for _ in range(3):
            await self.manager.record_success(self.key1, tokens_used=1)

        eligible = await self.manager.select_all_eligible(10)

        assert self.key1 not in eligible
        assert len(eligible) == 2

    @pytest.mark.asyncio
    async def test_acquire_hands_out_distinct_credentials(self) -> None:
        first = await self.manager.acquire_credential(10)
        second = await self.manager.acquire_credential(10)
        third = await self.manager.acquire_credential(10)

        assert len({first.id, second.id, third.id}) == 3
        assert self.manager.in_flight_count == 3
        assert await self.manager.acquire_credential(10, wait=False) is None

    @pytest.mark.asyncio
    async def test_acquire_waits_for_release(self) -> None:
        await self.rate_limit(self.key2)
        await self.rate_limit(self.key3)
        held = await self.manager.acquire_credential(10)

        waiter = asyncio.create_task(self.manager.acquire_credential(10))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert not waiter.done()

        await self.manager.release_credential(held)
        acquired = await asyncio.wait_for(waiter, timeout=1)

        assert acquired is held

    @pytest.mark.asyncio
    async def test_acquire_avoids_excluded_credentials(self) -> None:
        await self.manager.record_success(self.key1, tokens_used=10)
        await self.manager.record_success(self.key2, tokens_used=10)

        # key3 has the most headroom but already failed this batch
        acquired = await self.manager.acquire_credential(10, exclude={self.key3.id})

        assert acquired is self.key1

    @pytest.mark.asyncio
    async def test_excluded_credential_serves_when_nothing_else_qualifies(self) -> None:
        await self.rate_limit(self.key1)
        await self.rate_limit(self.key2)

        acquired = await self.manager.acquire_credential(10, exclude={self.key3.id})

        assert acquired is self.key3

    @pytest.mark.asyncio
    async def test_acquire_returns_none_when_nothing_can_qualify(self) -> None:
        for credential in self.pool:
            await self.rate_limit(credential)

        assert await self.manager.acquire_credential(10) is None


class TestOutcomes(TestCredentialManagerBase):
    """Tests for record_success and record_failure."""

    @pytest.mark.asyncio
    async def test_success_records_usage_and_clears_errors(self) -> None:
        self.key1.error_count = 2

        await self.manager.record_success(self.key1, tokens_used=40)

        record = self.tracker.get_cached(self.key1.secret_hash, MODEL)
        assert (record.rpm.used, record.tpm.used) == (1, 40)
        assert self.key1.error_count == 0
        assert self.key1.request_count == 1

    @pytest.mark.asyncio
    async def test_success_does_not_revive_quota_exceeded(self) -> None:
        await self.manager.update_status(self.key1, CredentialStatus.QuotaExceeded, "quota")

        await self.manager.record_success(self.key1)

        assert self.key1.status == CredentialStatus.QuotaExceeded

    @pytest.mark.asyncio
    async def test_rate_limit_message_sets_cooldown(self) -> None:
        category = await self.manager.record_failure(self.key1, Exception("Request failed with status code 429"))

        assert category == ErrorCategory.RateLimit
        assert self.key1.status == CredentialStatus.RateLimited
        assert self.key1.rate_limit_reset_at == self.clock() + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_retry_after_overrides_cooldown(self) -> None:
        await self.manager.record_failure(self.key1, RateLimitError("slow down", retry_after=15))

        assert self.key1.rate_limit_reset_at == self.clock() + timedelta(seconds=15)

    @pytest.mark.asyncio
    async def test_quota_sets_long_cooldown(self) -> None:
        await self.manager.record_failure(self.key1, QuotaExceededError("Quota exceeded"))

        assert self.key1.status == CredentialStatus.QuotaExceeded
        assert self.key1.rate_limit_reset_at == self.clock() + timedelta(seconds=3600)

    @pytest.mark.asyncio
    async def test_auth_failure_invalidates(self) -> None:
        await self.manager.record_failure(self.key1, AuthError("API key not valid"))
        await self.manager.record_failure(self.key1, RateLimitError("429"))

        assert self.key1.status == CredentialStatus.Invalid
        assert self.key1.error_count == 2

    @pytest.mark.asyncio
    async def test_network_errors_tolerated_until_threshold(self) -> None:
        for _ in range(4):
            await self.manager.record_failure(self.key1, NetworkError("connection reset"))
        assert self.key1.status == CredentialStatus.Active

        await self.manager.record_failure(self.key1, NetworkError("connection reset"))

        assert self.key1.status == CredentialStatus.Error

    @pytest.mark.asyncio
    async def test_mixed_failures_do_not_share_a_streak(self) -> None:
        for _ in range(4):
            await self.manager.record_failure(self.key1, NetworkError("connection reset"))
        await self.manager.record_failure(self.key1, Exception("something odd"))
        await self.manager.record_failure(self.key1, Exception("something odd"))

        assert self.key1.status == CredentialStatus.Active
        assert self.key1.error_count == 6
        assert (self.key1.last_error_category, self.key1.error_streak) == ("unknown", 2)

        await self.manager.record_failure(self.key1, NetworkError("connection reset"))

        assert self.key1.status == CredentialStatus.Active
        assert self.key1.error_streak == 1

    @pytest.mark.asyncio
    async def test_success_clears_streak(self) -> None:
        await self.manager.record_failure(self.key1, Exception("something odd"))
        await self.manager.record_failure(self.key1, Exception("something odd"))
        await self.manager.record_success(self.key1)
        await self.manager.record_failure(self.key1, Exception("something odd"))

        assert self.key1.status == CredentialStatus.Active
        assert self.key1.error_streak == 1

    @pytest.mark.asyncio
    async def test_unknown_errors_reach_error_sooner(self) -> None:
        for _ in range(3):
            category = await self.manager.record_failure(self.key1, Exception("something odd"))

        assert category == ErrorCategory.Unknown
        assert self.key1.status == CredentialStatus.Error

    @pytest.mark.asyncio
    async def test_disallowed_transition_is_skipped_not_raised(self) -> None:
        await self.manager.update_status(self.key1, CredentialStatus.QuotaExceeded, "quota")

        category = await self.manager.record_failure(self.key1, RateLimitError("429"))

        assert category == ErrorCategory.RateLimit
        assert self.key1.status == CredentialStatus.QuotaExceeded

    @pytest.mark.asyncio
    async def test_has_capacity(self) -> None:
        assert await self.manager.has_capacity(self.key1, 10)

        await self.rate_limit(self.key1)

        assert not await self.manager.has_capacity(self.key1, 10)


class TestRecovery(TestCredentialManagerBase):
    """Tests for reclaim_expired, waiting and model switching."""

    @pytest.mark.asyncio
    async def test_reclaim_after_cooldown(self) -> None:
        await self.rate_limit(self.key1)

        self.clock.advance(30)
        assert await self.manager.reclaim_expired() == []
        assert self.key1.status == CredentialStatus.RateLimited

        self.clock.advance(31)
        recovered = await self.manager.reclaim_expired()

        assert [t.entity_id for t in recovered] == [self.key1.id]
        assert recovered[0].trigger == "reclaim"
        assert self.key1.status == CredentialStatus.Active

    @pytest.mark.asyncio
    async def test_reclaim_is_idempotent(self) -> None:
        await self.rate_limit(self.key1)
        await self.rate_limit(self.key2, seconds=600)
        self.clock.advance(61)

        await self.manager.reclaim_expired()
        transitions = self.manager.state_transitions
        statuses = [c.status for c in self.pool]

        assert await self.manager.reclaim_expired() == []
        assert await self.manager.reclaim_expired() == []
        assert self.manager.state_transitions == transitions
        assert [c.status for c in self.pool] == statuses

    @pytest.mark.asyncio
    async def test_quota_exceeded_stays_blocked_while_daily_window_is_exhausted(self) -> None:
        for _ in range(3):
            await self.manager.record_success(self.key1, tokens_used=1)
        await self.manager.update_status(
            self.key1,
            CredentialStatus.QuotaExceeded,
            "quota",
            reset_at=self.clock() + timedelta(seconds=60),
        )

        self.clock.advance(61)
        await self.manager.reclaim_expired()
        assert self.key1.status == CredentialStatus.QuotaExceeded

        self.clock.advance(61)
        await self.manager.reclaim_expired()
        assert self.key1.status == CredentialStatus.QuotaExceeded

    @pytest.mark.asyncio
    async def test_reclaim_waits_for_minute_window(self) -> None:
        for _ in range(3):
            await self.manager.record_success(self.key1, tokens_used=1)
        record = self.tracker.get_cached(self.key1.secret_hash, MODEL)
        record.rpm.used = record.rpm.limit
        await self.rate_limit(self.key1, seconds=30)

        self.clock.advance(31)
        await self.manager.reclaim_expired()
        assert self.key1.status == CredentialStatus.RateLimited

        self.clock.advance(30)
        await self.manager.reclaim_expired()
        assert self.key1.status == CredentialStatus.Active

    @pytest.mark.asyncio
    async def test_seconds_until_recovery(self) -> None:
        await self.rate_limit(self.key1, seconds=40)
        await self.rate_limit(self.key2, seconds=90)
        await self.manager.update_status(self.key3, CredentialStatus.Invalid, "auth")

        assert self.manager.seconds_until_recovery() == pytest.approx(40.0)

    @pytest.mark.asyncio
    async def test_nothing_recovers_by_itself(self) -> None:
        for credential in self.pool:
            await self.manager.update_status(credential, CredentialStatus.Invalid, "auth")

        assert self.manager.seconds_until_recovery() is None

    @pytest.mark.asyncio
    async def test_switch_model_resets_rate_limits(self) -> None:
        await self.rate_limit(self.key1)
        await self.manager.update_status(self.key2, CredentialStatus.Invalid, "auth")

        transitions = await self.manager.switch_model("other-model")

        assert self.manager.model == "other-model"
        assert [t.trigger for t in transitions] == ["model_switched"]
        assert self.key1.status == CredentialStatus.Active
        assert self.key2.status == CredentialStatus.Invalid
        assert any(e["event_type"] == "model_switched" for e in self.observability.events)

    @pytest.mark.asyncio
    async def test_reset_rate_limited(self) -> None:
        await self.rate_limit(self.key1)
        await self.rate_limit(self.key3)

        transitions = await self.manager.reset_rate_limited()

        assert len(transitions) == 2
        assert self.pool.active_count() == 3


class TestHealthCheck(TestCredentialManagerBase):
    """Tests for run_health_check."""

    @pytest.mark.asyncio
    async def test_health_check_outcomes(self) -> None:
        client = MockLLMClient(
            failures={
                KEYS[1]: AuthError("API key not valid", status_code=400),
                KEYS[2]: RateLimitError("Resource has been exhausted", status_code=429),
            }
        )

        results = await self.manager.run_health_check(client)

        by_label = {r.label: r for r in results}
        assert by_label["Key 1"].is_healthy and not by_label["Key 1"].busy
        assert not by_label["Key 2"].is_healthy and by_label["Key 2"].permanent
        assert by_label["Key 2"].status == CredentialStatus.Invalid
        assert by_label["Key 3"].is_healthy and by_label["Key 3"].busy
        assert len([e for e in self.observability.events if e["event_type"] == "health_check"]) == 3

    @pytest.mark.asyncio
    async def test_health_check_revives_errored_credential(self) -> None:
        await self.manager.update_status(self.key1, CredentialStatus.Error, "unknown")

        await self.manager.run_health_check(MockLLMClient())

        assert self.key1.status == CredentialStatus.Active
        assert self.key1.health.last_checked_at == self.clock()

    @pytest.mark.asyncio
    async def test_invalid_credential_is_not_called(self) -> None:
        await self.manager.update_status(self.key1, CredentialStatus.Invalid, "auth")
        client = MockLLMClient()

        results = await self.manager.run_health_check(client, test_model="other-model")

        assert KEYS[0] not in [secret for secret, _ in client.calls]
        assert results[0].permanent
        assert {model for _, model in client.calls} == {"other-model"}

    @pytest.mark.asyncio
    async def test_transient_failure_marks_unhealthy(self) -> None:
        client = MockLLMClient(failures={KEYS[0]: NetworkError("connection refused")})

        await self.manager.run_health_check(client)

        assert not self.key1.health.is_healthy
        assert self.key1.status == CredentialStatus.Active
        assert await self.manager.select_credential(10) is not self.key1


class TestQuotaStatus(TestCredentialManagerBase):
    """Tests for the observability view."""

    @pytest.mark.asyncio
    async def test_quota_status(self) -> None:
        await self.manager.record_success(self.key1, tokens_used=100)
        await self.rate_limit(self.key2)

        statuses = await self.manager.quota_status()

        assert [s.label for s in statuses] == ["Key 1", "Key 2", "Key 3"]
        assert statuses[0].quota_details == "RPM 1/10 | TPM 100/100000 | RPD 1/3"
        assert statuses[0].quota_remaining_percent == pytest.approx(200 / 3)
        assert statuses[1].status == CredentialStatus.RateLimited
        assert statuses[1].rate_limit_reset_at is not None
        assert all(KEYS[0] not in s.model_dump_json() for s in statuses)
