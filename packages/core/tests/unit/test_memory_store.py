"""Tests for InMemoryQuotaStore and RedisQuotaStore fallback mode."""

from datetime import UTC, datetime, timedelta

import pytest

from llmkeypool.domain.interfaces.quota_store import QuotaStoreError
from llmkeypool.domain.models.quota_record import ModelQuotas, QuotaRecord
from llmkeypool.domain.models.state_transition import StateTransition
from llmkeypool.infrastructure.state_store.memory_store import InMemoryQuotaStore
from llmkeypool.infrastructure.state_store.redis_store import RedisQuotaStore

NOW = datetime(2025, 6, 10, 19, 0, tzinfo=UTC)
QUOTAS = ModelQuotas(rpm=15, tpm=250_000, rpd=1000)


def make_record(credential_hash: str = "hash-a", model: str = "gemini-2.5-flash-lite") -> QuotaRecord:
    return QuotaRecord.fresh(credential_hash, model, QUOTAS, NOW)


def make_transition(entity_id: str, offset: int = 0) -> StateTransition:
    return StateTransition(
        entity_id=entity_id,
        label="Key 1",
        from_state="active",
        to_state="rate_limited",
        trigger="rate_limit",
        transition_timestamp=NOW + timedelta(seconds=offset),
    )


class TestInMemoryQuotaStore:
    """Tests for InMemoryQuotaStore."""

    def setup_method(self) -> None:
        self.store = InMemoryQuotaStore(max_transitions=3)

    @pytest.mark.asyncio
    async def test_missing_record_returns_none(self) -> None:
        assert await self.store.get_quota_record("nope", "model") is None

    @pytest.mark.asyncio
    async def test_save_and_load_returns_equal_copy(self) -> None:
        record = make_record()
        record.rpm.used = 4

        await self.store.save_quota_record(record)
        loaded = await self.store.get_quota_record("hash-a", "gemini-2.5-flash-lite")

        assert loaded == record
        assert loaded is not record
        loaded.rpm.used = 9
        again = await self.store.get_quota_record("hash-a", "gemini-2.5-flash-lite")
        assert again.rpm.used == 4

    @pytest.mark.asyncio
    async def test_records_are_keyed_per_model(self) -> None:
        await self.store.save_quota_record(make_record(model="gemini-2.5-flash-lite"))
        await self.store.save_quota_record(make_record(model="gemini-2.5-pro"))
        await self.store.save_quota_record(make_record(credential_hash="hash-b"))

        assert len(await self.store.list_quota_records()) == 3
        assert {r.model for r in await self.store.list_quota_records("hash-a")} == {
            "gemini-2.5-flash-lite",
            "gemini-2.5-pro",
        }

    @pytest.mark.asyncio
    async def test_corrupt_record_raises_store_error(self) -> None:
        record = make_record()
        await self.store.save_quota_record(record)
        del self.store._records[record.key]["rpmUsed"]

        with pytest.raises(QuotaStoreError):
            await self.store.get_quota_record(*record.key)

    @pytest.mark.asyncio
    async def test_transitions_are_capped_fifo(self) -> None:
        for offset in range(5):
            await self.store.save_state_transition(make_transition("cred-1", offset))

        transitions = await self.store.list_state_transitions()

        assert len(transitions) == 3
        assert transitions[0].transition_timestamp == NOW + timedelta(seconds=2)

    @pytest.mark.asyncio
    async def test_transitions_filter_by_entity(self) -> None:
        await self.store.save_state_transition(make_transition("cred-1"))
        await self.store.save_state_transition(make_transition("cred-2"))

        assert [t.entity_id for t in await self.store.list_state_transitions("cred-2")] == ["cred-2"]


class TestRedisQuotaStoreFallback:
    """RedisQuotaStore degrades to in-memory storage without Redis."""

    @pytest.mark.asyncio
    async def test_no_url_uses_fallback(self) -> None:
        store = RedisQuotaStore()

        assert store.using_fallback
        record = make_record()
        await store.save_quota_record(record)
        assert await store.get_quota_record(*record.key) == record

        await store.save_state_transition(make_transition("cred-1"))
        assert len(await store.list_state_transitions("cred-1")) == 1
        await store.close()

    @pytest.mark.asyncio
    async def test_unreachable_server_switches_to_fallback(self) -> None:
        store = RedisQuotaStore(redis_url="redis://127.0.0.1:1/0", connection_timeout=1)
        assert not store.using_fallback

        record = make_record()
        await store.save_quota_record(record)

        assert store.using_fallback
        assert await store.get_quota_record(*record.key) == record
        await store.close()
