"""Quota store implementations."""

from llmkeypool.infrastructure.state_store.memory_store import InMemoryQuotaStore
from llmkeypool.infrastructure.state_store.redis_store import RedisQuotaStore

__all__ = ["InMemoryQuotaStore", "RedisQuotaStore"]
