"""Redis-based quota store implementation.

Each quota record is one Redis hash at ``quota:{credentialHash}:{model}``
holding the flat persistence layout. State transitions are appended to a
capped list per credential.

Example:
    ```python
    from llmkeypool.infrastructure.state_store.redis_store import RedisQuotaStore

    store = RedisQuotaStore(redis_url="redis://localhost:6379/0")
    await store.save_quota_record(record)
    loaded = await store.get_quota_record(record.credential_hash, record.model)
    await store.close()
    ```
"""

import os

import structlog
from redis.asyncio import Redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from llmkeypool.domain.interfaces.quota_store import QuotaStore, QuotaStoreError
from llmkeypool.domain.models.quota_record import QuotaRecord
from llmkeypool.domain.models.state_transition import StateTransition
from llmkeypool.infrastructure.state_store.memory_store import InMemoryQuotaStore

logger = structlog.get_logger(__name__)

# Redis key patterns
KEY_PATTERN_QUOTA = "quota:{credential_hash}:{model}"
KEY_PATTERN_TRANSITIONS = "transitions:{entity_id}"

# Quota records outlive the longest window by a wide margin
DEFAULT_RECORD_TTL = 3 * 24 * 60 * 60  # 3 days
DEFAULT_MAX_TRANSITIONS = 1000  # Maximum transitions per credential


class RedisQuotaStore(QuotaStore):
    """Redis-based implementation of the QuotaStore interface.

    Keeps quota usage and the transition trail across process restarts.
    Records are written whole, so one orchestrator process should own a
    given set of keys at a time. When Redis is unreachable the store
    switches to an in-memory fallback and logs a warning instead of
    failing the job.

    Attributes:
        _redis: Redis async client instance
        _connection_pool: Redis connection pool
        _fallback_store: InMemoryQuotaStore used when Redis is unavailable
        _use_fallback: Flag indicating if fallback mode is active
    """

    def __init__(
        self,
        redis_url: str | None = None,
        record_ttl: int = DEFAULT_RECORD_TTL,
        max_transitions: int = DEFAULT_MAX_TRANSITIONS,
        connection_timeout: int = 5,
    ) -> None:
        """Initialize RedisQuotaStore with connection configuration.

        Args:
            redis_url: Redis connection URL. If None, reads REDIS_URL. Without
                either, the store runs in fallback mode.
            record_ttl: TTL for quota record hashes in seconds.
            max_transitions: Maximum transitions kept per credential.
            connection_timeout: Connection timeout in seconds.
        """
        self._redis_url = redis_url or os.getenv("REDIS_URL")
        self._record_ttl = record_ttl
        self._max_transitions = max_transitions

        self._redis: Redis | None = None
        self._connection_pool: ConnectionPool | None = None
        self._use_fallback = False
        self._fallback_store = InMemoryQuotaStore(max_transitions=max_transitions)

        if self._redis_url:
            try:
                self._connection_pool = ConnectionPool.from_url(
                    self._redis_url,
                    max_connections=10,
                    socket_connect_timeout=connection_timeout,
                    socket_timeout=connection_timeout,
                    retry_on_timeout=True,
                    decode_responses=True,
                )
                self._redis = Redis(connection_pool=self._connection_pool)
            except (ValueError, RedisError) as e:
                logger.warning(
                    "Failed to initialize Redis connection, using fallback mode",
                    error=str(e),
                )
                self._use_fallback = True
        else:
            logger.warning("REDIS_URL not provided, using fallback in-memory store")
            self._use_fallback = True

    @property
    def using_fallback(self) -> bool:
        return self._use_fallback

    async def _ensure_connection(self) -> None:
        if self._use_fallback:
            return

        if self._redis is None:
            self._use_fallback = True
            logger.warning("Redis connection not available, using fallback mode")
            return

        try:
            await self._redis.ping()
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.warning("Redis connection failed, switching to fallback mode", error=str(e))
            self._use_fallback = True

    async def get_quota_record(self, credential_hash: str, model: str) -> QuotaRecord | None:
        await self._ensure_connection()
        if self._use_fallback or self._redis is None:
            return await self._fallback_store.get_quota_record(credential_hash, model)

        redis_key = KEY_PATTERN_QUOTA.format(credential_hash=credential_hash, model=model)
        try:
            data = await self._redis.hgetall(redis_key)
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.warning(
                "Failed to get quota record from Redis, using fallback",
                credential_hash=credential_hash[:8],
                error=str(e),
            )
            self._use_fallback = True
            return await self._fallback_store.get_quota_record(credential_hash, model)

        if not data:
            return None
        try:
            return QuotaRecord.from_store_dict(data)
        except ValueError as e:
            raise QuotaStoreError(f"Corrupt quota record at {redis_key}: {e}") from e

    async def save_quota_record(self, record: QuotaRecord) -> None:
        await self._ensure_connection()
        if self._use_fallback or self._redis is None:
            await self._fallback_store.save_quota_record(record)
            return

        redis_key = KEY_PATTERN_QUOTA.format(credential_hash=record.credential_hash, model=record.model)
        mapping = {k: str(v) for k, v in record.to_store_dict().items()}
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(redis_key, mapping=mapping)
                pipe.expire(redis_key, self._record_ttl)
                await pipe.execute()
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.warning(
                "Failed to save quota record to Redis, using fallback",
                credential_hash=record.credential_hash[:8],
                error=str(e),
            )
            await self._fallback_store.save_quota_record(record)
            self._use_fallback = True

    async def list_quota_records(self, credential_hash: str | None = None) -> list[QuotaRecord]:
        await self._ensure_connection()
        if self._use_fallback or self._redis is None:
            return await self._fallback_store.list_quota_records(credential_hash)

        pattern = KEY_PATTERN_QUOTA.format(credential_hash=credential_hash or "*", model="*")
        records: list[QuotaRecord] = []
        try:
            async for redis_key in self._redis.scan_iter(match=pattern):
                data = await self._redis.hgetall(redis_key)
                if data:
                    records.append(QuotaRecord.from_store_dict(data))
        except (ConnectionError, TimeoutError, RedisError) as e:
            raise QuotaStoreError(f"Failed to list quota records: {e}") from e
        except ValueError as e:
            raise QuotaStoreError(f"Corrupt quota record: {e}") from e
        return records

    async def save_state_transition(self, transition: StateTransition) -> None:
        await self._ensure_connection()
        if self._use_fallback or self._redis is None:
            await self._fallback_store.save_state_transition(transition)
            return

        redis_key = KEY_PATTERN_TRANSITIONS.format(entity_id=transition.entity_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.rpush(redis_key, transition.model_dump_json())
                pipe.ltrim(redis_key, -self._max_transitions, -1)
                await pipe.execute()
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.warning(
                "Failed to save state transition to Redis, using fallback",
                entity_id=transition.entity_id,
                error=str(e),
            )
            await self._fallback_store.save_state_transition(transition)
            self._use_fallback = True

    async def list_state_transitions(self, entity_id: str | None = None) -> list[StateTransition]:
        await self._ensure_connection()
        if self._use_fallback or self._redis is None:
            return await self._fallback_store.list_state_transitions(entity_id)

        pattern = KEY_PATTERN_TRANSITIONS.format(entity_id=entity_id or "*")
        transitions: list[StateTransition] = []
        try:
            async for redis_key in self._redis.scan_iter(match=pattern):
                for raw in await self._redis.lrange(redis_key, 0, -1):
                    transitions.append(StateTransition.model_validate_json(raw))
        except (ConnectionError, TimeoutError, RedisError) as e:
            raise QuotaStoreError(f"Failed to list state transitions: {e}") from e
        transitions.sort(key=lambda t: t.transition_timestamp)
        return transitions

    async def close(self) -> None:
        """Close the Redis connection pool."""
        if self._redis:
            await self._redis.aclose()
        if self._connection_pool:
            await self._connection_pool.disconnect()
