"""In-memory quota store implementation.

Records are kept as serialized snapshots, so a loaded record never aliases
the object that was saved, exactly as with a persistent backend.

Example:
    ```python
    from llmkeypool.infrastructure.state_store.memory_store import InMemoryQuotaStore

    store = InMemoryQuotaStore()
    await store.save_quota_record(record)
    loaded = await store.get_quota_record(record.credential_hash, record.model)
    ```
"""

import asyncio
from typing import Any

from llmkeypool.domain.interfaces.quota_store import QuotaStore, QuotaStoreError
from llmkeypool.domain.models.quota_record import QuotaRecord
from llmkeypool.domain.models.state_transition import StateTransition


class InMemoryQuotaStore(QuotaStore):
    """In-memory implementation of the QuotaStore interface.

    The default store; requires no external services and loses its state
    when the process exits.

    Attributes:
        _records: Serialized QuotaRecords keyed by (credential_hash, model).
        _state_transitions: Audit trail, oldest first.
        _write_lock: asyncio.Lock serializing writes.
    """

    def __init__(self, max_transitions: int = 1000) -> None:
        """Initialize InMemoryQuotaStore.

        Args:
            max_transitions: Maximum number of state transitions to keep.
                When the limit is reached, the oldest are removed (FIFO).
                Set to 0 or negative for unlimited storage.
        """
        self._records: dict[tuple[str, str], dict[str, Any]] = {}
        self._state_transitions: list[StateTransition] = []
        self._max_transitions = max_transitions if max_transitions > 0 else 0  # 0 means unlimited
        self._write_lock = asyncio.Lock()

    async def get_quota_record(self, credential_hash: str, model: str) -> QuotaRecord | None:
        data = self._records.get((credential_hash, model))
        if data is None:
            return None
        try:
            return QuotaRecord.from_store_dict(data)
        except ValueError as e:
            raise QuotaStoreError(f"Corrupt quota record for {credential_hash[:8]}/{model}: {e}") from e

    async def save_quota_record(self, record: QuotaRecord) -> None:
        try:
            async with self._write_lock:
                self._records[record.key] = record.to_store_dict()
        except Exception as e:
            raise QuotaStoreError(f"Failed to save quota record {record!r}: {e}") from e

    async def list_quota_records(self, credential_hash: str | None = None) -> list[QuotaRecord]:
        return [
            QuotaRecord.from_store_dict(data)
            for (record_hash, _), data in list(self._records.items())
            if credential_hash is None or record_hash == credential_hash
        ]

    async def save_state_transition(self, transition: StateTransition) -> None:
        async with self._write_lock:
            self._state_transitions.append(transition)
            if self._max_transitions and len(self._state_transitions) > self._max_transitions:
                self._state_transitions = self._state_transitions[-self._max_transitions :]

    async def list_state_transitions(self, entity_id: str | None = None) -> list[StateTransition]:
        return [t for t in self._state_transitions if entity_id is None or t.entity_id == entity_id]
