"""QuotaStore interface for quota record persistence.

Quota records are keyed by ``(credential_hash, model)``. Only the one-way
hash of a credential is ever handed to a store, never the secret.

Example:
    ```python
    from llmkeypool.infrastructure.state_store.memory_store import InMemoryQuotaStore

    store: QuotaStore = InMemoryQuotaStore()
    await store.save_quota_record(record)
    loaded = await store.get_quota_record(record.credential_hash, record.model)
    ```
"""

from abc import ABC, abstractmethod

from llmkeypool.domain.models.quota_record import QuotaRecord
from llmkeypool.domain.models.state_transition import StateTransition


class QuotaStore(ABC):
    """Abstract interface for quota persistence.

    All methods are async so that network-backed stores do not block the
    event loop. Implementations raise QuotaStoreError for operation
    failures.
    """

    @abstractmethod
    async def get_quota_record(self, credential_hash: str, model: str) -> QuotaRecord | None:
        """Retrieve the quota record for a credential and model.

        Args:
            credential_hash: One-way hash of the credential secret.
            model: Model name the quota applies to.

        Returns:
            The QuotaRecord if found, None otherwise.

        Raises:
            QuotaStoreError: If retrieval fails.
        """
        pass

    @abstractmethod
    async def save_quota_record(self, record: QuotaRecord) -> None:
        """Save a quota record (upsert on ``(credential_hash, model)``).

        Raises:
            QuotaStoreError: If the save fails.
        """
        pass

    @abstractmethod
    async def list_quota_records(self, credential_hash: str | None = None) -> list[QuotaRecord]:
        """List stored quota records, optionally for one credential.

        Raises:
            QuotaStoreError: If retrieval fails.
        """
        pass

    @abstractmethod
    async def save_state_transition(self, transition: StateTransition) -> None:
        """Append a credential state transition to the audit trail.

        Raises:
            QuotaStoreError: If the save fails.
        """
        pass

    @abstractmethod
    async def list_state_transitions(self, entity_id: str | None = None) -> list[StateTransition]:
        """List recorded transitions in insertion order, optionally for one credential.

        Raises:
            QuotaStoreError: If retrieval fails.
        """
        pass


class QuotaStoreError(Exception):
    """Raised when quota store operations fail.

    Example:
        ```python
        try:
            await store.save_quota_record(record)
        except QuotaStoreError as e:
            logger.error(f"Failed to persist quota: {e}")
        ```
    """

    pass
