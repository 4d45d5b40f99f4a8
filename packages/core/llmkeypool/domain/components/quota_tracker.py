"""QuotaTracker component enforcing RPM, TPM and RPD windows."""

import asyncio
from datetime import datetime, timedelta, tzinfo
from zoneinfo import ZoneInfo

from llmkeypool.domain.interfaces.observability_manager import (
    ObservabilityManager,
)
from llmkeypool.domain.interfaces.quota_store import QuotaStore
from llmkeypool.domain.models.clock import Clock, utc_now
from llmkeypool.domain.models.credential import Credential
from llmkeypool.domain.models.quota_record import (
    DEFAULT_MODEL_QUOTAS,
    UNKNOWN_MODEL_QUOTAS,
    ModelQuotas,
    QuotaRecord,
    WindowKind,
)

DEFAULT_RESET_TIMEZONE = "America/Los_Angeles"


class QuotaTracker:
    """Tracks per-(credential, model) usage against the provider's windows.

    Records are loaded lazily, reconciled against the clock on load, and
    persisted after every usage update. Writes for one credential are
    serialized by a per-credential lock so concurrent batches cannot lose
    increments.
    """

    def __init__(
        self,
        quota_store: QuotaStore,
        observability_manager: ObservabilityManager,
        model_quotas: dict[str, ModelQuotas] | None = None,
        reset_timezone: str | tzinfo = DEFAULT_RESET_TIMEZONE,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize QuotaTracker with dependencies.

        Args:
            quota_store: QuotaStore used to persist records.
            observability_manager: ObservabilityManager for events and logging.
            model_quotas: Per-model ceilings; defaults to the built-in table.
            reset_timezone: Timezone whose midnight resets the daily window.
            clock: Source of the current time.
        """
        self._store = quota_store
        self._observability = observability_manager
        self._model_quotas = dict(DEFAULT_MODEL_QUOTAS if model_quotas is None else model_quotas)
        self._reset_tz = (
            ZoneInfo(reset_timezone) if isinstance(reset_timezone, str) else reset_timezone
        )
        self._clock = clock
        self._records: dict[tuple[str, str], QuotaRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def reset_timezone(self) -> tzinfo:
        return self._reset_tz

    def now(self) -> datetime:
        return self._clock()

    def quotas_for(self, model: str) -> ModelQuotas:
        """Ceilings for ``model``; unknown models get the most conservative ones."""
        return self._model_quotas.get(model, UNKNOWN_MODEL_QUOTAS)

    def _lock_for(self, credential_hash: str) -> asyncio.Lock:
        return self._locks.setdefault(credential_hash, asyncio.Lock())

    def get_cached(self, credential_hash: str, model: str) -> QuotaRecord | None:
        """Return the in-memory record for the pair without touching the store."""
        return self._records.get((credential_hash, model))

    async def initialize(self, credential: Credential, model: str) -> QuotaRecord:
        """Load or lazily create the record for ``(credential, model)``.

        A loaded record is reconciled against the clock: windows whose
        boundary passed while the process was down are reset. The
        reconciled record is persisted.

        Raises:
            QuotaStoreError: If the store fails.
        """
        key = (credential.secret_hash, model)
        async with self._lock_for(credential.secret_hash):
            record = self._records.get(key)
            if record is not None:
                return record

            now = self.now()
            record = await self._store.get_quota_record(credential.secret_hash, model)
            if record is None:
                record = QuotaRecord.fresh(
                    credential.secret_hash, model, self.quotas_for(model), now, self._reset_tz
                )
            else:
                await self._roll_forward(record, now)

            await self._store.save_quota_record(record)
            self._records[key] = record
            return record

    async def _roll_forward(self, record: QuotaRecord, now: datetime) -> list[WindowKind]:
        reset = record.roll_forward(now, self._reset_tz)
        if not reset:
            return reset
        record.last_updated = now

        try:
            await self._observability.emit_event(
                event_type="quota_reset",
                payload={
                    "credential_hash": record.credential_hash,
                    "model": record.model,
                    "windows": [kind.value for kind in reset],
                    "next_reset_at": {
                        w.kind.value: w.reset_at.isoformat() for w in record.windows()
                    },
                },
                metadata={"reset_timestamp": now.isoformat()},
            )
        except Exception as e:
            # Log error but don't fail reset if event emission fails
            await self._observability.log(
                level="WARNING",
                message=f"Failed to emit quota_reset event: {e}",
                context={"credential_hash": record.credential_hash, "model": record.model},
            )
        return reset

    async def has_headroom(self, record: QuotaRecord, estimated_tokens: int) -> bool:
        """Whether one more request of ``estimated_tokens`` fits in every window."""
        await self._roll_forward(record, self.now())
        return (
            record.rpm.has_room(1)
            and record.tpm.has_room(estimated_tokens)
            and record.rpd.has_room(1)
        )

    async def record_usage(self, record: QuotaRecord, tokens_used: int) -> QuotaRecord:
        """Count one request and ``tokens_used`` tokens, then persist.

        Raises:
            QuotaStoreError: If the store fails.
        """
        async with self._lock_for(record.credential_hash):
            now = self.now()
            await self._roll_forward(record, now)
            record.rpm.used += 1
            record.tpm.used += max(0, tokens_used)
            record.rpd.used += 1
            record.last_updated = now
            await self._store.save_quota_record(record)

        await self._observability.log(
            level="DEBUG",
            message="quota_usage_recorded",
            context={
                "credential_hash": record.credential_hash,
                "model": record.model,
                "tokens_used": tokens_used,
                "status": self.format_status(record),
            },
        )
        return record

    async def set_status(self, record: QuotaRecord, status: str) -> None:
        """Mirror the credential status onto the persisted record."""
        if record.status == status:
            return
        async with self._lock_for(record.credential_hash):
            record.status = status
            record.last_updated = self.now()
            await self._store.save_quota_record(record)

    async def update_limits(
        self,
        record: QuotaRecord,
        quotas: ModelQuotas | None = None,
    ) -> QuotaRecord:
        """Apply new ceilings to an existing record, keeping its usage.

        Args:
            record: Record to update.
            quotas: New ceilings; defaults to the table entry for the record's model.
        """
        quotas = quotas or self.quotas_for(record.model)
        async with self._lock_for(record.credential_hash):
            record.rpm.limit = quotas.rpm
            record.tpm.limit = quotas.tpm
            record.rpd.limit = quotas.rpd
            record.last_updated = self.now()
            await self._store.save_quota_record(record)
        return record

    def window_exhausted(self, record: QuotaRecord, kind: WindowKind) -> bool:
        """Whether ``kind`` is still exhausted at the current time."""
        window = getattr(record, kind.value)
        return window.is_exhausted_at(self.now())

    def remaining_percent(self, record: QuotaRecord) -> float:
        """Minimum remaining share across the three windows, in [0, 100]."""
        now = self.now()
        percents = [
            (w.limit - w.used_at(now)) / w.limit * 100.0 for w in record.windows()
        ]
        return max(0.0, min(100.0, min(percents)))

    def time_until_reset(self, record: QuotaRecord) -> dict[WindowKind, timedelta]:
        """Time left until each window resets (zero if already due)."""
        now = self.now()
        return {w.kind: max(timedelta(0), w.reset_at - now) for w in record.windows()}

    def format_status(self, record: QuotaRecord) -> str:
        """One-line usage summary, e.g. ``RPM 3/15 | TPM 1200/250000 | RPD 40/1000``."""
        now = self.now()
        return " | ".join(
            f"{w.kind.value.upper()} {w.used_at(now)}/{w.limit}"
            for w in record.windows()
        )
