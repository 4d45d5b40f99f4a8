"""CredentialPool component holding the interchangeable API keys."""

import uuid
from collections.abc import Iterable, Iterator
from typing import Any

from llmkeypool.domain.models.credential import Credential, CredentialStatus
from llmkeypool.infrastructure.utils.secrets import (
    EncryptionService,
    hash_secret,
    mask_secret,
)


class NoCredentialsError(Exception):
    """Raised when a pool would be left without any credential."""

    pass


class CredentialNotFoundError(Exception):
    """Raised when a credential id is not part of the pool."""

    pass


class CredentialPool:
    """Ordered set of credentials for one provider.

    Secrets are encrypted on entry and only decrypted through
    :meth:`reveal_secret` at call time. Duplicate secrets (same hash) are
    ignored so one key cannot be counted twice.
    """

    def __init__(
        self,
        secrets: Iterable[str],
        encryption_service: EncryptionService | None = None,
    ) -> None:
        """Build a pool from plaintext secrets.

        Args:
            secrets: API keys; blank entries are dropped.
            encryption_service: Optional EncryptionService. Created if None.

        Raises:
            NoCredentialsError: If no non-blank secret was supplied.
        """
        self._encryption = encryption_service or EncryptionService()
        self._credentials: dict[str, Credential] = {}
        self._next_label = 1

        for secret in secrets:
            if secret and secret.strip():
                self._add(secret.strip(), None)

        if not self._credentials:
            raise NoCredentialsError("At least one non-empty API key is required")

    @classmethod
    def from_csv(
        cls,
        value: str,
        encryption_service: EncryptionService | None = None,
    ) -> "CredentialPool":
        """Build a pool from a comma-separated list of keys."""
        return cls(value.split(","), encryption_service=encryption_service)

    def _add(self, secret: str, label: str | None) -> Credential | None:
        secret_hash = hash_secret(secret)
        if any(c.secret_hash == secret_hash for c in self._credentials.values()):
            return None

        if label is None:
            label = f"Key {self._next_label}"
        self._next_label += 1

        credential = Credential(
            id=str(uuid.uuid4()),
            label=label,
            secret=self._encryption.encrypt(secret),
            secret_hash=secret_hash,
            masked=mask_secret(secret),
        )
        self._credentials[credential.id] = credential
        return credential

    def add(self, secret: str, label: str | None = None) -> Credential:
        """Add a credential at runtime.

        Returns:
            The new Credential, or the existing one if the secret is already pooled.

        Raises:
            ValueError: If the secret is blank.
        """
        if not secret or not secret.strip():
            raise ValueError("API key cannot be empty")
        credential = self._add(secret.strip(), label)
        if credential is None:
            existing_hash = hash_secret(secret.strip())
            return next(c for c in self._credentials.values() if c.secret_hash == existing_hash)
        return credential

    def remove(self, credential_id: str) -> Credential:
        """Remove a credential.

        Raises:
            CredentialNotFoundError: If the id is unknown.
            NoCredentialsError: If it is the last credential.
        """
        if credential_id not in self._credentials:
            raise CredentialNotFoundError(f"Credential not found: {credential_id}")
        if len(self._credentials) == 1:
            raise NoCredentialsError("Cannot remove the last credential from the pool")
        return self._credentials.pop(credential_id)

    def get(self, credential_id: str) -> Credential:
        """Look a credential up by id.

        Raises:
            CredentialNotFoundError: If the id is unknown.
        """
        try:
            return self._credentials[credential_id]
        except KeyError as e:
            raise CredentialNotFoundError(f"Credential not found: {credential_id}") from e

    def reveal_secret(self, credential: Credential) -> str:
        """Decrypt a credential's secret for a single provider call."""
        return self._encryption.decrypt(credential.secret)

    def active_count(self) -> int:
        return sum(1 for c in self._credentials.values() if c.status == CredentialStatus.Active)

    def statistics(self) -> dict[str, Any]:
        """Masked summary of the pool, safe to log or display."""
        by_status = {status.value: 0 for status in CredentialStatus}
        for credential in self._credentials.values():
            by_status[credential.status.value] += 1
        return {
            "total": len(self._credentials),
            "active": by_status[CredentialStatus.Active.value],
            "by_status": by_status,
            "credentials": [
                {
                    "label": c.label,
                    "masked": c.masked,
                    "status": c.status.value,
                    "error_count": c.error_count,
                    "request_count": c.request_count,
                }
                for c in self._credentials.values()
            ],
        }

    def __iter__(self) -> Iterator[Credential]:
        return iter(list(self._credentials.values()))

    def __len__(self) -> int:
        return len(self._credentials)

    def __contains__(self, credential_id: object) -> bool:
        return credential_id in self._credentials
