"""Tests for CredentialPool component."""

import pytest

from llmkeypool.domain.components.credential_pool import (
    CredentialNotFoundError,
    CredentialPool,
    NoCredentialsError,
)
from llmkeypool.domain.models.credential import CredentialStatus

KEY_A = "AIzaSyA-test-key-aaaaaaaaaaaaaaaaaaaaaaa"
KEY_B = "AIzaSyB-test-key-bbbbbbbbbbbbbbbbbbbbbbb"
KEY_C = "AIzaSyC-test-key-ccccccccccccccccccccccc"


class TestCredentialPoolConstruction:
    """Tests for building a pool from secrets."""

    def test_assigns_sequential_labels(self) -> None:
        pool = CredentialPool([KEY_A, KEY_B, KEY_C])

        assert len(pool) == 3
        assert [c.label for c in pool] == ["Key 1", "Key 2", "Key 3"]
        assert all(c.status == CredentialStatus.Active for c in pool)

    def test_drops_blank_and_duplicate_secrets(self) -> None:
        pool = CredentialPool([KEY_A, "", "   ", KEY_A, f"  {KEY_B}  "])

        assert len(pool) == 2
        assert [c.label for c in pool] == ["Key 1", "Key 2"]

    def test_empty_pool_raises(self) -> None:
        with pytest.raises(NoCredentialsError):
            CredentialPool(["", "  "])

    def test_from_csv(self) -> None:
        pool = CredentialPool.from_csv(f"{KEY_A}, {KEY_B},,")

        assert len(pool) == 2

    def test_credential_ids_are_unique(self) -> None:
        pool = CredentialPool([KEY_A, KEY_B, KEY_C])

        ids = [c.id for c in pool]
        assert len(set(ids)) == 3
        assert all(c.id in pool for c in pool)


class TestCredentialPoolSecrets:
    """Secrets are held encrypted and only exposed through reveal_secret."""

    def setup_method(self) -> None:
        self.pool = CredentialPool([KEY_A, KEY_B])
        self.credential = next(iter(self.pool))

    def test_secret_is_encrypted_at_rest(self) -> None:
        assert self.credential.secret != KEY_A
        assert self.pool.reveal_secret(self.credential) == KEY_A

    def test_masked_form(self) -> None:
        assert self.credential.masked.startswith(KEY_A[:8])
        assert self.credential.masked.endswith(KEY_A[-4:])
        assert KEY_A not in self.credential.masked

    def test_hash_is_stable_across_pools(self) -> None:
        other = CredentialPool([KEY_A])

        assert next(iter(other)).secret_hash == self.credential.secret_hash

    def test_repr_and_dump_never_expose_secret(self) -> None:
        assert KEY_A not in repr(self.credential)
        assert self.credential.secret not in repr(self.credential)
        assert "secret" not in self.credential.model_dump()

    def test_statistics_are_masked(self) -> None:
        stats = self.pool.statistics()

        assert stats["total"] == 2
        assert stats["active"] == 2
        assert stats["by_status"]["active"] == 2
        assert KEY_A not in str(stats)
        assert KEY_B not in str(stats)


class TestCredentialPoolMutation:
    """Tests for add/remove/get."""

    def setup_method(self) -> None:
        self.pool = CredentialPool([KEY_A])

    def test_add_new_secret(self) -> None:
        credential = self.pool.add(KEY_B, label="Backup")

        assert credential.label == "Backup"
        assert len(self.pool) == 2
        assert self.pool.get(credential.id) is credential

    def test_add_duplicate_returns_existing(self) -> None:
        existing = next(iter(self.pool))

        assert self.pool.add(KEY_A) is existing
        assert len(self.pool) == 1

    def test_add_blank_raises(self) -> None:
        with pytest.raises(ValueError):
            self.pool.add("  ")

    def test_remove(self) -> None:
        added = self.pool.add(KEY_B)

        removed = self.pool.remove(added.id)

        assert removed is added
        assert added.id not in self.pool

    def test_remove_last_credential_raises(self) -> None:
        only = next(iter(self.pool))

        with pytest.raises(NoCredentialsError):
            self.pool.remove(only.id)

    def test_unknown_id_raises(self) -> None:
        with pytest.raises(CredentialNotFoundError):
            self.pool.get("missing")
        with pytest.raises(CredentialNotFoundError):
            self.pool.remove("missing")

    def test_active_count(self) -> None:
        added = self.pool.add(KEY_B)
        added.status = CredentialStatus.RateLimited

        assert self.pool.active_count() == 1
