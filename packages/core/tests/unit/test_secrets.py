"""Tests for secret hashing, masking and encryption."""

import pytest
from cryptography.fernet import Fernet

from llmkeypool.infrastructure.utils.secrets import (
    EncryptionError,
    EncryptionService,
    hash_secret,
    mask_secret,
)


class TestHashAndMask:
    """Tests for hash_secret and mask_secret."""

    def test_hash_is_deterministic_and_truncated(self) -> None:
        first = hash_secret("AIzaSy-example-key")

        assert first == hash_secret("AIzaSy-example-key")
        assert first != hash_secret("AIzaSy-example-kez")
        assert len(first) == 32
        assert "AIza" not in first

    def test_mask_keeps_prefix_and_suffix(self) -> None:
        assert mask_secret("AIzaSyABCDEFGHIJ1234") == "AIzaSyAB********1234"

    def test_short_secrets_are_fully_masked(self) -> None:
        assert mask_secret("short-key") == "*********"
        assert mask_secret("exactly12chr") == "************"


class TestEncryptionService:
    """Tests for EncryptionService."""

    def test_round_trip_with_fernet_key(self) -> None:
        service = EncryptionService(Fernet.generate_key().decode())

        token = service.encrypt("AIzaSy-secret")

        assert token != "AIzaSy-secret"
        assert service.decrypt(token) == "AIzaSy-secret"

    def test_passphrase_key_is_derived(self) -> None:
        service = EncryptionService("a passphrase that is not a fernet key")
        same = EncryptionService("a passphrase that is not a fernet key")

        assert same.decrypt(service.encrypt("value")) == "value"

    def test_decrypt_with_other_key_fails(self) -> None:
        token = EncryptionService(Fernet.generate_key().decode()).encrypt("value")

        with pytest.raises(EncryptionError):
            EncryptionService(Fernet.generate_key().decode()).decrypt(token)

    def test_malformed_token_fails(self) -> None:
        with pytest.raises(EncryptionError):
            EncryptionService().decrypt("not-a-token")

    def test_reads_key_from_environment(self, monkeypatch) -> None:
        key = Fernet.generate_key().decode()
        monkeypatch.setenv("LLMKEYPOOL_ENCRYPTION_KEY", key)

        token = EncryptionService().encrypt("value")

        assert EncryptionService(key).decrypt(token) == "value"

    def test_generates_key_outside_production(self, monkeypatch) -> None:
        monkeypatch.delenv("LLMKEYPOOL_ENCRYPTION_KEY", raising=False)
        monkeypatch.setenv("ENVIRONMENT", "development")

        service = EncryptionService()

        assert service.decrypt(service.encrypt("value")) == "value"

    def test_production_requires_key(self, monkeypatch) -> None:
        monkeypatch.delenv("LLMKEYPOOL_ENCRYPTION_KEY", raising=False)
        monkeypatch.setenv("ENVIRONMENT", "production")

        with pytest.raises(EncryptionError, match="required in production"):
            EncryptionService()
