"""Secret handling utilities: hashing, masking and in-memory encryption."""

import os
from base64 import urlsafe_b64encode

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

HASH_LENGTH = 32


class EncryptionError(Exception):
    """Raised when encryption/decryption operations fail."""

    pass


def hash_secret(secret: str) -> str:
    """Return the persistence key for a secret.

    SHA-256 hex digest truncated to 32 characters. Stable across processes
    so quota records survive restarts.
    """
    digest = hashes.Hash(hashes.SHA256())
    digest.update(secret.encode())
    return digest.finalize().hex()[:HASH_LENGTH]


def mask_secret(secret: str) -> str:
    """Mask a secret for display: first 8 chars, ``*`` filler, last 4 chars.

    Secrets of 12 characters or fewer are masked completely.
    """
    if len(secret) <= 12:
        return "*" * len(secret)
    return f"{secret[:8]}{'*' * (len(secret) - 12)}{secret[-4:]}"


class EncryptionService:
    """Encrypts secrets held in memory using Fernet.

    The key is taken from the argument, then ``LLMKEYPOOL_ENCRYPTION_KEY``.
    Outside production a key is generated for the lifetime of the process,
    which is sufficient because plaintext secrets are never persisted.
    """

    def __init__(self, encryption_key: str | None = None) -> None:
        """Initialize EncryptionService.

        Args:
            encryption_key: Fernet key (44 chars) or a passphrase to derive one.

        Raises:
            EncryptionError: If no key is configured in production mode.
        """
        if encryption_key is None:
            encryption_key = os.getenv("LLMKEYPOOL_ENCRYPTION_KEY")
            if not encryption_key:
                environment = os.getenv("ENVIRONMENT", os.getenv("ENV", "development")).lower()
                if environment == "production":
                    raise EncryptionError(
                        "LLMKEYPOOL_ENCRYPTION_KEY environment variable is required in production"
                    )
                encryption_key = Fernet.generate_key().decode()

        try:
            self._fernet = Fernet(self._get_fernet_key(encryption_key))
        except ValueError as e:
            raise EncryptionError(f"Invalid encryption key format: {e}") from e

    def _get_fernet_key(self, key_str: str) -> bytes:
        # 44 chars is a urlsafe-base64 Fernet key; anything else is a passphrase.
        if len(key_str) == 44:
            return key_str.encode()

        salt = os.getenv("LLMKEYPOOL_ENCRYPTION_SALT", "llmkeypool-salt").encode()
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return urlsafe_b64encode(kdf.derive(key_str.encode()))

    def encrypt(self, secret: str) -> str:
        """Encrypt a plaintext secret.

        Raises:
            EncryptionError: If encryption fails.
        """
        try:
            return self._fernet.encrypt(secret.encode()).decode()
        except (TypeError, ValueError) as e:
            raise EncryptionError(f"Failed to encrypt secret: {e}") from e

    def decrypt(self, token: str) -> str:
        """Decrypt a token produced by :meth:`encrypt`.

        Raises:
            EncryptionError: If the token is malformed or was encrypted with another key.
        """
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except (InvalidToken, TypeError, ValueError) as e:
            raise EncryptionError(f"Failed to decrypt secret: {e}") from e
