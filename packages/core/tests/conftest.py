"""Pytest configuration and shared fixtures."""
import os
from pathlib import Path

import pytest
from dotenv import load_dotenv

# Load .env file from project root before running tests
project_root = Path(__file__).parent.parent.parent.parent
env_path = project_root / ".env"
if env_path.exists():
    load_dotenv(env_path)

# Ensure encryption key is set for all tests
# If not set in .env, generate a test key
if not os.getenv("LLMKEYPOOL_ENCRYPTION_KEY"):
    from cryptography.fernet import Fernet

    os.environ["LLMKEYPOOL_ENCRYPTION_KEY"] = Fernet.generate_key().decode()


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep host configuration out of settings-driven tests."""
    for name in (
        "API_KEYS",
        "GEMINI_API_KEYS",
        "LLMKEYPOOL_API_KEYS",
        "LLMKEYPOOL_CONFIG_FILE",
        "LLMKEYPOOL_REDIS_URL",
        "LLMKEYPOOL_MODEL",
        "LLMKEYPOOL_FALLBACK_MODELS",
        "REDIS_URL",
    ):
        monkeypatch.delenv(name, raising=False)
