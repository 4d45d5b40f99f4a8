"""Configuration infrastructure module."""

from llmkeypool.infrastructure.config.file_loader import (
    ConfigurationError,
    ConfigurationFileLoader,
)
from llmkeypool.infrastructure.config.settings import OrchestratorSettings

__all__ = [
    "OrchestratorSettings",
    "ConfigurationFileLoader",
    "ConfigurationError",
]
