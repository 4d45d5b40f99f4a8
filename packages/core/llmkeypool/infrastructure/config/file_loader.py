"""Configuration file loader for YAML and JSON files.

Expected layout (YAML shown, JSON is equivalent):

```yaml
settings:
  model: gemini-2.5-flash
  batch_size: 10
  fallback_models: [gemini-2.0-flash-lite]
model_quotas:
  gemini-2.5-flash: {rpm: 10, tpm: 250000, rpd: 250}
```
"""

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from llmkeypool.domain.models.quota_record import DEFAULT_MODEL_QUOTAS, ModelQuotas
from llmkeypool.infrastructure.config.settings import OrchestratorSettings


class ConfigurationError(Exception):
    """Raised when configuration loading or validation fails."""

    def __init__(self, message: str, field: str | None = None) -> None:
        """Initialize ConfigurationError.

        Args:
            message: Human-readable error message.
            field: Optional field name that failed validation.
        """
        self.message = message
        self.field = field
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return error message with field name if available."""
        if self.field:
            return f"Configuration error in field '{self.field}': {self.message}"
        return self.message


class ConfigurationFileLoader:
    """Loads orchestrator settings and model quota overrides from a file."""

    def __init__(self, config_file_path: str | Path | None = None) -> None:
        """Initialize ConfigurationFileLoader.

        Args:
            config_file_path: Path to the configuration file. If None, read from
                the LLMKEYPOOL_CONFIG_FILE environment variable.

        Raises:
            ConfigurationError: If no path is available or the file does not exist.
        """
        if config_file_path is None:
            config_file_path = os.getenv("LLMKEYPOOL_CONFIG_FILE")
            if not config_file_path:
                raise ConfigurationError(
                    "Configuration file path not provided and LLMKEYPOOL_CONFIG_FILE "
                    "environment variable is not set"
                )

        self._config_path = Path(config_file_path)
        if not self._config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {self._config_path}")

    def load(self) -> dict[str, Any]:
        """Load the raw configuration mapping.

        Automatically detects the format (YAML or JSON) from the file extension.

        Raises:
            ConfigurationError: If the format is unsupported or the file cannot be parsed.
        """
        suffix = self._config_path.suffix.lower()

        if suffix in (".yaml", ".yml"):
            return self._load_yaml()
        elif suffix == ".json":
            return self._load_json()
        else:
            raise ConfigurationError(
                f"Unsupported configuration file format: {suffix}. "
                "Supported formats: .yaml, .yml, .json"
            )

    def _load_yaml(self) -> dict[str, Any]:
        try:
            with self._config_path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML format: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration file: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError("YAML file must contain a dictionary/mapping")
        return data

    def _load_json(self) -> dict[str, Any]:
        try:
            with self._config_path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON format: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration file: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError("JSON file must contain an object")
        return data

    def load_settings(self, overrides: dict[str, Any] | None = None) -> OrchestratorSettings:
        """Build settings from the ``settings`` section plus ``overrides``.

        Raises:
            ConfigurationError: If the section is malformed or a value is invalid.
        """
        section = self.load().get("settings") or {}
        if not isinstance(section, dict):
            raise ConfigurationError("'settings' must be a mapping", field="settings")
        try:
            return OrchestratorSettings.from_dict({**section, **(overrides or {})})
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(loc) for loc in first.get("loc", ())) or None
            raise ConfigurationError(first.get("msg", str(e)), field=field) from e

    def load_model_quotas(self) -> dict[str, ModelQuotas]:
        """Return the built-in quota table updated with the ``model_quotas`` section.

        Raises:
            ConfigurationError: If an entry is malformed.
        """
        section = self.load().get("model_quotas") or {}
        if not isinstance(section, dict):
            raise ConfigurationError("'model_quotas' must be a mapping", field="model_quotas")

        quotas = dict(DEFAULT_MODEL_QUOTAS)
        for model, limits in section.items():
            if not isinstance(limits, dict):
                raise ConfigurationError("Quota entry must be a mapping", field=f"model_quotas.{model}")
            try:
                quotas[str(model)] = ModelQuotas(**limits)
            except (ValidationError, TypeError) as e:
                raise ConfigurationError(str(e), field=f"model_quotas.{model}") from e
        return quotas
