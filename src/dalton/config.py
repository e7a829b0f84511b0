"""Configuration management for dalton.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./dalton.yaml``
  3. ``~/.dalton/dalton.yaml``
  4. Built-in defaults

``DALTON_*`` environment variables override the timeout and retry limits
after the file is read.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, model_validator

from dalton.llm.errors import ProviderConfigurationError
from dalton.llm.retry import RetryPolicy

_logger = logging.getLogger(__name__)


class ProviderSpec(BaseModel):
    """Connection details for one provider, as handed to the chat core."""

    type: str | None = None  # variant name; defaults to the provider's key
    base_url: str | None = None
    api_key: str = "no-key"
    api_key_env: str | None = None
    enabled: bool = True
    deployment_name: str | None = None  # azure
    api_version: str | None = None  # azure
    headers: dict[str, str] = Field(default_factory=dict)
    extra_params: dict[str, Any] = Field(default_factory=dict)  # merged into every request

    def resolved_api_key(self) -> str:
        if self.api_key_env:
            value = os.environ.get(self.api_key_env)
            if value:
                return value
        return self.api_key


class TimeoutLimits(BaseModel):
    """Bounds for the end-to-end timeout of a chat call, in milliseconds."""

    default_ms: int = 30_000
    min_ms: int = 1_000
    max_ms: int = 600_000

    @model_validator(mode="after")
    def _check_bounds(self) -> TimeoutLimits:
        if self.min_ms < 100:
            raise ValueError("Minimum API timeout must be at least 100ms")
        if self.max_ms < self.min_ms:
            raise ValueError("Maximum API timeout must be greater than minimum")
        if not self.min_ms <= self.default_ms <= self.max_ms:
            raise ValueError("Default API timeout must be between min and max")
        return self


class DaltonConfig(BaseModel):
    default_provider: str = "openai"
    default_model: str = ""
    providers: dict[str, ProviderSpec] = Field(default_factory=dict)
    timeouts: TimeoutLimits = Field(default_factory=TimeoutLimits)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    def provider_spec(self, name: str) -> ProviderSpec:
        """Return the spec for *name*; unknown or disabled providers raise."""
        if not isinstance(name, str) or not name.strip():
            raise ProviderConfigurationError("Provider name must be a non-empty string")
        spec = self.providers.get(name)
        if spec is None or not spec.enabled:
            raise ProviderConfigurationError(
                f"Provider '{name}' is not configured or not enabled.", provider=name,
            )
        return spec


CONFIG_FILENAME = "dalton.yaml"

# env var -> (section, field)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "DALTON_API_TIMEOUT_DEFAULT": ("timeouts", "default_ms"),
    "DALTON_API_TIMEOUT_MIN": ("timeouts", "min_ms"),
    "DALTON_API_TIMEOUT_MAX": ("timeouts", "max_ms"),
    "DALTON_MAX_RETRIES": ("retry", "max_attempts"),
    "DALTON_RETRY_INITIAL_DELAY": ("retry", "initial_delay_ms"),
    "DALTON_RETRY_MAX_DELAY": ("retry", "max_delay_ms"),
    "DALTON_RETRY_BACKOFF_MULTIPLIER": ("retry", "backoff_multiplier"),
    "DALTON_RETRY_JITTER_FACTOR": ("retry", "jitter_factor"),
}


def _apply_env(raw: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = env.get(var)
        if value is None or not value.strip():
            continue
        raw.setdefault(section, {})
        raw[section][key] = value.strip()
        _logger.debug("Config override from %s: %s.%s", var, section, key)
    return raw


def load_config(
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[DaltonConfig, Path | None]:
    """Load configuration from YAML plus environment overrides.

    Returns (config, resolved_path).  *resolved_path* is ``None`` when no
    file was found and built-in defaults are used.  An explicit path that
    does not exist raises ``FileNotFoundError``.
    """
    env = os.environ if env is None else env

    if config_path is None:
        for candidate in (
            Path.cwd() / CONFIG_FILENAME,
            Path.home() / ".dalton" / CONFIG_FILENAME,
        ):
            if candidate.exists():
                config_path = candidate
                break

    raw: dict[str, Any] = {}
    resolved: Path | None = None
    if config_path is not None:
        resolved = Path(config_path)
        if not resolved.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        _logger.info("Loading config from %s", resolved)
        with open(resolved) as f:
            raw = yaml.safe_load(f) or {}
        resolved = resolved.resolve()
    else:
        _logger.info("No config file found, using defaults")

    return DaltonConfig.model_validate(_apply_env(raw, env)), resolved
