"""Configuration management for natfwd.

Loads configuration hierarchically: defaults -> TOML file -> environment ->
CLI overrides, and validates it once into an immutable ``Config``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping

import toml
from pydantic import ValidationError as PydanticValidationError

from natfwd.models import Config
from natfwd.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "natfwd.toml"

# Mapping of environment variables to config paths
ENV_MAPPINGS: dict[str, str] = {
    "NATPMP_GATEWAY": "gateway.address",
    "NATPMP_GATEWAY_PORT": "gateway.port",
    "NATPMP_INITIAL_TIMEOUT": "gateway.initial_timeout",
    "NATPMP_MAX_ATTEMPTS": "gateway.max_attempts",
    "NATPMP_BIND_ADDRESS": "server.bind_address",
    "NATPMP_PORT": "server.port",
    "NATPMP_MAX_DURATION": "server.max_duration",
    "NATPMP_TOKEN": "server.token",
    "NATPMP_LOG_LEVEL": "observability.log_level",
    "NATPMP_LOG_FILE": "observability.log_file",
    "NATPMP_STRUCTURED_LOGGING": "observability.structured_logging",
}

# Values kept as strings even when they look numeric
_STRING_PATHS = frozenset(
    {
        "gateway.address",
        "server.bind_address",
        "server.token",
        "observability.log_level",
        "observability.log_file",
    }
)


def _parse_env_value(raw: str, path: str) -> bool | int | float | str:
    if path in _STRING_PATHS:
        return raw
    low = raw.lower()
    if low in {"true", "yes", "on"}:
        return True
    if low in {"false", "no", "off"}:
        return False
    try:
        if "." in raw:
            return float(raw)
        return int(raw)
    except ValueError:
        return raw


def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = d
    for p in parts[:-1]:
        cur = cur.setdefault(p, {})
    cur[parts[-1]] = value


def _merge_config(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge configuration dictionaries recursively."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_config(result[key], value)
        else:
            result[key] = value
    return result


class ConfigManager:
    """Builds the validated configuration from all sources."""

    def __init__(
        self,
        config_file: str | Path | None = None,
        overrides: Mapping[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for natfwd.toml
            overrides: Dotted-path overrides (e.g. from CLI flags); None values are skipped
            environ: Environment to read (default: os.environ)

        Raises:
            ConfigurationError: If the resulting configuration is invalid

        """
        self.environ = os.environ if environ is None else environ
        self.overrides = dict(overrides or {})
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()

    def _find_config_file(self, config_file: str | Path | None) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            path = Path(config_file)
            if not path.exists():
                msg = f"Config file not found: {path}"
                raise ConfigurationError(msg)
            return path

        search_paths = [
            Path.cwd() / CONFIG_FILE_NAME,
            Path.home() / ".config" / "natfwd" / CONFIG_FILE_NAME,
        ]
        for path in search_paths:
            if path.exists():
                return path
        return None

    def _load_config(self) -> Config:
        """Load configuration from file, environment and overrides."""
        config_data: dict[str, Any] = {}

        if self.config_file is not None:
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data = toml.load(f)
            except (OSError, toml.TomlDecodeError) as e:
                msg = f"Failed to load config file {self.config_file}: {e}"
                raise ConfigurationError(msg) from e
            logger.debug("Loaded configuration from %s", self.config_file)

        config_data = _merge_config(config_data, self._get_env_config())
        config_data = _merge_config(config_data, self._get_override_config())

        if "address" not in config_data.get("gateway", {}):
            msg = "Gateway address is required (--gateway or NATPMP_GATEWAY)"
            raise ConfigurationError(msg)

        try:
            return Config(**config_data)
        except PydanticValidationError as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg, details={"errors": e.errors()}) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}
        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = self.environ.get(env_name)
            if raw is None:
                continue
            _set_nested(env_config, cfg_path, _parse_env_value(raw, cfg_path))
        return env_config

    def _get_override_config(self) -> dict[str, Any]:
        """Get configuration from explicit overrides."""
        override_config: dict[str, Any] = {}
        for cfg_path, value in self.overrides.items():
            if value is None:
                continue
            _set_nested(override_config, cfg_path, value)
        return override_config


def load_config(
    config_file: str | Path | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Config:
    """Load and validate configuration."""
    return ConfigManager(config_file, overrides).config
