"""Configuration loading for natfwd."""

from natfwd.config.config import ConfigManager, load_config

__all__ = ["ConfigManager", "load_config"]
