"""Configuration management for whattobuy.

This module provides YAML configuration loading and access, with a handful
of environment variable overrides read from the process or a ``.env`` file.
"""

import copy
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from src.utils.exceptions import ConfigurationError

ROOT_DIR = Path(__file__).parent.parent.parent
DEFAULT_CONFIG_PATH = ROOT_DIR / "config" / "default.yaml"

# Environment variable -> dotted config key
ENV_OVERRIDES = {
    "WHATTOBUY_STORE_PATH": "store.path",
    "WHATTOBUY_LOG_LEVEL": "logging.level",
    "WHATTOBUY_PRICE_COLUMN": "moex.price_column",
    "WHATTOBUY_MOEX_URL": "moex.base_url",
}


class Config:
    """Configuration loader and accessor.

    Loads YAML configuration files and provides dict-like access to settings.

    Example:
        >>> config = Config.from_file("config/default.yaml")
        >>> ttl = config.get("cache.ttl_hours", 24)
    """

    def __init__(self, config_dict: dict[str, Any]) -> None:
        """Initialize with configuration dictionary.

        Args:
            config_dict: Configuration data as nested dictionary
        """
        self._config = config_dict

    @classmethod
    def from_file(cls, filepath: str | Path) -> "Config":
        """Load configuration from YAML file.

        Args:
            filepath: Path to YAML configuration file

        Returns:
            Config instance with loaded configuration

        Raises:
            FileNotFoundError: If config file doesn't exist
            ConfigurationError: If the file is not a YAML mapping
        """
        path = Path(filepath)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {filepath}")

        with open(path, "r", encoding="utf-8") as f:
            try:
                config_dict = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {filepath}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError(
                f"Configuration root must be a mapping, got {type(config_dict).__name__}"
            )

        return cls(config_dict)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation.

        Args:
            key: Configuration key (e.g. "moex.price_column")
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        value = self._config

        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value using dot notation.

        Intermediate mappings are created as needed.
        """
        keys = key.split(".")
        node = self._config
        for k in keys[:-1]:
            child = node.get(k)
            if not isinstance(child, dict):
                child = {}
                node[k] = child
            node = child
        node[keys[-1]] = value

    def __getitem__(self, key: str) -> Any:
        """Get configuration value using bracket notation.

        Raises:
            KeyError: If key not found
        """
        value = self.get(key)
        if value is None:
            raise KeyError(f"Configuration key not found: {key}")
        return value

    def to_dict(self) -> dict[str, Any]:
        """Get a deep copy of the full configuration."""
        return copy.deepcopy(self._config)


def apply_env_overrides(config: Config) -> Config:
    """Apply WHATTOBUY_* environment variables on top of a config.

    Args:
        config: Config to update in place

    Returns:
        The same Config instance
    """
    for env_var, key in ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            config.set(key, value)
    return config


def load_config(filepath: str | Path | None = None, env_file: str | Path | None = None) -> Config:
    """Load configuration with environment overrides.

    Args:
        filepath: Path to YAML configuration file. If None, uses
            config/default.yaml at the project root.
        env_file: Optional .env file. If None, a .env at the project root is
            loaded when present.

    Returns:
        Config instance
    """
    if env_file is None:
        env_file = ROOT_DIR / ".env"
    if Path(env_file).exists():
        load_dotenv(env_file)

    if filepath is None:
        filepath = DEFAULT_CONFIG_PATH

    return apply_env_overrides(Config.from_file(filepath))
