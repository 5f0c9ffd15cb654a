"""
Dropshare - Configuration Management

This module handles loading, validating and saving configuration from
TOML files and environment variables. Values missing from the file fall
back to the defaults below.

Author: orpheus497
Version: 1.0.0
"""

import copy
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

# Python 3.11+ has tomllib built-in, older versions need tomli
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    CHUNK_SEND_DELAY,
    CLEARTEXT_FALLBACK,
    CONFIG_FILENAME,
    DEFAULT_DATA_DIR,
    DEFAULT_DOWNLOAD_DIR,
    DEFAULT_LOG_LEVEL,
    DISCONNECT_GRACE_PERIOD,
    FILE_CHUNK_SIZE,
    MAX_CHUNK_SIZE,
    MAX_FILE_SIZE,
    MUTUAL_AUTHENTICATION,
)
from .errors import ConfigError, ErrorCode

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "transfer": {
        "chunk_size": FILE_CHUNK_SIZE,
        "chunk_delay": CHUNK_SEND_DELAY,
        "cleartext_fallback": CLEARTEXT_FALLBACK,
        "max_file_size": MAX_FILE_SIZE,
        "download_dir": DEFAULT_DOWNLOAD_DIR,
    },
    "session": {
        "display_name": "",
        "disconnect_grace_period": DISCONNECT_GRACE_PERIOD,
    },
    "security": {
        "mutual_authentication": MUTUAL_AUTHENTICATION,
    },
    "logging": {
        "level": DEFAULT_LOG_LEVEL,
    },
}

# Written above each section of a generated file
SECTION_COMMENTS = {
    "transfer": "Chunked file transfer (sizes in bytes, delays in seconds)",
    "session": "Peer sessions; an empty display_name picks a random one",
    "security": "Require both peers to answer a challenge",
    "logging": "One of DEBUG, INFO, WARNING, ERROR, CRITICAL",
}


def default_config_path() -> Path:
    return Path(DEFAULT_DATA_DIR).expanduser() / CONFIG_FILENAME


class Config:
    """Configuration manager for Dropshare.

    Loads configuration from a TOML file, merges it with the defaults,
    applies environment variable overrides and validates the result.

    Attributes:
        config_path: Path to the configuration file
        data: Configuration dictionary
    """

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file (default: ~/.dropshare/config.toml)

        Raises:
            ConfigError: If the file cannot be parsed or holds invalid values
        """
        self.config_path = Path(config_path) if config_path else default_config_path()
        self.data = self._load_config()

    @classmethod
    def defaults(cls) -> "Config":
        """Build a configuration that ignores any file on disk.

        Environment overrides still apply.
        """
        config = cls.__new__(cls)
        config.config_path = default_config_path()
        config.data = config._apply_env_overrides(copy.deepcopy(DEFAULT_CONFIG))
        config._validate(config.data)
        return config

    def _load_config(self) -> Dict[str, Any]:
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigError(
                    ErrorCode.E704_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                )
            config = self._merge_config(config, file_config)

        config = self._apply_env_overrides(config)
        self._validate(config)
        return config

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge override config into base config."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration.

        Environment variables follow the pattern: DROPSHARE_SECTION_KEY
        For example: DROPSHARE_TRANSFER_CHUNK_DELAY=0.05

        Values are converted to the type of the setting they replace; a
        value that does not convert is ignored.
        """
        result = copy.deepcopy(config)

        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key, current in settings.items():
                env_value = os.environ.get(f"DROPSHARE_{section.upper()}_{key.upper()}")
                if env_value is None:
                    continue

                try:
                    if isinstance(current, bool):
                        result[section][key] = env_value.lower() in ("true", "1", "yes")
                    elif isinstance(current, int):
                        result[section][key] = int(env_value)
                    elif isinstance(current, float):
                        result[section][key] = float(env_value)
                    else:
                        result[section][key] = env_value
                except ValueError:
                    # Keep original value if conversion fails
                    pass

        return result

    @staticmethod
    def _validate(config: Dict[str, Any]) -> None:
        """Reject values the transfer engine and session manager cannot use.

        Raises:
            ConfigError: For the first invalid value found
        """
        for section in DEFAULT_CONFIG:
            if not isinstance(config.get(section), dict):
                raise ConfigError(
                    ErrorCode.E703_CONFIG_INVALID_VALUE,
                    f"Invalid section [{section}]: expected a table",
                    {"section": section, "value": config.get(section)},
                )

        def invalid(section: str, key: str, reason: str) -> ConfigError:
            return ConfigError(
                ErrorCode.E703_CONFIG_INVALID_VALUE,
                f"Invalid setting {section}.{key}: {reason}",
                {"section": section, "key": key, "value": config[section].get(key)},
            )

        def number(section: str, key: str) -> float:
            value = config[section].get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise invalid(section, key, "expected a number")
            return value

        chunk_size = config["transfer"].get("chunk_size")
        if isinstance(chunk_size, bool) or not isinstance(chunk_size, int):
            raise invalid("transfer", "chunk_size", "expected an integer")
        if not 0 < chunk_size <= MAX_CHUNK_SIZE:
            raise invalid("transfer", "chunk_size", f"must be between 1 and {MAX_CHUNK_SIZE}")

        if number("transfer", "chunk_delay") < 0:
            raise invalid("transfer", "chunk_delay", "must not be negative")
        if number("transfer", "max_file_size") <= 0:
            raise invalid("transfer", "max_file_size", "must be positive")
        if number("session", "disconnect_grace_period") < 0:
            raise invalid("session", "disconnect_grace_period", "must not be negative")

        for section, key in (
            ("transfer", "cleartext_fallback"),
            ("security", "mutual_authentication"),
        ):
            if not isinstance(config[section].get(key), bool):
                raise invalid(section, key, "expected true or false")

        level = config["logging"].get("level")
        if not isinstance(level, str) or level.upper() not in LOG_LEVELS:
            raise invalid("logging", "level", f"expected one of {', '.join(LOG_LEVELS)}")

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            section: Configuration section name
            key: Configuration key name
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value."""
        self.data.setdefault(section, {})[key] = value

    def save(self, path: Optional[Path] = None) -> Path:
        """Write the current configuration as TOML.

        Args:
            path: Destination (default: the file this configuration was loaded from)

        Returns:
            The path written

        Raises:
            ConfigError: If saving fails
        """
        target = Path(path) if path else self.config_path
        self._write_file(target, self.data, "Saved configuration")
        return target

    @classmethod
    def create_example(cls, path: Path) -> None:
        """Write the default configuration, with section comments, to ``path``.

        Raises:
            ConfigError: If file creation fails
        """
        cls._write_file(Path(path), DEFAULT_CONFIG, "Generated example configuration")

    @classmethod
    def _write_file(cls, path: Path, data: Dict[str, Any], title: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write("# Dropshare Configuration File\n")
                f.write(f"# {title}\n\n")
                cls._write_toml(f, data)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to write configuration: {e}",
                {"path": str(path), "error": str(e)},
            )

    @staticmethod
    def _write_toml(file: TextIO, data: Dict[str, Any]) -> None:
        for section, settings in data.items():
            if not isinstance(settings, dict):
                continue
            if section in SECTION_COMMENTS:
                file.write(f"# {SECTION_COMMENTS[section]}\n")
            file.write(f"[{section}]\n")
            for key, value in settings.items():
                if isinstance(value, bool):
                    file.write(f"{key} = {str(value).lower()}\n")
                elif isinstance(value, (int, float)):
                    file.write(f"{key} = {value}\n")
                elif isinstance(value, str):
                    # JSON string escapes are valid TOML basic strings
                    file.write(f"{key} = {json.dumps(value)}\n")
            file.write("\n")

    def to_dict(self) -> Dict[str, Any]:
        """Get configuration as dictionary."""
        return copy.deepcopy(self.data)
