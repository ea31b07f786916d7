"""
keyexchange - Configuration Management

This module handles loading, merging, and managing configuration from
TOML files and environment variables, on top of default values.
"""

import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

# Python 3.11+ has tomllib built-in, older versions need tomli
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    CONFIG_FILENAME,
    DEFAULT_DATA_DIR,
    DEFAULT_DATABASE,
    DEFAULT_KEY_SIZE,
    DEFAULT_MESSAGES_COLLECTION,
    DEFAULT_STORE_URI,
    DEFAULT_USERS_COLLECTION,
    ENV_PREFIX,
    HASH_MEMORY_COST,
    HASH_PARALLELISM,
    HASH_TIME_COST,
    KEYS_DIRNAME,
    LEGACY_ENV_VARS,
    STORE_TIMEOUT_MS,
)
from .errors import ConfigError, ErrorCode

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "store": {
        "uri": DEFAULT_STORE_URI,
        "database": DEFAULT_DATABASE,
        "users_collection": DEFAULT_USERS_COLLECTION,
        "messages_collection": DEFAULT_MESSAGES_COLLECTION,
        "timeout_ms": STORE_TIMEOUT_MS,
    },
    "security": {
        "key_size": DEFAULT_KEY_SIZE,
        "hash_time_cost": HASH_TIME_COST,
        "hash_memory_cost": HASH_MEMORY_COST,
        "hash_parallelism": HASH_PARALLELISM,
    },
    "paths": {
        "keys_dir": "",
    },
    "logging": {
        "level": "INFO",
        "file_logging": True,
        "console_logging": True,
    },
}


class Config:
    """Configuration manager for keyexchange.

    Loads configuration from a TOML file, merges it with defaults,
    and applies environment variable overrides.

    Attributes:
        data_dir: Directory holding config, keys and logs
        config_path: Path to the configuration file
        data: Configuration dictionary
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        data_dir: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file (optional)
                If not provided, uses <data_dir>/config.toml
            data_dir: Data directory (optional, defaults to ~/.keyexchange)
            environ: Environment mapping (optional, defaults to os.environ)
        """
        self.data_dir = Path(data_dir or DEFAULT_DATA_DIR).expanduser()
        if config_path is None:
            config_path = self.data_dir / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self._environ = os.environ if environ is None else environ
        self.data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file and merge with defaults.

        Raises:
            ConfigError: If the configuration file cannot be read or parsed
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(
                    ErrorCode.E704_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e
            except OSError as e:
                raise ConfigError(
                    ErrorCode.E701_CONFIG_LOAD_FAILED,
                    f"Failed to read configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e

            config = self._merge_config(config, file_config)

        return self._apply_env_overrides(config)

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

        Legacy names (MONGODB_URI, DB_NAME, ...) are applied first, then
        variables following the pattern KEYEXCHANGE_SECTION_KEY, for example
        KEYEXCHANGE_STORE_URI=mongodb://db:27017.
        """
        result = copy.deepcopy(config)

        for env_var, (section, key) in LEGACY_ENV_VARS.items():
            env_value = self._environ.get(env_var)
            if env_value is not None:
                self._set_coerced(result, section, key, env_value)

        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key in settings:
                env_var = f"{ENV_PREFIX}_{section.upper()}_{key.upper()}"
                env_value = self._environ.get(env_var)
                if env_value is not None:
                    self._set_coerced(result, section, key, env_value)

        return result

    @staticmethod
    def _set_coerced(config: Dict[str, Any], section: str, key: str, env_value: str) -> None:
        """Store an environment string converted to the type of the current value."""
        original_type = type(config.get(section, {}).get(key, ""))
        try:
            if original_type == bool:
                value: Any = env_value.lower() in ("true", "1", "yes")
            elif original_type == int:
                value = int(env_value)
            elif original_type == float:
                value = float(env_value)
            else:
                value = env_value
        except ValueError:
            # Keep original value if conversion fails
            return
        config.setdefault(section, {})[key] = value

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self.data.get(section, {}).get(key, default)

    @property
    def keys_dir(self) -> Path:
        """Directory holding local key material."""
        configured = self.get("paths", "keys_dir")
        if configured:
            return Path(configured).expanduser()
        return self.data_dir / KEYS_DIRNAME

    @staticmethod
    def _write_toml(file, data: Dict[str, Any]) -> None:
        """Write configuration data as TOML format."""
        for section, settings in data.items():
            if isinstance(settings, dict):
                file.write(f"[{section}]\n")
                for key, value in settings.items():
                    if isinstance(value, bool):
                        file.write(f"{key} = {str(value).lower()}\n")
                    elif isinstance(value, (int, float)):
                        file.write(f"{key} = {value}\n")
                    elif isinstance(value, str):
                        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
                        file.write(f'{key} = "{escaped}"\n')
                file.write("\n")

    @classmethod
    def create_example(cls, path: Path) -> None:
        """Create an example configuration file containing the defaults.

        Raises:
            ConfigError: If file creation fails
        """
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write("# keyexchange configuration file\n")
                f.write("# Environment variables KEYEXCHANGE_<SECTION>_<KEY> override these values\n\n")
                cls._write_toml(f, DEFAULT_CONFIG)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to create example configuration: {e}",
                {"path": str(path), "error": str(e)},
            ) from e
