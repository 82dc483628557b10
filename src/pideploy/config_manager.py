"""Configuration management module.

This module handles persistent configuration storage using TOML format.
Stores the deploy target (host, SSH user and key), the remote deploy path
and launch defaults such as the debug port and debugger command.

Security:
- Config file permissions: 0600 (owner read/write only)
- Config directory permissions: 0700
- Only key-based SSH settings are stored, never passwords
"""

import logging
import os
import tomllib
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import tomlkit

logger = logging.getLogger(__name__)

DEFAULT_DEBUGGER_COMMAND = "jdb -connect com.sun.jdi.SocketAttach:hostname={host},port={port}"


class ConfigError(Exception):
    """Raised when configuration operations fail."""

    pass


@dataclass
class PiDeployConfig:
    """pideploy configuration data."""

    hostname: str | None = None
    username: str = "pi"
    ssh_port: int = 22
    key_path: str = "~/.ssh/id_rsa"
    deploy_path: str = "pideploy"  # Relative to the remote user's home
    main_class: str | None = None
    debug_port: str = "5005"
    runtime: str = "java"
    use_sudo: bool = False  # GPIO access on the Pi usually needs root
    stop_previous: bool = True
    debugger_command: str = DEFAULT_DEBUGGER_COMMAND
    notification_command: str | None = None
    attach_timeout: int = 30

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        data = asdict(self)
        # TOML has no null
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PiDeployConfig":
        """Create from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})


class ConfigManager:
    """Manage pideploy configuration file.

    Configuration is stored at ~/.pideploy/config.toml with secure permissions.
    """

    DEFAULT_CONFIG_DIR = Path.home() / ".pideploy"
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"

    @classmethod
    def get_config_path(cls, custom_path: str | None = None) -> Path:
        """Get configuration file path.

        Args:
            custom_path: Custom config file path (optional)

        Returns:
            Path to config file
        """
        if custom_path:
            return Path(custom_path).expanduser().resolve()
        return cls.DEFAULT_CONFIG_FILE

    @classmethod
    def ensure_config_dir(cls) -> Path:
        """Ensure configuration directory exists with secure permissions.

        Returns:
            Path to config directory

        Raises:
            ConfigError: If directory creation fails
        """
        try:
            cls.DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
            os.chmod(cls.DEFAULT_CONFIG_DIR, 0o700)

            logger.debug(f"Config directory ready: {cls.DEFAULT_CONFIG_DIR}")
            return cls.DEFAULT_CONFIG_DIR

        except Exception as e:
            raise ConfigError(f"Failed to create config directory: {e}") from e

    @classmethod
    def load_config(cls, custom_path: str | None = None) -> PiDeployConfig:
        """Load configuration from file.

        Args:
            custom_path: Custom config file path (optional)

        Returns:
            PiDeployConfig object (defaults if the file does not exist)

        Raises:
            ConfigError: If loading fails
        """
        config_path = cls.get_config_path(custom_path)

        if not config_path.exists():
            logger.debug("Config file not found, using defaults")
            return PiDeployConfig()

        try:
            mode = config_path.stat().st_mode & 0o777
            if mode & 0o077:
                logger.warning(
                    f"Config file has insecure permissions: {oct(mode)}. Fixing to 0600..."
                )
                os.chmod(config_path, 0o600)

            with open(config_path, "rb") as f:
                data = tomllib.load(f)

            logger.debug(f"Loaded config from: {config_path}")
            return PiDeployConfig.from_dict(data)

        except Exception as e:
            raise ConfigError(f"Failed to load config: {e}") from e

    @classmethod
    def save_config(cls, config: PiDeployConfig, custom_path: str | None = None) -> None:
        """Save configuration to file atomically.

        Existing comments and formatting are preserved through tomlkit.

        Args:
            config: Configuration to save
            custom_path: Custom config file path (optional)

        Raises:
            ConfigError: If saving fails
        """
        temp_path: Path | None = None
        try:
            if custom_path:
                config_path = cls.get_config_path(custom_path)
                config_path.parent.mkdir(parents=True, exist_ok=True)
            else:
                cls.ensure_config_dir()
                config_path = cls.DEFAULT_CONFIG_FILE

            temp_path = config_path.with_suffix(".tmp")

            if config_path.exists():
                with open(config_path) as f:
                    doc = tomlkit.load(f)
            else:
                doc = tomlkit.document()

            config_dict = config.to_dict()
            for key in list(doc.keys()):
                if key not in config_dict:
                    del doc[key]
            for key, value in config_dict.items():
                doc[key] = value

            with open(temp_path, "w") as f:
                tomlkit.dump(doc, f)

            os.chmod(temp_path, 0o600)
            temp_path.replace(config_path)

            logger.debug(f"Saved config to: {config_path}")

        except Exception as e:
            if temp_path and temp_path.exists():
                temp_path.unlink()
            raise ConfigError(f"Failed to save config: {e}") from e

    @classmethod
    def update_config(cls, custom_path: str | None = None, **updates: Any) -> PiDeployConfig:
        """Update specific configuration values.

        Args:
            custom_path: Custom config file path (optional)
            **updates: Key-value pairs to update

        Returns:
            Updated PiDeployConfig object

        Raises:
            ConfigError: If a key is unknown or the update fails
        """
        config = cls.load_config(custom_path)

        for key, value in updates.items():
            if not hasattr(config, key):
                raise ConfigError(f"Unknown config key: {key}")
            setattr(config, key, value)

        cls.save_config(config, custom_path)
        return config

    @classmethod
    def set_value(cls, key: str, raw_value: str, custom_path: str | None = None) -> PiDeployConfig:
        """Set a single value given as a string (as typed on the command line).

        The string is coerced to the type of the field's default value.

        Raises:
            ConfigError: If the key is unknown or the value cannot be coerced
        """
        field_types = {f.name: f.type for f in fields(PiDeployConfig)}
        if key not in field_types:
            raise ConfigError(
                f"Unknown config key: {key}. Valid keys: {', '.join(sorted(field_types))}"
            )

        return cls.update_config(custom_path, **{key: cls._coerce(key, raw_value)})

    @classmethod
    def _coerce(cls, key: str, raw_value: str) -> Any:
        default = getattr(PiDeployConfig(), key)

        if isinstance(default, bool):
            lowered = raw_value.strip().lower()
            if lowered in ("1", "true", "yes", "on"):
                return True
            if lowered in ("0", "false", "no", "off"):
                return False
            raise ConfigError(f"Invalid boolean for {key}: {raw_value}")

        if isinstance(default, int):
            try:
                return int(raw_value)
            except ValueError as e:
                raise ConfigError(f"Invalid integer for {key}: {raw_value}") from e

        return raw_value


__all__ = ["DEFAULT_DEBUGGER_COMMAND", "ConfigError", "ConfigManager", "PiDeployConfig"]
