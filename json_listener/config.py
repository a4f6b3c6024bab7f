"""
Configuration management for json-listener.

Handles loading, saving, and updating the listener configuration file.
"""

import logging
import os
from pathlib import Path
from typing import Optional, Any

from pydantic import ValidationError

from json_listener.models import ListenerConfig
from json_listener.atomic import AtomicFileWriter
from json_listener.errors import ConfigurationError


logger = logging.getLogger(__name__)

# Default configuration paths
DEFAULT_CONFIG_DIR = Path.home() / ".config" / "json-listener"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.json"

# Environment overrides (may be loaded from a .env file by the CLI)
ENV_DATABASE_URL = "JSON_LISTENER_DATABASE_URL"
ENV_AUTH_TOKEN = "JSON_LISTENER_AUTH_TOKEN"


def format_validation_error(error: ValidationError) -> str:
    """Flatten a pydantic error into the first human readable message."""
    errors = error.errors()
    if not errors:
        return str(error)
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", str(error))
    # pydantic prefixes messages raised from validators
    message = message.replace("Value error, ", "")
    return f"{field}: {message}" if field else message


class ConfigManager:
    """
    Manages json-listener configuration.

    Loads configuration from disk, applies validated updates and persists
    changes atomically.
    """

    def __init__(self, config_file: Optional[Path] = None):
        """
        Initialize configuration manager.

        Args:
            config_file: Path to configuration file. Defaults to ~/.config/json-listener/config.json
        """
        self.config_file = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
        self.config_file.parent.mkdir(parents=True, exist_ok=True)

        self.config = self._load_config()

    def _load_config(self) -> ListenerConfig:
        """Load configuration from file or create default."""
        data = AtomicFileWriter.read_json(self.config_file)

        if data is None:
            return self._create_default_config()

        try:
            return ListenerConfig(**data)
        except (ValidationError, TypeError) as e:
            logger.warning(f"Invalid config file {self.config_file}, using defaults: {e}")
            return self._create_default_config()

    def _create_default_config(self) -> ListenerConfig:
        """Create default configuration."""
        return ListenerConfig()

    def save_config(self) -> None:
        """Save configuration atomically."""
        self.config.touch()
        AtomicFileWriter.write_json(self.config_file, self.config.model_dump(mode="json"), indent=2)

    def reload(self) -> None:
        """Reload configuration from disk."""
        self.config = self._load_config()

    def _assign(self, target: Any, key: str, value: Any) -> None:
        try:
            setattr(target, key, value)
        except ValidationError as e:
            raise ConfigurationError(format_validation_error(e)) from e

    # Paths and destination

    def set_watch_dir(self, path: str) -> None:
        """
        Set the watched directory.

        Raises:
            ConfigurationError: If path doesn't exist or is not a directory
        """
        self._assign(self.config, "watch_dir", path)
        self.save_config()

    def set_log_dir(self, path: str) -> None:
        """Set the directory for the operational and failure logs."""
        self._assign(self.config, "log_dir", path)
        self.save_config()

    def set_destination_path(self, destination: str) -> None:
        """Set the sink path files are posted to."""
        self._assign(self.config, "destination_path", destination)
        self.save_config()

    def set_database_url(self, url: Optional[str]) -> None:
        """Set the Firebase database base URL."""
        self._assign(self.config, "database_url", url)
        self.save_config()

    def get_database_url(self) -> Optional[str]:
        """Database URL, with the environment taking precedence over the file."""
        return os.environ.get(ENV_DATABASE_URL) or self.config.database_url

    def get_auth_token(self) -> Optional[str]:
        """Firebase auth token. Only ever read from the environment."""
        return os.environ.get(ENV_AUTH_TOKEN)

    # Settings management

    def update_settings(self, **kwargs) -> None:
        """
        Update listener settings.

        Args:
            **kwargs: Settings to update (max_threads, poll_interval_ms, etc.)

        Raises:
            ConfigurationError: If a key is unknown or a value is out of range
        """
        settings = self.config.settings
        for key, value in kwargs.items():
            if key not in type(settings).model_fields:
                raise ConfigurationError(f"Unknown setting: {key}")
            self._assign(settings, key, value)

        self.save_config()


def get_default_config_manager() -> ConfigManager:
    """Get the default configuration manager."""
    return ConfigManager(DEFAULT_CONFIG_FILE)
