"""
Configuration management for space-monitor.

The persisted configuration lives in a JSON file. A ``.env`` file and
environment variables override parts of it at runtime without being saved.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from space_monitor.atomic import AtomicFileWriter, FileLock
from space_monitor.models import MonitorConfig, MonitorSettings, SpaceConfig


logger = logging.getLogger(__name__)


# Default configuration paths
DEFAULT_CONFIG_DIR = Path.home() / ".config" / "space-monitor"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.json"

# Environment variables
ENV_CONFIG = "SPACE_MONITOR_CONFIG"
ENV_PERSONAL_ROOT = "SPACE_MONITOR_PERSONAL_ROOT"
ENV_CACHE_BACKEND = "SPACE_MONITOR_CACHE_BACKEND"
ENV_REDIS_URL = "SPACE_MONITOR_REDIS_URL"


def load_environment(env_file: Optional[Path] = None) -> bool:
    """
    Load a .env file into the process environment.

    Variables already set in the environment win over the file.

    Args:
        env_file: Path of the .env file (searched from the working directory when omitted)

    Returns:
        True if a file was loaded
    """
    if env_file is not None:
        return load_dotenv(env_file)
    return load_dotenv()


def resolve_config_file(config_file: Optional[Path] = None) -> Path:
    """Explicit path, then $SPACE_MONITOR_CONFIG, then the default location."""
    if config_file:
        return Path(config_file)
    env_path = os.environ.get(ENV_CONFIG)
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_FILE


class ConfigManager:
    """
    Manages monitor configuration.

    Handles loading configuration from disk, making updates,
    and persisting changes atomically.
    """

    def __init__(self, config_file: Optional[Path] = None):
        """
        Initialize configuration manager.

        Args:
            config_file: Path to configuration file. Defaults to ~/.config/space-monitor/config.json
        """
        self.config_file = resolve_config_file(config_file)
        self.config_file.parent.mkdir(parents=True, exist_ok=True)

        # Lock file for config access
        self.lock = FileLock(self.config_file.with_suffix('.lock'))

        self.config = self._load_config()

    def _load_config(self) -> MonitorConfig:
        """Load configuration from file or create default."""
        data = AtomicFileWriter.read_json(self.config_file)

        if data is None:
            return MonitorConfig()

        try:
            return MonitorConfig(**data)
        except ValueError as e:
            logger.warning(f"Invalid config file {self.config_file}, using defaults: {e}")
            return MonitorConfig()

    def save_config(self) -> None:
        """Save configuration atomically with locking."""
        if not self.lock.acquire(timeout=5):
            raise RuntimeError("Could not acquire config lock")

        try:
            AtomicFileWriter.write_json(self.config_file, self.config.model_dump(), indent=2)
        finally:
            self.lock.release()

    def reload(self) -> None:
        """Reload configuration from disk."""
        self.config = self._load_config()

    def effective_config(self) -> MonitorConfig:
        """
        The stored configuration with environment overrides applied.

        Returns:
            A copy; the stored configuration is not modified
        """
        config = self.config.model_copy(deep=True)

        personal_root = os.environ.get(ENV_PERSONAL_ROOT)
        if personal_root:
            config.set_personal_root(personal_root)

        overrides: Dict[str, Any] = {}
        if os.environ.get(ENV_CACHE_BACKEND):
            overrides["cache_backend"] = os.environ[ENV_CACHE_BACKEND]
        if os.environ.get(ENV_REDIS_URL):
            overrides["redis_url"] = os.environ[ENV_REDIS_URL]

        if overrides:
            config.settings = MonitorSettings.model_validate({**config.settings.model_dump(), **overrides})

        return config

    # Personal root

    def set_personal_root(self, path: str) -> None:
        """
        Set the personal content root.

        Raises:
            ValueError: If path doesn't exist or is not a directory
        """
        self.config.set_personal_root(path)
        self.save_config()

    def get_personal_root(self) -> Optional[str]:
        return self.config.personal_root

    # Space management

    def add_space(self, name: str, path: str, access: str = "readwrite") -> SpaceConfig:
        """
        Add a named space to monitor.

        Raises:
            ValueError: If the name exists or the folder is invalid
        """
        space = self.config.add_space(name=name, path=path, access=access)
        self.save_config()
        return space

    def remove_space(self, name: str) -> bool:
        """
        Remove a named space.

        Returns:
            True if removed, False if not found
        """
        result = self.config.remove_space(name)
        if result:
            self.save_config()
        return result

    def list_spaces(self) -> List[SpaceConfig]:
        return self.config.spaces

    def get_space(self, name: str) -> Optional[SpaceConfig]:
        return self.config.get_space(name)

    # Settings management

    def update_settings(self, **kwargs) -> MonitorSettings:
        """
        Update global settings.

        Values are validated (and coerced) by the settings model.

        Raises:
            ValueError: For an unknown setting or an invalid value
        """
        for key in kwargs:
            if key not in MonitorSettings.model_fields:
                raise ValueError(f"Unknown setting: {key}")

        self.config.settings = MonitorSettings.model_validate({**self.config.settings.model_dump(), **kwargs})
        self.save_config()
        return self.config.settings
