"""Configuration management for studysync."""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

from .cloud.base import DEFAULT_MAX_UPLOAD_BYTES
from .cloud.google_drive import TOKEN_ENV_VAR


logger = logging.getLogger(__name__)

PROVIDERS = ("google_drive", "local_folder")
DEFAULT_CONFIG_DIR = "~/.studysync"


class ConfigError(Exception):
    """Configuration file could not be read or is invalid."""
    pass


@dataclass
class ConfigModel:
    """Configuration model for the sync service."""

    # Local storage
    data_dir: str = DEFAULT_CONFIG_DIR
    database_name: str = "studysync.db"

    # Remote storage
    provider: str = "google_drive"  # google_drive, local_folder
    remote_folder: Optional[str] = None  # root directory for local_folder
    backup_file_name: str = "studypal.db.json"
    google_drive_token: Optional[str] = None
    request_timeout: float = 30.0
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES

    # Sync behaviour
    debounce_seconds: float = 5.0
    cooldown_seconds: float = 2.0
    clock_skew_ms: int = 1000
    embed_binary_in_backup: bool = True

    def __post_init__(self):
        """Post-initialization setup."""
        self.data_dir = os.path.expanduser(self.data_dir)
        if self.remote_folder:
            self.remote_folder = os.path.expanduser(self.remote_folder)
        if self.provider not in PROVIDERS:
            raise ConfigError(f"Unknown provider '{self.provider}', expected one of {', '.join(PROVIDERS)}")
        if not self.google_drive_token:
            self.google_drive_token = os.environ.get(TOKEN_ENV_VAR) or None

    def to_yaml(self) -> str:
        """Serialize config to YAML."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        # Tokens come from the environment unless explicitly configured
        if data["google_drive_token"] == os.environ.get(TOKEN_ENV_VAR):
            data["google_drive_token"] = None
        return yaml.dump(data, default_flow_style=False, sort_keys=False)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> "ConfigModel":
        """Deserialize config from YAML."""
        data = yaml.safe_load(yaml_str) or {}
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a mapping")

        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in data.items() if k in known})

    def get_database_path(self) -> Path:
        return Path(self.data_dir) / self.database_name

    def get_sync_state_path(self) -> Path:
        return Path(self.data_dir) / "sync_state.json"

    def get_config_path(self) -> Path:
        """Get the config file path."""
        return Path(self.data_dir) / "config.yaml"


def default_config_path() -> Path:
    return Path(os.path.expanduser(DEFAULT_CONFIG_DIR)) / "config.yaml"


def load_config(config_path: Optional[Path] = None) -> ConfigModel:
    """Load configuration from file, or defaults if the file does not exist.

    Raises:
        ConfigError: If the file exists but cannot be parsed
    """
    config_path = Path(config_path) if config_path else default_config_path()
    if not config_path.exists():
        logger.debug(f"No configuration at {config_path}; using defaults")
        return ConfigModel()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config = ConfigModel.from_yaml(f.read())
    except (OSError, yaml.YAMLError, TypeError) as e:
        raise ConfigError(f"Failed to load config from {config_path}: {e}") from e

    logger.debug(f"Loaded configuration from {config_path}")
    return config


def save_config(config: ConfigModel, config_path: Optional[Path] = None) -> Path:
    """Save configuration to file."""
    config_path = Path(config_path) if config_path else config.get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(config.to_yaml())
    logger.info(f"Configuration saved to {config_path}")
    return config_path
