"""Configuration management.

This module handles:
- Loading/saving the user configuration file (credentials and sync settings)
- SyncConfig: tuning knobs for polling, rate limiting, retries and
  convergence tolerances
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path

from core.errors import ConfigError

logger = logging.getLogger(__name__)

# Configuration file path, overridable for multiple bridges or tests
CONFIG_FILE = Path(os.getenv('HUE_SYNC_CONFIG', Path.home() / '.hue_sync' / 'config.json'))

# Polling spends the bridge's request budget too, so it has a floor
MIN_POLL_INTERVAL = 0.2


@dataclass
class SyncConfig:
    """Tuning knobs for a SyncEngine.

    The rate limits and tolerances are bridge specific; the defaults follow
    the documented ceiling of roughly 10 light commands and 1 group command
    per second.
    """
    poll_interval: float = 1.0
    command_rate_limit: float = 10.0
    command_burst: int = 10
    group_rate_limit: float | None = 1.0
    command_timeout: float = 4.0
    max_retry_attempts: int = 3
    retry_backoff_base: float = 0.25
    retry_backoff_max: float = 2.0
    transport_timeout: float = 5.0
    dispatch_workers: int = 4
    brightness_tolerance: int = 2
    xy_tolerance: float = 0.01
    mirek_tolerance: int = 2
    speed_tolerance: float = 0.01

    def __post_init__(self):
        positive = ('command_rate_limit', 'command_timeout', 'retry_backoff_base',
                    'retry_backoff_max', 'transport_timeout')
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")

        for name in ('command_burst', 'max_retry_attempts', 'dispatch_workers'):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise ConfigError(f"{name} must be an integer of at least 1, got {value!r}")

        for name in ('brightness_tolerance', 'xy_tolerance', 'mirek_tolerance', 'speed_tolerance'):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} cannot be negative")

        if self.group_rate_limit is not None and self.group_rate_limit <= 0:
            raise ConfigError("group_rate_limit must be positive or null")

        if self.poll_interval < MIN_POLL_INTERVAL:
            logger.warning("poll_interval %.3fs is below the %.1fs floor, using the floor",
                           self.poll_interval, MIN_POLL_INTERVAL)
            self.poll_interval = MIN_POLL_INTERVAL

    @classmethod
    def from_dict(cls, data: dict) -> 'SyncConfig':
        """Build a SyncConfig from a dict, ignoring unknown keys.

        Raises:
            ConfigError: If a value is invalid
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("Ignoring unknown sync settings: %s", ', '.join(unknown))
        try:
            return cls(**{key: value for key, value in data.items() if key in known})
        except TypeError as e:
            raise ConfigError(f"Invalid sync settings: {e}") from e

    def to_dict(self) -> dict:
        return asdict(self)


def load_config(path: Path | None = None) -> dict:
    """Load the user configuration file.

    Args:
        path: Config file to read (defaults to CONFIG_FILE)

    Returns:
        Dict with optional 'bridge_ip', 'api_token' and 'sync' keys; empty
        if the file does not exist

    Raises:
        ConfigError: If the file exists but is not valid JSON
    """
    path = path or CONFIG_FILE
    if not path.exists():
        return {}
    try:
        with open(path, 'r') as f:
            config = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        raise ConfigError(f"Failed to read {path}: {e}") from e
    if not isinstance(config, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    return config


def save_config(config: dict, path: Path | None = None):
    """Save the user configuration file with user-only permissions.

    Args:
        config: Configuration dict to save
        path: Config file to write (defaults to CONFIG_FILE)
    """
    path = path or CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, 'w') as f:
        json.dump(config, f, indent=2)

    # The file holds the bridge application key
    os.chmod(path, 0o600)


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load the 'sync' section of the config file as a SyncConfig."""
    return SyncConfig.from_dict(load_config(path).get('sync', {}))
