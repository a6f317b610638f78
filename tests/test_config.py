"""Tests for configuration functions in core/config.py

File tests write only to pytest's tmp_path.
"""

import json
import os
import stat
from pathlib import Path

import pytest

from core.config import (
    CONFIG_FILE,
    MIN_POLL_INTERVAL,
    SyncConfig,
    load_config,
    load_sync_config,
    save_config,
)
from core.errors import ConfigError


class TestConstants:
    """Test that constants are properly defined."""

    def test_config_file_path(self):
        """CONFIG_FILE should be a config.json path."""
        assert isinstance(CONFIG_FILE, Path)
        assert CONFIG_FILE.name.endswith('.json')


class TestSyncConfig:
    """Tests for SyncConfig validation."""

    def test_defaults(self):
        config = SyncConfig()
        assert config.poll_interval == 1.0
        assert config.command_rate_limit == 10.0
        assert config.command_timeout == 4.0
        assert config.max_retry_attempts == 3

    def test_poll_interval_floor(self):
        """Polling faster than the floor is clamped, not rejected."""
        assert SyncConfig(poll_interval=0.01).poll_interval == MIN_POLL_INTERVAL

    @pytest.mark.parametrize('field, value', [
        ('command_rate_limit', 0),
        ('command_timeout', -1),
        ('command_burst', 0),
        ('max_retry_attempts', 1.5),
        ('dispatch_workers', 0),
        ('xy_tolerance', -0.1),
        ('group_rate_limit', 0),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ConfigError):
            SyncConfig(**{field: value})

    def test_group_rate_limit_can_be_disabled(self):
        assert SyncConfig(group_rate_limit=None).group_rate_limit is None

    def test_from_dict_ignores_unknown_keys(self):
        config = SyncConfig.from_dict({'poll_interval': 2.0, 'colour': 'blue'})
        assert config.poll_interval == 2.0

    def test_round_trip_dict(self):
        config = SyncConfig(command_timeout=6.0)
        assert SyncConfig.from_dict(config.to_dict()) == config


class TestConfigFile:
    """Tests for load_config and save_config."""

    def test_missing_file(self, tmp_path):
        assert load_config(tmp_path / 'missing.json') == {}

    def test_save_and_load(self, tmp_path):
        path = tmp_path / 'sub' / 'config.json'
        save_config({'bridge_ip': '10.0.0.2'}, path)

        assert load_config(path) == {'bridge_ip': '10.0.0.2'}
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_invalid_json(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text('{not json')
        with pytest.raises(ConfigError):
            load_config(path)

    def test_non_object(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text('[1, 2]')
        with pytest.raises(ConfigError):
            load_config(path)

    def test_load_sync_config(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text(json.dumps({'api_token': 'x', 'sync': {'command_timeout': 8}}))
        assert load_sync_config(path).command_timeout == 8

    def test_load_sync_config_without_section(self, tmp_path):
        assert load_sync_config(tmp_path / 'missing.json') == SyncConfig()
