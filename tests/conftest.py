"""Pytest configuration and fixtures for hue-sync tests."""

import pytest
from pathlib import Path

from core.config import SyncConfig
from fakes import FakeClock, FakeTransport, group, light, scene


@pytest.fixture
def project_root():
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Point credential and settings lookups at a temporary config file."""
    path = tmp_path / 'hue_sync' / 'config.json'
    monkeypatch.setattr('core.config.CONFIG_FILE', path)
    monkeypatch.setattr('core.auth.CONFIG_FILE', path)
    monkeypatch.delenv('HUE_BRIDGE_IP', raising=False)
    monkeypatch.delenv('HUE_API_TOKEN', raising=False)
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sync_config():
    """Settings with fast retries so dispatch tests finish quickly."""
    return SyncConfig(
        poll_interval=0.2,
        command_rate_limit=100.0,
        command_burst=100,
        group_rate_limit=None,
        command_timeout=4.0,
        max_retry_attempts=3,
        retry_backoff_base=0.01,
        retry_backoff_max=0.02,
        dispatch_workers=4,
    )


@pytest.fixture
def bridge():
    """Fake bridge with two lights, a room and a scene."""
    return FakeTransport([
        light('lamp-1', 'Desk lamp', on=False, brightness=100),
        light('lamp-2', 'Floor lamp', on=True, brightness=254, mirek=300),
        group('room-1', 'Office', on=True, brightness=200, lights=('lamp-1', 'lamp-2')),
        scene('scene-1', 'Relax', group='room-1'),
    ])
