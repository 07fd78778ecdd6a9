"""
Pytest configuration and fixtures for Store Edge Hub tests.

This module provides shared fixtures for testing:
- Temporary config file and storage directories
- Flask application with a throwaway SQLite database
- Test client and database session
- Cloud connection with mocked transport methods
- Controllable clock
"""

import json
import os
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from edge_hub.app import create_app
from edge_hub.config import reset_config
from edge_hub.models import db
from edge_hub.services.cloud_connection import CloudConnection


class FakeClock:
    """Callable clock returning a settable naive UTC datetime."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 15, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class FakeEpochClock:
    """Callable clock returning settable epoch seconds."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def epoch_clock():
    return FakeEpochClock()


@pytest.fixture(scope='function')
def temp_config_file(tmp_path):
    """
    Create a temporary config file for testing.

    Yields:
        Path to temporary config file
    """
    config_data = {
        'cloud_url': 'https://cloud.test',
        'host_id': 'host-1',
        'host_token': 'test-token',
        'storage_path': str(tmp_path / 'storage'),
        'log_path': str(tmp_path / 'logs'),
        'install_root': str(tmp_path / 'root'),
        'port': 3101,
        'sync_backoff_seconds': 30,
    }

    config_path = tmp_path / 'config.json'
    config_path.write_text(json.dumps(config_data))

    yield str(config_path)


@pytest.fixture
def mock_cloud():
    """
    CloudConnection with its transport methods replaced by mocks.

    Message dispatch (on_message/handle_message) stays real.
    """
    cloud = CloudConnection('https://cloud.test', host_id='host-1', token='test-token')
    cloud.get = MagicMock(return_value=[])
    cloud.post = MagicMock(return_value={'success': True})
    cloud.download_file = MagicMock()
    cloud.download_external = MagicMock()
    yield cloud
    cloud.close()


@pytest.fixture(scope='function')
def app(temp_config_file, mock_cloud):
    """
    Create a Flask application configured for testing.

    - Throwaway SQLite database under tmp_path
    - Testing mode enabled (no scheduler, no runtime thread)
    - Mock cloud connection

    Yields:
        Flask application instance
    """
    reset_config()

    application = create_app(
        config_path=temp_config_file,
        overrides={'TESTING': True, 'CLOUD_CONNECTION': mock_cloud},
    )

    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()

    reset_config()


@pytest.fixture(scope='function')
def client(app):
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    with app.app_context():
        yield db.session


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep EDGE_HUB_* variables from the host out of tests."""
    for name in list(os.environ):
        if name.startswith('EDGE_HUB_'):
            monkeypatch.delenv(name, raising=False)
