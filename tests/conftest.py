from datetime import datetime
from unittest.mock import MagicMock

import pytest

from mapsdk import utils
from mapsdk.config import Settings, settings
from mapsdk.storage import InMemoryStorage
from mapsdk.telemetry import MapSdkContext


class FakeTransport:
    """Records telemetry requests; tests complete them by hand"""

    def __init__(self):
        self.requests = []
        self.callbacks = []

    def post_data(self, request, callback):
        self.requests.append(request)
        self.callbacks.append(callback)
        return MagicMock()

    def complete(self, error=None):
        """Finish the oldest outstanding request"""
        self.callbacks.pop(0)(error)


class FakeClock:
    def __init__(self, when: datetime):
        self.now = millis(when)

    def set(self, when: datetime):
        self.now = millis(when)

    def __call__(self) -> int:
        return self.now


def millis(when: datetime) -> int:
    """Epoch millis for a naive local datetime"""
    return int(when.timestamp() * 1000)


@pytest.fixture(autouse=True)
def reset_warnings():
    """warn_once remembers messages for the whole process"""
    utils._warned.clear()
    yield
    utils._warned.clear()


@pytest.fixture
def config():
    return Settings(
        _env_file=None,
        api_url="https://api.example-mapservice.com",
        events_url="https://events.example-mapservice.com/events/v2",
        access_token="pk.test",
        require_access_token=True,
    )


@pytest.fixture
def sdk_settings(monkeypatch):
    """Configure the module-level settings the locator helpers read"""
    monkeypatch.setattr(settings, "api_url", "https://api.example-mapservice.com")
    monkeypatch.setattr(settings, "access_token", "pk.test")
    monkeypatch.setattr(settings, "require_access_token", True)
    monkeypatch.setattr(settings, "device_pixel_ratio", 1.0)
    monkeypatch.setattr(settings, "supports_webp", False)
    return settings


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 1, 10, 0))


@pytest.fixture
def sdk(transport, storage, config, clock):
    return MapSdkContext(transport, storage, config, clock)
