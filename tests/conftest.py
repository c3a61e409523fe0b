"""Global pytest fixtures and configuration."""

import time
from unittest.mock import AsyncMock

import pytest

from healthcheck.backend.http_client import Ack
from healthcheck.config import LifecycleSettings, LivenessSettings, Settings, TransportSettings
from healthcheck.records import LocalRecordStore, StaticIdentityProvider
from healthcheck.state import Stage, Verdict
from healthcheck.telemetry import Reading


def _make_reading(stage, value, is_final=False):
    return Reading(stage=stage, value=value, is_final=is_final, received_at=time.time())


@pytest.fixture
def temperature():
    """Factory for temperature readings that skip the normalizer."""
    def _make(value=36.6, is_final=False):
        return _make_reading(Stage.TEMPERATURE, value, is_final)
    return _make


@pytest.fixture
def verdict():
    """Factory for breathalyser readings; determinate verdicts are final."""
    def _make(value=Verdict.NORMAL):
        return _make_reading(Stage.ALCOHOL, value, value.determinate)
    return _make


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the environment, with short timers."""
    return Settings(
        _env_file=None,
        backend_api_url="http://backend.test",
        record_path=tmp_path / "kiosk.json",
        log_directory=tmp_path / "logs",
        liveness=LivenessSettings(timeout_seconds=0.2, countdown_seconds=15, tick_seconds=0.05),
        transport=TransportSettings(sensor_ws_url=None),
        lifecycle=LifecycleSettings(auto_restart=False, settle_delay_seconds=0.0),
    )


@pytest.fixture
def record_store(tmp_path):
    return LocalRecordStore(tmp_path / "kiosk.json")


@pytest.fixture
def identity():
    return StaticIdentityProvider("face-123")


@pytest.fixture
def results_client():
    """Mock results endpoint that always acknowledges."""
    client = AsyncMock()
    client.post_results = AsyncMock(return_value=Ack(status_code=200, body={"id": "ack-1"}))
    return client
