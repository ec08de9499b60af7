"""Shared fixtures for PW client tests."""

import pytest

from pw_client.pipeline import DispatchPipeline
from pw_client.types import GameClientSettings


@pytest.fixture
def pipeline():
    return DispatchPipeline()


@pytest.fixture
def fast_settings():
    """Settings with short timings so retry paths run quickly."""
    return GameClientSettings(
        max_reconnect_attempts=2,
        retry_interval=0.01,
        attempt_window=10.0,
        init_timeout=0.5,
        init_redelivery_delay=10.0,
        endpoint="wss://game.test",
    )
