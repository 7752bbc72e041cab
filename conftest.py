"""Shared test fixtures for the live-trails project."""

import pytest
from rest_framework.test import APIClient

from live_trails.sync.publisher import PushGeolocationSource
from live_trails.sync.store import MemoryStore


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    """Provide a clock starting at t=0 ms."""
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    """Provide an empty in-memory store."""
    return MemoryStore()


@pytest.fixture
def source() -> PushGeolocationSource:
    """Provide a geolocation source that tests push fixes into."""
    return PushGeolocationSource()


@pytest.fixture
def api_client() -> APIClient:
    """Provide a DRF API client for testing."""
    return APIClient()
