import asyncio
from datetime import date

import pytest

from campus_alerts.config import get_settings


TODAY = date(2026, 10, 16)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CollectingSink:
    """Notification sink that records (loop time, message) pairs."""

    def __init__(self):
        self.deliveries = []

    async def __call__(self, message: str) -> None:
        self.deliveries.append((asyncio.get_running_loop().time(), message))

    @property
    def messages(self):
        return [message for _, message in self.deliveries]

    async def wait_for(self, count: int, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while len(self.deliveries) < count:
            if loop.time() > deadline:
                raise AssertionError(f"expected {count} deliveries, got {self.messages}")
            await asyncio.sleep(0.005)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return CollectingSink()


@pytest.fixture
def today():
    return TODAY


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
