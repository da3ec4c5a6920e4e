import os
import random
from datetime import datetime, timedelta

import pytest

from adder.client import ConnectionMonitor, ConnectionState
from adder.mock_client import MockMessagingClient
from adder.processor import BatchProcessor
from adder.state import SafetyConfig
from adder.store import MemoryStateStore

# Force deterministic test environment
os.environ.setdefault("MOCK_MODE", "1")  # never load a real messaging client
os.environ.setdefault("QUIET_STARTUP", "1")


class FakeClock:
    """Settable wall clock; ``RecordedSleep`` advances it."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordedSleep:
    """Async sleep replacement that records waits instead of blocking."""

    def __init__(self, clock: FakeClock | None = None):
        self.calls: list[float] = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 10, 12, 0, 0))


@pytest.fixture
def sleep(clock):
    return RecordedSleep(clock)


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def client():
    return MockMessagingClient()


@pytest.fixture
def make_processor(store, client, clock, sleep):
    """Factory: ``make_processor(daily_limit=5, client=..., monitor=...)``."""

    def _make(*, client_override=None, monitor=None, **config):
        return BatchProcessor(
            SafetyConfig(**config),
            store,
            client_override or client,
            monitor or ConnectionMonitor(ConnectionState.CONNECTED),
            clock=clock,
            sleep=sleep,
            rng=random.Random(42),
        )

    return _make


def phone(n: int) -> str:
    """Distinct valid 11-digit numbers for batches."""
    return f"1555000{n:04d}"


def jid(n: int) -> str:
    return f"{phone(n)}@c.us"
