"""Shared fixtures for the Quillsync tests."""

import pytest

from quillsync.clock import ServerClock
from quillsync.storage import MemoryStore


class FakeTime:
    """Manually advanced client time (seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def clock(fake_time):
    """Clock driven by fake_time, without offset."""
    return ServerClock(time_source=fake_time)


@pytest.fixture
def store():
    return MemoryStore("test")
