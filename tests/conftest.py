"""Shared test fixtures for the Repair ASAP test suite."""

from __future__ import annotations

import os

import pytest

from src.services.cache import CachedPhoto


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py picks them up on load.
    """
    os.environ.setdefault("OPENAI_API_KEY", "test-openai-key-123")
    os.environ.setdefault("OPENAI_ASSISTANT_ID", "asst_test")
    os.environ.setdefault("METRICS_ENABLED", "false")


class FakeClock:
    """Monotonic clock that only moves when told to (or when slept on)."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def photo():
    return CachedPhoto(data=b"\xff\xd8\xff\xe0fake-jpeg", mime_type="image/jpeg", file_name="leak.jpg")
