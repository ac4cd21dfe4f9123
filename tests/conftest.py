"""
Pytest configuration for Learning State Store tests.

This module provides:
1. Async test support without pytest-asyncio
2. Common fixtures (fake clock, document, change log, persistence)
3. Test session configuration
"""

import asyncio
import functools
from pathlib import Path

import pytest

from statestore.change_log import ChangeLog
from statestore.document import PathDocument
from statestore.persistence import PersistenceManager
from statestore.scheduling import ManualTicker


# -----------------------------------------------------------------------------
# Async Test Support
# -----------------------------------------------------------------------------
def async_test(func):
    """
    Decorator to run async tests without pytest-asyncio.

    Usage:
        @async_test
        async def test_something(self):
            result = await some_async_function()
            assert result is not None
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return asyncio.run(func(*args, **kwargs))
    return wrapper


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ticker():
    return ManualTicker()


@pytest.fixture
def document(clock):
    return PathDocument(clock=clock)


@pytest.fixture
def change_log(document, clock):
    log = ChangeLog(max_entries=100, clock=clock)
    log.attach(document)
    return log


@pytest.fixture
def state_file(tmp_path) -> Path:
    return tmp_path / "state.json"


@pytest.fixture
def persistence(document, change_log, state_file, ticker, clock):
    """Persistence manager on a temp file with virtual time and no backoff."""
    return PersistenceManager(
        document,
        change_log,
        state_file,
        ticker=ticker,
        debounce_seconds=1.0,
        save_interval=30.0,
        backoff_seconds=0.0,
        clock=clock,
    )


# -----------------------------------------------------------------------------
# Session Configuration
# -----------------------------------------------------------------------------
def pytest_configure(config):
    """Configure pytest session."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as async (custom implementation)"
    )
