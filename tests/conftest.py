"""
Shared pytest fixtures for remote-promises tests.

This module provides:
- Fast reconnect settings so redial loops finish within a test
- A fresh in-process MemoryNetwork per test
- An ``eventually`` helper for polling asynchronous state
- Settings cache isolation

Usage:
    @pytest.mark.asyncio
    async def test_something(network, fast_settings, eventually):
        ...
"""

import asyncio
import os
from pathlib import Path
from typing import Callable

import pytest

from remote_promises.core.settings import RemotePromiseSettings, clear_settings_cache
from remote_promises.transports.memory import MemoryNetwork


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)
        if test_path.parts and test_path.parts[0] == "integration":
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    """Keep REMOTE_PROMISES_* from the developer's shell out of tests."""
    for key in list(os.environ):
        if key.startswith("REMOTE_PROMISES_"):
            monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def fast_settings() -> RemotePromiseSettings:
    """Settings with a short redial window."""
    return RemotePromiseSettings(reconnect_delay=0.01, reconnect_delay_max=0.05, _env_file=None)


# =============================================================================
# Transports
# =============================================================================


@pytest.fixture
def network() -> MemoryNetwork:
    return MemoryNetwork()


# =============================================================================
# Async helpers
# =============================================================================


@pytest.fixture
def eventually() -> Callable:
    """Poll ``predicate`` until it is true or ``timeout`` seconds pass."""

    async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _eventually
