"""Shared pytest configuration and fixtures for the session relay test suite."""

import asyncio
from collections.abc import Callable

import pytest

from session_relay.config import RelayConfig
from session_relay.diagnostics import Diagnostics
from session_relay.relay.client import RelayClient
from tests.mocks import FakeBroker


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def wait_until():
    """Poll a predicate until it holds, failing the test after a timeout."""
    return _wait_until


@pytest.fixture
def config(tmp_path) -> RelayConfig:
    """Relay configuration with short timings for tests."""
    return RelayConfig(
        reconnect_period=0.01,
        fallback_timeout=0.5,
        stream_fps=50.0,
        stream_stall_seconds=5.0,
        frame_dir=tmp_path / "frames",
        ip_lookup_url="https://ip.test/json/",
        http_timeout=1.0,
    )


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def diagnostics() -> Diagnostics:
    return Diagnostics()


@pytest.fixture
def make_relay(config, broker):
    """Build RelayClients wired to the fake broker."""

    def factory(diagnostics: Diagnostics | None = None) -> RelayClient:
        return RelayClient(config, client_factory=broker.factory, diagnostics=diagnostics)

    return factory
