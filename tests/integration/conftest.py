"""
Integration test fixtures.

These fixtures run a real MonitorService against a scripted feed and
verify cross-component interactions.
"""

import asyncio

import pytest

from price_monitor.core.service import MonitorService, ServiceConfig

# Mark all tests in this directory as integration tests
pytestmark = pytest.mark.integration


@pytest.fixture
def integration_config():
    """Fast timers, two banded symbols."""
    return ServiceConfig(
        symbols=["BTCUSDT", "ETHUSDT"],
        thresholds={"BTCUSDT": (100.0, 110.0), "ETHUSDT": (2400.0, 2400.0)},
        reconnect_attempts=3,
        reconnect_delay=0.01,
        subscription_delay=0,
        heartbeat_interval=60,
        notify_drain_timeout=1.0,
    )


@pytest.fixture
def make_service(integration_config, notifier, scripted_feed):
    """Build a service wired to the scripted feed."""

    def _make(**overrides):
        for key, value in overrides.items():
            setattr(integration_config, key, value)
        return MonitorService(
            config=integration_config,
            notifier=notifier,
            connector=scripted_feed,
        )

    return _make


@pytest.fixture
def shutdown_service():
    async def _shutdown(service, task, timeout=5.0):
        service.request_shutdown("test finished")
        return await asyncio.wait_for(task, timeout=timeout)

    return _shutdown
