"""
Core layer test fixtures.

Core tests verify tracking and orchestration logic, so the feed transport
and the notifier are faked.
"""
import asyncio
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from price_monitor.core.service import MonitorService, ServiceConfig
from price_monitor.core.threshold_tracker import ThresholdTracker
from price_monitor.ingestion.models import PriceTick
from price_monitor.monitoring.alerting import AlertDeduplicator
from price_monitor.monitoring.notifier import WebhookNotifier


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Tick Fixtures
# =============================================================================


@pytest.fixture
def make_tick():
    """Factory for ticks with a fixed timestamp."""

    def _make(symbol="BTCUSDT", last=100.0, open_24h=None):
        return PriceTick(
            symbol=symbol,
            last=last,
            open_24h=open_24h if open_24h is not None else last,
            timestamp=datetime(2024, 6, 10, 12, 0, 0, tzinfo=timezone.utc),
        )

    return _make


@pytest.fixture
def tracker():
    """Tracker with a 100-110 band on BTCUSDT."""
    return ThresholdTracker({"BTCUSDT": (100.0, 110.0)}, change_threshold=0.01)


# =============================================================================
# Service Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    """Notifier that always accepts."""
    mock = MagicMock(spec=WebhookNotifier)
    mock.send.return_value = True
    return mock


@pytest.fixture
def refused_connector():
    """Connector whose every attempt is refused."""

    async def _connect(url):
        raise OSError("connection refused")

    return _connect


@pytest.fixture
def service_config():
    return ServiceConfig(
        symbols=["BTCUSDT", "ETHUSDT"],
        thresholds={"BTCUSDT": (100.0, 110.0), "ETHUSDT": (2400.0, 2400.0)},
        reconnect_delay=60.0,
        subscription_delay=0,
        notify_drain_timeout=1.0,
    )


@pytest.fixture
def service(service_config, notifier, clock, refused_connector):
    """Service with a fake clock, a mock notifier and no network."""
    return MonitorService(
        config=service_config,
        notifier=notifier,
        deduplicator=AlertDeduplicator(cooldown_seconds=60, clock=clock),
        connector=refused_connector,
    )


@pytest.fixture
def settle():
    """Wait for the service's in-flight notifications."""

    async def _settle(service):
        pending = service.pending_notifications
        if pending:
            await asyncio.gather(*pending)

    return _settle
