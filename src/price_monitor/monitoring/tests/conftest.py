"""
Monitoring layer test fixtures.

Tests deduplication, webhook delivery and the status endpoints.
"""
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from price_monitor.core.service import MonitorService, ServiceConfig
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
# Deduplication Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def deduplicator(clock):
    """60s cooldown, 1h retention, driven by the fake clock."""
    return AlertDeduplicator(
        cooldown_seconds=60,
        sweep_interval_seconds=900,
        max_age_seconds=3600,
        clock=clock,
    )


# =============================================================================
# Webhook Fixtures
# =============================================================================


@pytest.fixture
def mock_session():
    """HTTP session whose post() returns an accepted response."""
    session = MagicMock(spec=requests.Session)
    response = MagicMock()
    response.raise_for_status.return_value = None
    response.json.return_value = {"errcode": 0, "errmsg": "ok"}
    session.post.return_value = response
    return session


@pytest.fixture
def webhook_notifier(mock_session):
    return WebhookNotifier(webhook_key="test-key", _session=mock_session)


# =============================================================================
# Dashboard Fixtures
# =============================================================================


@pytest.fixture
def monitor_service():
    """Unstarted service with one priced symbol."""
    notifier = MagicMock(spec=WebhookNotifier)
    service = MonitorService(
        config=ServiceConfig(
            symbols=["BTCUSDT"],
            thresholds={"BTCUSDT": (100000.0, 110000.0)},
        ),
        notifier=notifier,
    )
    service.tracker.update(
        "BTCUSDT",
        PriceTick(
            symbol="BTCUSDT",
            last=108000.0,
            open_24h=100000.0,
            timestamp=datetime(2024, 6, 10, 12, 0, 0, tzinfo=timezone.utc),
        ),
    )
    return service


@pytest.fixture
def client(monitor_service):
    from fastapi.testclient import TestClient

    from price_monitor.monitoring.dashboard import create_dashboard_app

    return TestClient(create_dashboard_app(monitor_service))
