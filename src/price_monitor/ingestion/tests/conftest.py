"""
Test fixtures for ingestion layer.

IMPORTANT: All network access must be faked.
Never open a real feed connection in tests.
"""

import asyncio
import json
import time
from datetime import datetime, timezone

import pytest

from price_monitor.ingestion.metrics import MetricsCollector
from price_monitor.ingestion.models import PriceTick


_CLOSED = object()


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self):
        self.sent = []
        self.close_code = None
        self.close_reason = None
        self.closed = False
        self.ping_count = 0
        self._incoming = asyncio.Queue()

    def push(self, message):
        """Queue an inbound frame (dicts are JSON-encoded)."""
        if isinstance(message, (dict, list)):
            message = json.dumps(message)
        self._incoming.put_nowait(message)

    def drop(self, code=1006, reason="connection lost"):
        """Simulate the server closing the connection."""
        self.close_code = code
        self.close_reason = reason
        self.closed = True
        self._incoming.put_nowait(_CLOSED)

    def sent_json(self):
        return [json.loads(m) for m in self.sent]

    async def send(self, message):
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(message)

    async def close(self, code=1000, reason=""):
        if not self.closed:
            self.close_code = code
            self.close_reason = reason
            self.closed = True
            self._incoming.put_nowait(_CLOSED)

    async def ping(self):
        self.ping_count += 1
        waiter = asyncio.get_running_loop().create_future()
        waiter.set_result(0.0)
        return waiter

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._incoming.get()
        if message is _CLOSED:
            raise StopAsyncIteration
        return message


class FakeConnector:
    """Connector that hands out FakeWebSockets or fails on demand."""

    def __init__(self):
        self.urls = []
        self.sockets = []
        self.fail_next = 0
        self.always_fail = False
        self.error = OSError("connection refused")
        # When set, each attempt blocks until the event fires
        self.gate = None

    @property
    def calls(self):
        return len(self.urls)

    @property
    def last(self):
        return self.sockets[-1] if self.sockets else None

    async def __call__(self, url):
        self.urls.append(url)
        if self.gate is not None:
            await self.gate.wait()
        if self.always_fail or self.fail_next > 0:
            self.fail_next = max(0, self.fail_next - 1)
            raise self.error
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws


# =============================================================================
# Transport Fixtures
# =============================================================================


@pytest.fixture
def connector():
    """A connector that succeeds unless told otherwise."""
    return FakeConnector()


@pytest.fixture
def metrics():
    collector = MetricsCollector()
    collector.start()
    return collector


# =============================================================================
# Async Helpers
# =============================================================================


@pytest.fixture
def wait_until():
    """Poll a predicate on the event loop until it holds."""

    async def _wait(predicate, timeout=2.0):
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return _wait


@pytest.fixture
def drain_signals():
    """Pull every queued lifecycle signal off a feed manager."""

    def _drain(feed):
        signals = []
        while not feed.signals.empty():
            signals.append(feed.signals.get_nowait())
        return signals

    return _drain


# =============================================================================
# Model Fixtures
# =============================================================================


@pytest.fixture
def ticker_item():
    """A ticker entry as the feed sends it (numbers as strings)."""
    return {
        "instType": "SPOT",
        "instId": "BTC-USDT",
        "last": "108250.5",
        "open24h": "105000",
        "high24h": "109000",
        "low24h": "104500.1",
        "vol24h": "1523.77",
        "ts": "1718000000000",
    }


@pytest.fixture
def ticker_frame(ticker_item):
    return {
        "arg": {"channel": "tickers", "instId": "BTC-USDT"},
        "data": [ticker_item],
    }


@pytest.fixture
def sample_tick():
    return PriceTick(
        symbol="BTCUSDT",
        last=108250.5,
        open_24h=105000.0,
        timestamp=datetime(2024, 6, 10, 6, 13, 20, tzinfo=timezone.utc),
    )
