"""
Shared test fixtures for integration tests.

This file provides fixtures that span multiple components,
unlike component-specific fixtures in src/price_monitor/{component}/tests/conftest.py
"""

import asyncio
import json
import time
from unittest.mock import MagicMock

import pytest

from price_monitor.monitoring.notifier import WebhookNotifier


_CLOSED = object()


class ScriptedWebSocket:
    """Fake feed connection: frames are pushed in, sends are recorded."""

    def __init__(self):
        self.sent = []
        self.close_code = None
        self.close_reason = None
        self.closed = False
        self._incoming = asyncio.Queue()

    def push_tickers(self, *items):
        """Push one ticker frame holding the given (inst_id, last, open24h) items."""
        data = [
            {"instId": inst_id, "last": str(last), "open24h": str(open_24h), "ts": "1718000000000"}
            for inst_id, last, open_24h in items
        ]
        self.push({"arg": {"channel": "tickers", "instId": data[0]["instId"]}, "data": data})

    def push(self, message):
        if not isinstance(message, str):
            message = json.dumps(message)
        self._incoming.put_nowait(message)

    def drop(self, code=1006, reason="connection lost"):
        self.close_code = code
        self.close_reason = reason
        self.closed = True
        self._incoming.put_nowait(_CLOSED)

    def subscribed_inst_ids(self):
        return [
            m["args"][0]["instId"]
            for m in map(json.loads, self.sent)
            if m["op"] == "subscribe"
        ]

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


class ScriptedFeed:
    """Connector that records every connection it hands out."""

    def __init__(self):
        self.connections = []
        self.refuse = False

    @property
    def current(self):
        return self.connections[-1]

    async def __call__(self, url):
        if self.refuse:
            raise OSError("connection refused")
        ws = ScriptedWebSocket()
        self.connections.append(ws)
        return ws


# =============================================================================
# Transport Fixtures
# =============================================================================


@pytest.fixture
def scripted_feed():
    return ScriptedFeed()


# =============================================================================
# Notification Fixtures
# =============================================================================


@pytest.fixture
def notifier():
    """Records every alert instead of posting it."""
    mock = MagicMock(spec=WebhookNotifier)
    mock.send.return_value = True
    return mock


# =============================================================================
# Async Helpers
# =============================================================================


@pytest.fixture
def wait_until():
    """Poll a predicate on the event loop until it holds."""

    async def _wait(predicate, timeout=3.0):
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return _wait
