"""
Ingestion Layer - Ticker feed and decoding.

This module provides real-time ticker ingestion from the OKX public feed:
    - Symbol codec between canonical ("BTCUSDT") and feed ("BTC-USDT") ids
    - PriceTick decoding with per-item validation
    - WebSocket connection manager with capped linear-backoff reconnects
    - Metrics for feed health and data flow

Usage:
    from price_monitor.ingestion import FeedConnectionManager, PriceTick

    feed = FeedConnectionManager(on_tick=handle_tick)
    await feed.subscribe("BTCUSDT")
    await feed.connect()
"""

# Symbols
from .symbols import (
    from_feed_id,
    is_valid_symbol,
    to_feed_id,
)

# Models
from .models import (
    ErrorRecord,
    FeedSignal,
    FeedSignalType,
    PriceTick,
)

# Metrics
from .metrics import (
    FeedMetrics,
    MetricsCollector,
)

# WebSocket Client
from .websocket import (
    ConnectionState,
    FeedConnectionManager,
    FeedError,
)

__all__ = [
    # Symbols
    "from_feed_id",
    "is_valid_symbol",
    "to_feed_id",
    # Models
    "ErrorRecord",
    "FeedSignal",
    "FeedSignalType",
    "PriceTick",
    # Metrics
    "FeedMetrics",
    "MetricsCollector",
    # WebSocket
    "ConnectionState",
    "FeedConnectionManager",
    "FeedError",
]
