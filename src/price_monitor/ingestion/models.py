"""
Data models for the ingestion layer.

These models represent:
- Ticker updates decoded from the feed
- Connection lifecycle signals emitted by the feed manager
- Error records kept by the metrics collector

Prices are plain floats. The feed sends every numeric field as a string,
so decoding is where malformed data gets rejected: a ticker whose ``last``
or ``open24h`` is not a finite number is dropped, never stored.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .symbols import from_feed_id

logger = logging.getLogger(__name__)


def _parse_finite(value: Any) -> Optional[float]:
    """Parse a feed number, returning None unless it is finite."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def _parse_or_zero(value: Any) -> float:
    number = _parse_finite(value)
    return number if number is not None else 0.0


def _parse_timestamp(value: Any) -> datetime:
    """Feed timestamps are epoch milliseconds sent as strings."""
    try:
        millis = int(value)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class PriceTick:
    """
    A single ticker update for one symbol.

    Attributes:
        symbol: Canonical symbol (e.g. BTCUSDT)
        last: Last traded price
        open_24h: Price 24 hours ago
        volume_24h: 24h traded volume (0.0 if not reported)
        high_24h: 24h high (0.0 if not reported)
        low_24h: 24h low (0.0 if not reported)
        timestamp: Exchange timestamp of the update
    """
    symbol: str
    last: float
    open_24h: float
    volume_24h: float = 0.0
    high_24h: float = 0.0
    low_24h: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def change(self) -> float:
        """Absolute change against the 24h open."""
        return self.last - self.open_24h

    @property
    def change_percent(self) -> float:
        """Percent change against the 24h open (0.0 when open is zero)."""
        if self.open_24h == 0:
            return 0.0
        return self.change / self.open_24h * 100

    @classmethod
    def from_feed(cls, item: dict) -> Optional["PriceTick"]:
        """
        Decode one entry of a ticker frame's ``data`` array.

        Returns:
            PriceTick, or None if the item is not usable
        """
        if not isinstance(item, dict):
            logger.warning(f"Ticker item is not an object: {str(item)[:100]}")
            return None

        inst_id = item.get("instId")
        if not inst_id or not isinstance(inst_id, str):
            logger.warning(f"Ticker item missing instId: {str(item)[:100]}")
            return None

        last = _parse_finite(item.get("last"))
        open_24h = _parse_finite(item.get("open24h"))
        if last is None or open_24h is None:
            logger.warning(
                f"Invalid price data for {inst_id}: "
                f"last={item.get('last')!r} open24h={item.get('open24h')!r}"
            )
            return None

        if last <= 0 or open_24h < 0:
            logger.warning(
                f"Non-positive price data for {inst_id}: last={last} open24h={open_24h}"
            )
            return None

        return cls(
            symbol=from_feed_id(inst_id),
            last=last,
            open_24h=open_24h,
            volume_24h=_parse_or_zero(item.get("vol24h")),
            high_24h=_parse_or_zero(item.get("high24h")),
            low_24h=_parse_or_zero(item.get("low24h")),
            timestamp=_parse_timestamp(item.get("ts")),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "symbol": self.symbol,
            "price": self.last,
            "open_24h": self.open_24h,
            "change": self.change,
            "change_percent": round(self.change_percent, 4),
            "volume_24h": self.volume_24h,
            "high_24h": self.high_24h,
            "low_24h": self.low_24h,
            "last_update": self.timestamp.isoformat(),
        }


class FeedSignalType(str, Enum):
    """Lifecycle transitions reported by the feed manager."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class FeedSignal:
    """
    A lifecycle signal from the feed manager.

    ``code`` and ``reason`` are set for DISCONNECTED, ``error`` for ERROR.
    """
    type: FeedSignalType
    code: Optional[int] = None
    reason: Optional[str] = None
    error: Optional[BaseException] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ErrorRecord:
    """Record of an error that occurred in the feed pipeline."""
    timestamp: datetime
    error_type: str
    message: str
    component: str  # "websocket", "parser", "notifier"
    symbol: Optional[str] = None
    recoverable: bool = True

    @property
    def age_seconds(self) -> float:
        """Seconds since this error occurred."""
        now = datetime.now(timezone.utc)
        return (now - self.timestamp).total_seconds()
