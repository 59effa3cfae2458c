"""
ThresholdTracker - per-symbol price bands and crossing detection.

Each monitored symbol has a band [min, max]. A tick above max is an upper
crossing, a tick below min a lower crossing. When a crossing fires the band
is rebased around the crossing price:

    min = price * (1 - f)
    max = price * (1 + f)

where f is the configured change threshold (1% by default). Only one
crossing is reported per tick, and max is checked before min.

The tracker also owns the latest valid tick for every symbol it has seen,
including symbols that have no band (those are tracked but never alert).
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Mapping, Optional, Set, Tuple, Union

from price_monitor.ingestion.models import PriceTick

logger = logging.getLogger(__name__)

# Tick-to-tick moves at or above this percentage are logged
SIGNIFICANT_MOVE_PERCENT = 0.5


class CrossingDirection(str, Enum):
    """Which edge of the band was crossed."""
    UPPER = "upper"
    LOWER = "lower"


@dataclass(frozen=True)
class PriceBand:
    """Alert band for one symbol."""

    symbol: str
    min: float
    max: float

    def __post_init__(self) -> None:
        if self.min > self.max:
            raise ValueError(
                f"Band min must not exceed max for {self.symbol}: {self.min} > {self.max}"
            )

    def rebase(self, price: float, fraction: float) -> "PriceBand":
        """Return a new band centred on ``price`` with half-width ``price * fraction``."""
        return PriceBand(
            symbol=self.symbol,
            min=price * (1 - fraction),
            max=price * (1 + fraction),
        )

    def contains(self, price: float) -> bool:
        return self.min <= price <= self.max

    def to_dict(self) -> dict:
        return {"min": self.min, "max": self.max}


@dataclass(frozen=True)
class CrossingEvent:
    """
    A band crossing, carrying everything needed to format the alert.

    Attributes:
        symbol: Symbol that crossed
        direction: UPPER or LOWER
        price: The crossing price (tick.last)
        threshold: The band edge that was violated
        change_percent: Percent change since the previous tick
        band: The rebased band now in effect
        previous_band: The band that was violated
        tick: The tick that caused the crossing
    """

    symbol: str
    direction: CrossingDirection
    price: float
    threshold: float
    change_percent: float
    band: PriceBand
    previous_band: PriceBand
    tick: PriceTick

    @property
    def alert_key(self) -> str:
        """Deduplication key: one cooldown per symbol and direction."""
        return f"{self.symbol}_{self.direction.value}"

    def format_message(self, now: Optional[datetime] = None) -> str:
        """Human-readable alert text."""
        if self.direction == CrossingDirection.UPPER:
            emoji, edge = "📈", "Above max"
        else:
            emoji, edge = "📉", "Below min"

        timestamp = (now or self.tick.timestamp).strftime("%Y-%m-%d %H:%M:%S")

        return (
            f"{emoji} Price alert!\n"
            f"Symbol: {self.symbol}\n"
            f"Price: ${self.price:.4f}\n"
            f"{edge}: ${self.threshold:.4f}\n"
            f"24h change: {self.tick.change_percent:+.2f}%\n"
            f"Since last tick: {self.change_percent:+.2f}%\n"
            f"New band: ${self.band.min:.4f} - ${self.band.max:.4f}\n"
            f"Time: {timestamp}"
        )


BandSpec = Union[PriceBand, Tuple[float, float]]


class ThresholdTracker:
    """
    Tracks latest prices and evaluates band crossings.

    Reads from status queries may come from another thread (the dashboard
    server), so all state is guarded by a single lock. At a few dozen
    symbols a global lock is plenty.

    Usage:
        tracker = ThresholdTracker({"BTCUSDT": (100000, 110000)})

        event = tracker.update("BTCUSDT", tick)
        if event:
            send(event.format_message())

        tracker.get_band("BTCUSDT")   # rebased after a crossing
    """

    def __init__(
        self,
        bands: Optional[Mapping[str, BandSpec]] = None,
        change_threshold: float = 0.01,
    ) -> None:
        """
        Initialize the tracker.

        Args:
            bands: Initial band per symbol, as PriceBand or (min, max)
            change_threshold: Rebase half-width as a fraction of price
        """
        if not 0 < change_threshold < 1:
            raise ValueError(f"change_threshold must be in (0, 1), got {change_threshold}")

        self._change_threshold = change_threshold
        self._bands: Dict[str, PriceBand] = {}
        self._prices: Dict[str, PriceTick] = {}
        self._warned_missing: Set[str] = set()
        self._lock = threading.Lock()

        for symbol, spec in (bands or {}).items():
            if isinstance(spec, PriceBand):
                self._bands[symbol] = spec
            else:
                low, high = spec
                self._bands[symbol] = PriceBand(symbol, float(low), float(high))

    @property
    def change_threshold(self) -> float:
        return self._change_threshold

    @property
    def symbols(self) -> Set[str]:
        """Symbols with a band or a stored price."""
        with self._lock:
            return set(self._bands) | set(self._prices)

    def update(self, symbol: str, tick: PriceTick) -> Optional[CrossingEvent]:
        """
        Store a tick and evaluate it against the symbol's band.

        Args:
            symbol: Canonical symbol
            tick: Decoded, valid tick

        Returns:
            CrossingEvent if the tick left the band, else None
        """
        if tick.last <= 0:
            logger.warning(f"Ignoring non-positive price for {symbol}: {tick.last}")
            return None

        with self._lock:
            previous = self._prices.get(symbol)
            self._prices[symbol] = tick

            change_percent = self._percent_change(previous, tick)
            if previous is not None and abs(change_percent) >= SIGNIFICANT_MOVE_PERCENT:
                logger.info(f"{symbol} moved {change_percent:+.2f}% to ${tick.last:.4f}")

            band = self._bands.get(symbol)
            if band is None:
                if symbol not in self._warned_missing:
                    self._warned_missing.add(symbol)
                    logger.warning(f"No price band configured for {symbol}, alerts disabled")
                return None

            price = tick.last
            if price > band.max:
                direction, threshold = CrossingDirection.UPPER, band.max
            elif price < band.min:
                direction, threshold = CrossingDirection.LOWER, band.min
            else:
                return None

            new_band = band.rebase(price, self._change_threshold)
            self._bands[symbol] = new_band

        logger.info(
            f"{symbol} band rebased: min={new_band.min:.4f}, max={new_band.max:.4f}"
        )

        return CrossingEvent(
            symbol=symbol,
            direction=direction,
            price=price,
            threshold=threshold,
            change_percent=change_percent,
            band=new_band,
            previous_band=band,
            tick=tick,
        )

    @staticmethod
    def _percent_change(previous: Optional[PriceTick], tick: PriceTick) -> float:
        if previous is None or previous.last == 0:
            return 0.0
        return (tick.last - previous.last) / previous.last * 100

    def get_price(self, symbol: str) -> Optional[PriceTick]:
        """Latest valid tick for a symbol."""
        with self._lock:
            return self._prices.get(symbol)

    def get_band(self, symbol: str) -> Optional[PriceBand]:
        """Current band for a symbol."""
        with self._lock:
            return self._bands.get(symbol)

    def set_band(self, symbol: str, min_price: float, max_price: float) -> PriceBand:
        """Replace a symbol's band unconditionally."""
        band = PriceBand(symbol, float(min_price), float(max_price))
        with self._lock:
            self._bands[symbol] = band
            self._warned_missing.discard(symbol)
        logger.info(f"Band set manually for {symbol}: min={min_price}, max={max_price}")
        return band

    def prices(self) -> Dict[str, PriceTick]:
        """Copy of the latest tick per symbol."""
        with self._lock:
            return dict(self._prices)

    def bands(self) -> Dict[str, PriceBand]:
        """Copy of the current band per symbol."""
        with self._lock:
            return dict(self._bands)
