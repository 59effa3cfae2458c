"""
Metrics collection for the price monitor.

Keeps running counters plus a rolling window of tick arrivals so the status
surface can report feed health and alert volume.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .models import ErrorRecord


@dataclass
class FeedMetrics:
    """
    Snapshot of feed and alerting activity.

    This is an immutable snapshot - use MetricsCollector to track
    metrics over time.
    """
    # Connection state
    feed_connected: bool = False
    feed_connected_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    disconnect_count: int = 0
    subscribed_symbols: int = 0

    # Data flow
    ticks_received: int = 0
    ticks_in_window: int = 0
    ticks_per_second: float = 0.0
    ticks_dropped: int = 0
    frames_dropped: int = 0

    # Alerts
    crossings_detected: int = 0
    alerts_dispatched: int = 0
    alerts_suppressed: int = 0
    alerts_failed: int = 0

    # Errors
    errors_last_hour: int = 0
    recent_errors: list[ErrorRecord] = field(default_factory=list)

    # Uptime
    started_at: Optional[datetime] = None
    uptime_seconds: float = 0.0

    @property
    def last_message_age_seconds(self) -> Optional[float]:
        """Seconds since last message received."""
        if self.last_message_at is None:
            return None
        now = datetime.now(timezone.utc)
        return (now - self.last_message_at).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        age = self.last_message_age_seconds
        return {
            "feed_connected": self.feed_connected,
            "feed_connected_at": self.feed_connected_at.isoformat() if self.feed_connected_at else None,
            "last_message_at": self.last_message_at.isoformat() if self.last_message_at else None,
            "last_message_age_seconds": round(age, 1) if age is not None else None,
            "disconnect_count": self.disconnect_count,
            "subscribed_symbols": self.subscribed_symbols,
            "ticks_received": self.ticks_received,
            "ticks_per_second": round(self.ticks_per_second, 2),
            "ticks_dropped": self.ticks_dropped,
            "frames_dropped": self.frames_dropped,
            "crossings_detected": self.crossings_detected,
            "alerts_dispatched": self.alerts_dispatched,
            "alerts_suppressed": self.alerts_suppressed,
            "alerts_failed": self.alerts_failed,
            "errors_last_hour": self.errors_last_hour,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "uptime_seconds": round(self.uptime_seconds, 0),
        }


class MetricsCollector:
    """
    Thread-safe metrics collection.

    Usage:
        collector = MetricsCollector()
        collector.start()

        collector.record_tick()
        collector.record_alert_dispatched()

        metrics = collector.get_metrics()
        print(f"Ticks/sec: {metrics.ticks_per_second}")
    """

    def __init__(
        self,
        window_seconds: float = 300.0,  # 5 minute window
        max_errors: int = 100,  # Keep last N errors
    ):
        self._window_seconds = window_seconds

        self._feed_connected = False
        self._feed_connected_at: Optional[datetime] = None
        self._last_message_at: Optional[datetime] = None
        self._disconnect_count = 0
        self._subscribed_symbols = 0

        self._tick_times: deque[float] = deque()
        self._ticks_received = 0
        self._ticks_dropped = 0
        self._frames_dropped = 0

        self._crossings = 0
        self._alerts_dispatched = 0
        self._alerts_suppressed = 0
        self._alerts_failed = 0

        self._errors: deque[ErrorRecord] = deque(maxlen=max_errors)
        self._started_at: Optional[datetime] = None

        # Notifier results are recorded from worker threads
        self._lock = threading.Lock()

    def start(self) -> None:
        """Mark the service as started."""
        self._started_at = datetime.now(timezone.utc)

    def stop(self) -> None:
        """Mark the service as stopped."""
        self._feed_connected = False

    def _now(self) -> float:
        return time.time()

    def _prune(self) -> None:
        cutoff = self._now() - self._window_seconds
        while self._tick_times and self._tick_times[0] < cutoff:
            self._tick_times.popleft()

    # Connection state

    def set_feed_connected(self, connected: bool) -> None:
        """Update feed connection state."""
        with self._lock:
            if connected:
                self._feed_connected_at = datetime.now(timezone.utc)
            elif self._feed_connected:
                self._disconnect_count += 1
            self._feed_connected = connected

    def set_subscribed_symbols(self, count: int) -> None:
        self._subscribed_symbols = count

    def record_message_received(self) -> None:
        """Record that a raw frame arrived."""
        self._last_message_at = datetime.now(timezone.utc)

    # Data flow

    def record_tick(self) -> None:
        with self._lock:
            self._ticks_received += 1
            self._tick_times.append(self._now())

    def record_tick_dropped(self) -> None:
        with self._lock:
            self._ticks_dropped += 1

    def record_frame_dropped(self) -> None:
        with self._lock:
            self._frames_dropped += 1

    # Alerts

    def record_crossing(self) -> None:
        with self._lock:
            self._crossings += 1

    def record_alert_dispatched(self) -> None:
        with self._lock:
            self._alerts_dispatched += 1

    def record_alert_suppressed(self) -> None:
        with self._lock:
            self._alerts_suppressed += 1

    def record_alert_failed(self) -> None:
        with self._lock:
            self._alerts_failed += 1

    def record_error(
        self,
        error_type: str,
        message: str,
        component: str,
        symbol: Optional[str] = None,
        recoverable: bool = True,
    ) -> None:
        """Record an error."""
        with self._lock:
            self._errors.append(ErrorRecord(
                timestamp=datetime.now(timezone.utc),
                error_type=error_type,
                message=message,
                component=component,
                symbol=symbol,
                recoverable=recoverable,
            ))

    def get_metrics(self) -> FeedMetrics:
        """Get current metrics snapshot."""
        with self._lock:
            self._prune()

            window = self._window_seconds
            in_window = len(self._tick_times)
            ticks_per_second = in_window / window if window > 0 else 0.0

            hour_ago = self._now() - 3600
            errors_last_hour = sum(
                1 for e in self._errors if e.timestamp.timestamp() > hour_ago
            )

            uptime = 0.0
            if self._started_at:
                uptime = (datetime.now(timezone.utc) - self._started_at).total_seconds()

            return FeedMetrics(
                feed_connected=self._feed_connected,
                feed_connected_at=self._feed_connected_at,
                last_message_at=self._last_message_at,
                disconnect_count=self._disconnect_count,
                subscribed_symbols=self._subscribed_symbols,
                ticks_received=self._ticks_received,
                ticks_in_window=in_window,
                ticks_per_second=ticks_per_second,
                ticks_dropped=self._ticks_dropped,
                frames_dropped=self._frames_dropped,
                crossings_detected=self._crossings,
                alerts_dispatched=self._alerts_dispatched,
                alerts_suppressed=self._alerts_suppressed,
                alerts_failed=self._alerts_failed,
                errors_last_hour=errors_last_hour,
                recent_errors=list(self._errors)[-10:],  # Last 10 errors
                started_at=self._started_at,
                uptime_seconds=uptime,
            )

    def reset(self) -> None:
        """Reset all metrics (for testing)."""
        with self._lock:
            self._tick_times.clear()
            self._errors.clear()
            self._ticks_received = 0
            self._ticks_dropped = 0
            self._frames_dropped = 0
            self._crossings = 0
            self._alerts_dispatched = 0
            self._alerts_suppressed = 0
            self._alerts_failed = 0
            self._disconnect_count = 0
            self._feed_connected = False
            self._feed_connected_at = None
            self._last_message_at = None
            self._started_at = None
