"""
Alert deduplication.

Gates crossing alerts so the same symbol and direction cannot fire more
than once per cooldown window.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class AlertRecord:
    """Tracks when an alert was last dispatched."""

    key: str
    fired_at: float  # clock seconds
    count: int = 1


class AlertDeduplicator:
    """
    Per-key cooldown tracking.

    A key that fired less than ``cooldown_seconds`` ago is suppressed.
    Expired records are replaced lazily on the next lookup; a background
    sweep also drops anything older than ``max_age_seconds`` so the map
    stays bounded even for keys that never fire again.

    The check-and-record step holds a lock, so two near-simultaneous calls
    for the same key produce exactly one winner.

    Usage:
        dedup = AlertDeduplicator(cooldown_seconds=60)
        await dedup.start()

        if dedup.should_dispatch("BTCUSDT_upper"):
            notifier.send(message)

        await dedup.stop()
    """

    DEFAULT_COOLDOWN = 60.0  # 1 minute
    DEFAULT_SWEEP_INTERVAL = 900.0  # 15 minutes
    DEFAULT_MAX_AGE = 3600.0  # 1 hour

    def __init__(
        self,
        cooldown_seconds: float = DEFAULT_COOLDOWN,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL,
        max_age_seconds: float = DEFAULT_MAX_AGE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the deduplicator.

        Args:
            cooldown_seconds: Minimum time between two alerts with the same key
            sweep_interval_seconds: How often the retention sweep runs
            max_age_seconds: Records older than this are swept
            clock: Time source in seconds
        """
        self._cooldown = cooldown_seconds
        self._sweep_interval = sweep_interval_seconds
        self._max_age = max_age_seconds
        self._clock = clock

        self._records: Dict[str, AlertRecord] = {}
        self._lock = threading.Lock()

        self._dispatched = 0
        self._suppressed = 0

        self._sweep_task: Optional[asyncio.Task] = None

    @property
    def cooldown_seconds(self) -> float:
        return self._cooldown

    def should_dispatch(self, key: str) -> bool:
        """
        Decide whether an alert for ``key`` may be sent now.

        Returns True and records the dispatch if no unexpired record
        exists; otherwise returns False.
        """
        with self._lock:
            now = self._clock()
            record = self._records.get(key)

            if record is not None and (now - record.fired_at) < self._cooldown:
                self._suppressed += 1
                logger.info(f"Alert already sent, suppressing duplicate: {key}")
                return False

            count = record.count + 1 if record is not None else 1
            self._records[key] = AlertRecord(key=key, fired_at=now, count=count)
            self._dispatched += 1
            return True

    def sweep(self) -> int:
        """
        Remove records older than the retention ceiling.

        Returns:
            Number of records removed
        """
        with self._lock:
            now = self._clock()
            stale = [
                key for key, record in self._records.items()
                if now - record.fired_at > self._max_age
            ]
            for key in stale:
                del self._records[key]

        if stale:
            logger.info(f"Swept {len(stale)} expired alert records")
        return len(stale)

    async def start(self) -> None:
        """Start the periodic sweep."""
        if self._sweep_task and not self._sweep_task.done():
            logger.warning("Alert sweep already running")
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="alert_sweep")
        logger.info(f"Started alert sweep task (interval={self._sweep_interval}s)")

    async def stop(self) -> None:
        """Cancel the periodic sweep."""
        task = self._sweep_task
        self._sweep_task = None
        if task and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Error sweeping alert records: {e}")

    @property
    def active_count(self) -> int:
        """Records still inside their cooldown window."""
        with self._lock:
            now = self._clock()
            return sum(
                1 for record in self._records.values()
                if now - record.fired_at < self._cooldown
            )

    def clear(self) -> None:
        """Clear all records."""
        with self._lock:
            self._records.clear()
        logger.info("Cleared all alert records")

    def get_alert_stats(self) -> Dict[str, int]:
        """Get statistics about alerts."""
        active = self.active_count
        with self._lock:
            return {
                "active_alerts": active,
                "tracked_keys": len(self._records),
                "dispatched": self._dispatched,
                "suppressed": self._suppressed,
            }
