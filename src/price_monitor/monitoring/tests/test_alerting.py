"""
Tests for alert deduplication.

The same symbol and direction must not alert twice inside the cooldown.
"""
import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from price_monitor.monitoring.alerting import AlertDeduplicator


class TestCooldown:
    """Tests for should_dispatch."""

    def test_first_alert_is_dispatched(self, deduplicator):
        assert deduplicator.should_dispatch("BTCUSDT_upper") is True

    def test_repeat_within_cooldown_is_suppressed(self, deduplicator, clock):
        deduplicator.should_dispatch("BTCUSDT_upper")
        clock.advance(59.9)

        assert deduplicator.should_dispatch("BTCUSDT_upper") is False

    def test_dispatched_again_after_cooldown(self, deduplicator, clock):
        deduplicator.should_dispatch("BTCUSDT_upper")
        clock.advance(60)

        assert deduplicator.should_dispatch("BTCUSDT_upper") is True

    def test_suppression_does_not_extend_cooldown(self, deduplicator, clock):
        deduplicator.should_dispatch("BTCUSDT_upper")
        clock.advance(30)
        deduplicator.should_dispatch("BTCUSDT_upper")
        clock.advance(30)

        assert deduplicator.should_dispatch("BTCUSDT_upper") is True

    def test_keys_are_independent(self, deduplicator):
        assert deduplicator.should_dispatch("BTCUSDT_upper") is True
        assert deduplicator.should_dispatch("BTCUSDT_lower") is True
        assert deduplicator.should_dispatch("ETHUSDT_upper") is True

    def test_concurrent_calls_have_one_winner(self):
        deduplicator = AlertDeduplicator(cooldown_seconds=60)
        barrier = threading.Barrier(16)

        def attempt(_):
            barrier.wait()
            return deduplicator.should_dispatch("BTCUSDT_upper")

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(attempt, range(16)))

        assert results.count(True) == 1


class TestSweep:
    def test_sweep_removes_records_past_max_age(self, deduplicator, clock):
        deduplicator.should_dispatch("BTCUSDT_upper")
        clock.advance(1800)
        deduplicator.should_dispatch("ETHUSDT_upper")
        clock.advance(1801)

        assert deduplicator.sweep() == 1
        assert deduplicator.get_alert_stats()["tracked_keys"] == 1

    def test_sweep_keeps_recent_records(self, deduplicator, clock):
        deduplicator.should_dispatch("BTCUSDT_upper")
        clock.advance(120)

        assert deduplicator.sweep() == 0

    @pytest.mark.asyncio
    async def test_background_sweep_runs(self, clock):
        deduplicator = AlertDeduplicator(
            cooldown_seconds=1,
            sweep_interval_seconds=0.01,
            max_age_seconds=10,
            clock=clock,
        )
        deduplicator.should_dispatch("BTCUSDT_upper")
        clock.advance(11)

        await deduplicator.start()
        await asyncio.sleep(0.05)
        await deduplicator.stop()

        assert deduplicator.get_alert_stats()["tracked_keys"] == 0

    @pytest.mark.asyncio
    async def test_stop_without_start(self, deduplicator):
        await deduplicator.stop()

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_task(self, deduplicator):
        await deduplicator.start()
        task = deduplicator._sweep_task
        await deduplicator.start()

        assert deduplicator._sweep_task is task
        await deduplicator.stop()
        assert task.cancelled()


class TestStats:
    def test_active_count_tracks_cooldown(self, deduplicator, clock):
        deduplicator.should_dispatch("BTCUSDT_upper")
        deduplicator.should_dispatch("ETHUSDT_lower")
        assert deduplicator.active_count == 2

        clock.advance(61)
        assert deduplicator.active_count == 0

    def test_alert_stats(self, deduplicator):
        deduplicator.should_dispatch("BTCUSDT_upper")
        deduplicator.should_dispatch("BTCUSDT_upper")

        stats = deduplicator.get_alert_stats()

        assert stats == {
            "active_alerts": 1,
            "tracked_keys": 1,
            "dispatched": 1,
            "suppressed": 1,
        }

    def test_clear(self, deduplicator):
        deduplicator.should_dispatch("BTCUSDT_upper")
        deduplicator.clear()

        assert deduplicator.should_dispatch("BTCUSDT_upper") is True
