"""
Monitor Service - coordinates feed, tracker, deduplicator and notifier.

Data flow:
    FeedConnectionManager --tick--> ThresholdTracker --crossing-->
    AlertDeduplicator --allowed--> WebhookNotifier (worker thread)

Lifecycle signals from the feed are consumed by run_forever(). An
EXHAUSTED signal ends the run with exit code 1.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from price_monitor.core.threshold_tracker import CrossingEvent, ThresholdTracker
from price_monitor.ingestion.metrics import FeedMetrics, MetricsCollector
from price_monitor.ingestion.models import FeedSignal, FeedSignalType, PriceTick
from price_monitor.ingestion.symbols import is_valid_symbol
from price_monitor.ingestion.websocket import Connector, FeedConnectionManager
from price_monitor.monitoring.alerting import AlertDeduplicator
from price_monitor.monitoring.notifier import WECHAT_WEBHOOK_URL, WebhookNotifier

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Service lifecycle state."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


@dataclass
class ServiceConfig:
    """Configuration for the monitor service."""

    # Feed
    feed_url: str = FeedConnectionManager.OKX_PUBLIC_URL
    symbols: List[str] = field(default_factory=list)
    reconnect_attempts: int = 5
    reconnect_delay: float = 5.0
    connect_timeout: float = 10.0
    heartbeat_interval: float = 30.0
    subscription_delay: float = 0.1

    # Thresholds
    thresholds: Dict[str, Tuple[float, float]] = field(default_factory=dict)
    price_change_threshold: float = 0.01

    # Alerts
    alert_cooldown: float = 60.0
    alert_cleanup_interval: float = 900.0
    alert_max_age: float = 3600.0
    webhook_key: Optional[str] = None
    webhook_url: str = WECHAT_WEBHOOK_URL

    # Housekeeping
    status_log_interval: float = 300.0
    notify_drain_timeout: float = 5.0

    # Dashboard
    dashboard_enabled: bool = False
    dashboard_host: str = "127.0.0.1"
    dashboard_port: int = 9060


@dataclass
class MonitorStatus:
    """Point-in-time view of the whole monitor."""

    state: ServiceState
    uptime_seconds: float
    connection: Dict[str, Any]
    symbols: Dict[str, Dict[str, Any]]
    active_alerts: int
    alert_stats: Dict[str, int]
    metrics: FeedMetrics

    @property
    def is_connected(self) -> bool:
        return bool(self.connection.get("connected"))

    @property
    def is_healthy(self) -> bool:
        return self.state == ServiceState.RUNNING and self.is_connected

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "state": self.state.value,
            "healthy": self.is_healthy,
            "uptime_seconds": round(self.uptime_seconds, 0),
            "connection": self.connection,
            "symbols": self.symbols,
            "active_alerts": self.active_alerts,
            "alert_stats": self.alert_stats,
            "metrics": self.metrics.to_dict(),
        }


class MonitorService:
    """
    Price threshold monitor.

    Owns one feed connection, one tracker and one deduplicator. Ticks are
    evaluated on the event loop; notifications are posted from worker
    threads and never block tick processing.

    Usage:
        service = MonitorService(ServiceConfig(symbols=["BTCUSDT"],
                                               thresholds={"BTCUSDT": (100000, 110000)}))
        exit_code = await service.run_forever()
    """

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        notifier: Optional[WebhookNotifier] = None,
        deduplicator: Optional[AlertDeduplicator] = None,
        connector: Optional[Connector] = None,
    ):
        """
        Initialize the service.

        Args:
            config: Service configuration
            notifier: Optional notifier (defaults to the webhook notifier)
            deduplicator: Optional deduplicator (for testing with a fake clock)
            connector: Optional websocket factory (for testing)
        """
        self._config = config or ServiceConfig()

        self._metrics = MetricsCollector()
        self._tracker = ThresholdTracker(
            bands=self._config.thresholds,
            change_threshold=self._config.price_change_threshold,
        )
        self._deduplicator = deduplicator or AlertDeduplicator(
            cooldown_seconds=self._config.alert_cooldown,
            sweep_interval_seconds=self._config.alert_cleanup_interval,
            max_age_seconds=self._config.alert_max_age,
        )
        self._notifier = notifier or WebhookNotifier(
            webhook_key=self._config.webhook_key,
            api_url=self._config.webhook_url,
        )
        self._feed = FeedConnectionManager(
            on_tick=self.handle_tick,
            url=self._config.feed_url,
            max_reconnect_attempts=self._config.reconnect_attempts,
            reconnect_delay=self._config.reconnect_delay,
            connect_timeout=self._config.connect_timeout,
            heartbeat_interval=self._config.heartbeat_interval,
            subscription_delay=self._config.subscription_delay,
            metrics=self._metrics,
            connector=connector,
        )

        self._state = ServiceState.STOPPED
        self._started_at: Optional[float] = None
        self._stop_event = asyncio.Event()
        self._exit_code = 0

        self._status_task: Optional[asyncio.Task] = None
        self._dashboard_task: Optional[asyncio.Task] = None
        self._dashboard_server: Optional[Any] = None
        self._pending_notifications: Set[asyncio.Task] = set()

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    @property
    def exit_code(self) -> int:
        return self._exit_code

    @property
    def config(self) -> ServiceConfig:
        return self._config

    @property
    def feed(self) -> FeedConnectionManager:
        return self._feed

    @property
    def tracker(self) -> ThresholdTracker:
        return self._tracker

    @property
    def deduplicator(self) -> AlertDeduplicator:
        return self._deduplicator

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def pending_notifications(self) -> Set[asyncio.Task]:
        return set(self._pending_notifications)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Start monitoring.

        A failed first connect is not fatal: the feed schedules its own
        reconnects, and exhaustion is reported through run_forever().
        """
        if self._state != ServiceState.STOPPED:
            logger.warning(f"Cannot start: service is {self._state.value}")
            return

        logger.info("Starting price monitor...")
        self._state = ServiceState.STARTING
        self._stop_event.clear()
        self._exit_code = 0

        try:
            self._metrics.start()
            self._started_at = time.time()

            await self._deduplicator.start()

            for symbol in self._config.symbols:
                await self._feed.subscribe(symbol)

            await self._feed.connect()

            if self._config.dashboard_enabled:
                await self._start_dashboard()

            self._status_task = asyncio.create_task(
                self._status_log_loop(), name="status_log"
            )

            self._state = ServiceState.RUNNING
            logger.info(
                f"Monitoring {len(self._config.symbols)} symbols: "
                f"{', '.join(self._config.symbols)}"
            )

        except Exception as e:
            logger.error(f"Failed to start monitor: {e}")
            self._state = ServiceState.FAILED
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the service gracefully. Safe to call more than once."""
        if self._state in (ServiceState.STOPPED, ServiceState.STOPPING):
            return

        logger.info("Stopping price monitor...")
        self._state = ServiceState.STOPPING
        self._stop_event.set()

        await self._cleanup()

        self._metrics.stop()
        self._state = ServiceState.STOPPED
        logger.info("Price monitor stopped")

    async def _cleanup(self) -> None:
        """Cancel timers, release the feed and drain notifications."""
        if self._status_task and not self._status_task.done():
            self._status_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._status_task
        self._status_task = None

        await self._deduplicator.stop()
        await self._feed.disconnect()
        await self._stop_dashboard()

        pending = set(self._pending_notifications)
        if pending:
            logger.info(f"Waiting for {len(pending)} pending notifications...")
            _, still_running = await asyncio.wait(
                pending, timeout=self._config.notify_drain_timeout
            )
            if still_running:
                logger.warning(
                    f"{len(still_running)} notifications still running at shutdown"
                )

    def request_shutdown(self, reason: str) -> None:
        """Ask run_forever() to stop."""
        logger.info(f"Shutdown requested: {reason}")
        self._stop_event.set()

    async def run_forever(self) -> int:
        """
        Run until a shutdown is requested or the feed gives up.

        Returns:
            Process exit code (1 if reconnect attempts were exhausted)
        """
        await self.start()

        signal_task = asyncio.create_task(self._consume_signals(), name="feed_signals")
        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            signal_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await signal_task
            await self.stop()

        return self._exit_code

    def setup_signal_handlers(self) -> None:
        """Route SIGINT/SIGTERM to request_shutdown()."""
        loop = asyncio.get_running_loop()

        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(
                    sig, lambda s=sig: self.request_shutdown(f"received {s.name}")
                )
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    async def _consume_signals(self) -> None:
        while True:
            feed_signal = await self._feed.next_signal()
            self.handle_signal(feed_signal)

    def handle_signal(self, feed_signal: FeedSignal) -> None:
        """React to one lifecycle signal from the feed."""
        if feed_signal.type == FeedSignalType.CONNECTED:
            logger.info("Feed connected")

        elif feed_signal.type == FeedSignalType.DISCONNECTED:
            logger.warning(
                f"Feed disconnected [{feed_signal.code}]: "
                f"{feed_signal.reason or 'unknown reason'}"
            )

        elif feed_signal.type == FeedSignalType.ERROR:
            logger.error(f"Feed error: {feed_signal.error}")

        elif feed_signal.type == FeedSignalType.EXHAUSTED:
            logger.error("Feed reconnect attempts exhausted")
            self._exit_code = 1
            self.request_shutdown("reconnect attempts exhausted")

    # ------------------------------------------------------------------
    # Tick processing
    # ------------------------------------------------------------------

    def handle_tick(self, tick: PriceTick) -> Optional[CrossingEvent]:
        """
        Evaluate one tick and dispatch an alert if it crossed its band.

        Returns:
            The crossing event, whether or not it was dispatched
        """
        event = self._tracker.update(tick.symbol, tick)
        if event is None:
            return None

        self._metrics.record_crossing()
        logger.info(
            f"{event.symbol} crossed {event.direction.value} threshold "
            f"{event.threshold:.4f} at {event.price:.4f}"
        )

        if not self._deduplicator.should_dispatch(event.alert_key):
            self._metrics.record_alert_suppressed()
            return event

        self._metrics.record_alert_dispatched()
        self._dispatch(event.format_message(), event.alert_key)
        return event

    def _dispatch(self, message: str, key: str) -> None:
        task = asyncio.create_task(self._notify(message, key), name=f"notify_{key}")
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def _notify(self, message: str, key: str) -> bool:
        try:
            delivered = await asyncio.to_thread(self._notifier.send, message, key)
        except Exception as e:
            logger.error(f"Notifier raised for {key}: {e}")
            delivered = False

        if delivered:
            logger.info(f"Alert delivered: {key}")
        else:
            # The cooldown stays consumed
            self._metrics.record_alert_failed()
            logger.warning(f"Alert delivery failed: {key}")
        return delivered

    # ------------------------------------------------------------------
    # Operator operations
    # ------------------------------------------------------------------

    async def add_symbol(
        self,
        symbol: str,
        band: Optional[Tuple[float, float]] = None,
    ) -> bool:
        """
        Start monitoring a symbol.

        Args:
            symbol: Canonical symbol, e.g. "BTCUSDT"
            band: Optional (min, max) band

        Returns:
            True if the subscribe request went out. An invalid symbol
            returns False and changes nothing.
        """
        if not is_valid_symbol(symbol):
            logger.error(f"Invalid symbol: {symbol}")
            return False

        if band is not None:
            self._tracker.set_band(symbol, band[0], band[1])

        sent = await self._feed.subscribe(symbol)
        logger.info(f"Added symbol {symbol}")
        return sent

    async def remove_symbol(self, symbol: str) -> bool:
        """Stop monitoring a symbol. Its last price and band are kept."""
        sent = await self._feed.unsubscribe(symbol)
        logger.info(f"Removed symbol {symbol}")
        return sent

    def get_all_prices(self) -> Dict[str, Dict[str, Any]]:
        """Latest price per symbol."""
        return {
            symbol: {
                "price": tick.last,
                "change_percent": tick.change_percent,
                "last_update": tick.timestamp.isoformat(),
            }
            for symbol, tick in sorted(self._tracker.prices().items())
        }

    def get_symbol_info(self, symbol: str) -> Optional[Dict[str, Any]]:
        """Latest tick fields and band for one symbol, or None if never seen."""
        tick = self._tracker.get_price(symbol)
        if tick is None:
            return None

        band = self._tracker.get_band(symbol)
        info = tick.to_dict()
        info["band"] = band.to_dict() if band else None
        info["subscribed"] = symbol in self._feed.subscribed_symbols
        return info

    def status(self) -> MonitorStatus:
        """Snapshot of service, feed, prices and alerts."""
        prices = self._tracker.prices()
        bands = self._tracker.bands()

        symbols: Dict[str, Dict[str, Any]] = {}
        for symbol in sorted(set(prices) | set(bands) | self._feed.subscribed_symbols):
            tick = prices.get(symbol)
            band = bands.get(symbol)
            symbols[symbol] = {
                "price": tick.last if tick else None,
                "change_percent": tick.change_percent if tick else None,
                "last_update": tick.timestamp.isoformat() if tick else None,
                "band": band.to_dict() if band else None,
            }

        uptime = time.time() - self._started_at if self._started_at else 0.0

        return MonitorStatus(
            state=self._state,
            uptime_seconds=uptime,
            connection=self._feed.get_status(),
            symbols=symbols,
            active_alerts=self._deduplicator.active_count,
            alert_stats=self._deduplicator.get_alert_stats(),
            metrics=self._metrics.get_metrics(),
        )

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def _status_log_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.status_log_interval)
            try:
                self._log_status()
            except Exception as e:
                logger.error(f"Error logging status: {e}")

    def _log_status(self) -> None:
        status = self.status()
        priced = sum(1 for info in status.symbols.values() if info["price"] is not None)
        connection = "connected" if status.is_connected else "disconnected"
        logger.info(
            f"Status: feed {connection}, {priced}/{len(status.symbols)} symbols priced, "
            f"{status.active_alerts} active alerts, "
            f"uptime {status.uptime_seconds / 60:.0f} min"
        )

    async def _start_dashboard(self) -> None:
        """Serve the status app on the running loop."""
        try:
            import uvicorn

            from price_monitor.monitoring.dashboard import create_dashboard_app

            app = create_dashboard_app(self)
            config = uvicorn.Config(
                app,
                host=self._config.dashboard_host,
                port=self._config.dashboard_port,
                log_level="warning",
            )
            server = uvicorn.Server(config)
            # Signals are handled by the service
            server.install_signal_handlers = lambda: None

            self._dashboard_server = server
            self._dashboard_task = asyncio.create_task(server.serve(), name="dashboard")
            logger.info(
                f"Dashboard started at http://{self._config.dashboard_host}:"
                f"{self._config.dashboard_port}"
            )

        except ImportError as e:
            logger.warning(
                f"Dashboard dependencies not installed: {e}. "
                "Install with: pip install fastapi uvicorn"
            )
        except Exception as e:
            logger.error(f"Failed to start dashboard: {e}")

    async def _stop_dashboard(self) -> None:
        server, task = self._dashboard_server, self._dashboard_task
        self._dashboard_server = None
        self._dashboard_task = None
        if server is not None:
            server.should_exit = True
        if task and not task.done():
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except asyncio.TimeoutError:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task


async def run_monitor_service(config: Optional[ServiceConfig] = None) -> int:
    """
    Run the monitor as a standalone process.

    Args:
        config: Optional service configuration

    Returns:
        Process exit code
    """
    service = MonitorService(config=config)
    service.setup_signal_handlers()
    return await service.run_forever()
