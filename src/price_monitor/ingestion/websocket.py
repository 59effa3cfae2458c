"""
WebSocket client for the ticker feed.

Features:
    - Linear-backoff reconnection with an attempt cap
    - Connect timeout on every attempt
    - Ping heartbeat (observability only, a missed pong never disconnects)
    - Subscription persistence across reconnects
    - Lifecycle signals (connected, disconnected, error, exhausted) on a queue

Wire protocol (OKX v5 public channel):
    outbound  {"op": "subscribe", "args": [{"channel": "tickers", "instId": "BTC-USDT"}]}
    inbound   {"arg": {"channel": "tickers", "instId": "BTC-USDT"}, "data": [{...}, ...]}
              {"event": "subscribe", "arg": {...}}
              {"event": "error", "code": "60012", "msg": "..."}
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Set, Union

import websockets
from websockets.exceptions import ConnectionClosed

from .metrics import MetricsCollector
from .models import FeedSignal, FeedSignalType, PriceTick
from .symbols import to_feed_id

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
TICKER_CHANNEL = "tickers"


class ConnectionState(str, Enum):
    """Feed connection state."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


class FeedError(Exception):
    """Error frame reported by the feed."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


# Type aliases for callbacks
TickCallback = Callable[[PriceTick], Union[None, Awaitable[None]]]
Connector = Callable[[str], Awaitable[Any]]


class FeedConnectionManager:
    """
    Resilient WebSocket client for ticker updates.

    Owns the single streaming connection and the set of desired symbols.
    All transitions run on the event loop; nothing here is shared with
    other threads.

    Reconnect policy:
        The attempt counter resets on every successful connect. Each
        reconnect waits ``reconnect_delay * attempt`` seconds (5s, 10s,
        15s, ... by default). Once the counter reaches
        ``max_reconnect_attempts`` an EXHAUSTED signal is emitted and no
        further attempt is scheduled.

    Usage:
        async def handle_tick(tick: PriceTick):
            print(f"{tick.symbol} = {tick.last}")

        feed = FeedConnectionManager(on_tick=handle_tick)
        await feed.subscribe("BTCUSDT")     # retained until connected
        await feed.connect()

        signal = await feed.next_signal()   # CONNECTED, DISCONNECTED, ...

        # ... later
        await feed.disconnect()
    """

    OKX_PUBLIC_URL = "wss://ws.okx.com:8443/ws/v5/public"

    def __init__(
        self,
        on_tick: TickCallback,
        url: Optional[str] = None,
        max_reconnect_attempts: int = 5,
        reconnect_delay: float = 5.0,
        connect_timeout: float = 10.0,
        heartbeat_interval: float = 30.0,
        subscription_delay: float = 0.1,
        close_timeout: float = 5.0,
        metrics: Optional[MetricsCollector] = None,
        connector: Optional[Connector] = None,
    ):
        """
        Initialize the feed manager.

        Args:
            on_tick: Callback for each decoded ticker (sync or async)
            url: Optional feed URL override (defaults to OKX public)
            max_reconnect_attempts: Attempts before giving up
            reconnect_delay: Base delay in seconds, multiplied by attempt number
            connect_timeout: Seconds before an open attempt is aborted
            heartbeat_interval: Seconds between pings
            subscription_delay: Settle delay before resubscribing after connect
            close_timeout: Seconds to wait for the receive loop on disconnect
            metrics: Optional metrics collector
            connector: Optional transport factory (url -> connection), for testing
        """
        self._on_tick = on_tick
        self._url = url or self.OKX_PUBLIC_URL
        self._max_reconnect_attempts = max_reconnect_attempts
        self._reconnect_delay = reconnect_delay
        self._connect_timeout = connect_timeout
        self._heartbeat_interval = heartbeat_interval
        self._subscription_delay = subscription_delay
        self._close_timeout = close_timeout
        self._metrics = metrics
        self._connector = connector or self._open_websocket

        # Connection state
        self._state = ConnectionState.DISCONNECTED
        self._ws: Optional[Any] = None
        self._subscriptions: Set[str] = set()
        self._reconnect_attempts = 0
        self._closing = False

        # Tasks
        self._receive_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        self._signals: asyncio.Queue[FeedSignal] = asyncio.Queue()
        self._last_message_time: Optional[float] = None

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Whether currently connected."""
        return self._state == ConnectionState.CONNECTED

    @property
    def subscribed_symbols(self) -> Set[str]:
        """Symbols that are (re)subscribed on every connect."""
        return self._subscriptions.copy()

    @property
    def reconnect_attempts(self) -> int:
        """Reconnect attempts since the last successful connect."""
        return self._reconnect_attempts

    @property
    def last_message_time(self) -> Optional[float]:
        """Unix timestamp of last received frame."""
        return self._last_message_time

    @property
    def signals(self) -> "asyncio.Queue[FeedSignal]":
        """Queue of lifecycle signals."""
        return self._signals

    async def next_signal(self) -> FeedSignal:
        """Wait for the next lifecycle signal."""
        return await self._signals.get()

    def get_status(self) -> dict:
        """Connection status for operator tooling."""
        age = None
        if self._last_message_time is not None:
            age = round(time.time() - self._last_message_time, 1)
        return {
            "url": self._url,
            "state": self._state.value,
            "connected": self.is_connected,
            "reconnect_attempts": self._reconnect_attempts,
            "max_reconnect_attempts": self._max_reconnect_attempts,
            "subscribed_symbols": sorted(self._subscriptions),
            "last_message_age_seconds": age,
        }

    def _set_state(self, state: ConnectionState) -> None:
        if self._state != state:
            old_state = self._state
            self._state = state
            logger.info(f"Feed state: {old_state.value} -> {state.value}")

    def _emit(self, signal_type: FeedSignalType, **kwargs: Any) -> None:
        self._signals.put_nowait(FeedSignal(type=signal_type, **kwargs))

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def _open_websocket(self, url: str) -> Any:
        # Keepalive is handled by our own heartbeat loop
        return await websockets.connect(
            url,
            ping_interval=None,
            open_timeout=None,
            close_timeout=self._close_timeout,
        )

    async def connect(self) -> bool:
        """
        Open the feed connection.

        On success the reconnect counter is reset, the heartbeat and
        receive loops start, every desired symbol is resubscribed after
        the settle delay and a CONNECTED signal is emitted. On failure an
        ERROR signal is emitted and a reconnect is scheduled.

        Returns:
            True if the connection is up
        """
        if self._state != ConnectionState.DISCONNECTED:
            logger.warning(f"Cannot connect: already in state {self._state.value}")
            return self.is_connected

        self._closing = False
        self._set_state(ConnectionState.CONNECTING)
        logger.info(f"Connecting to {self._url}...")

        try:
            ws = await asyncio.wait_for(
                self._connector(self._url),
                timeout=self._connect_timeout,
            )
        except asyncio.CancelledError:
            if self._state == ConnectionState.CONNECTING:
                self._set_state(ConnectionState.DISCONNECTED)
            raise
        except asyncio.TimeoutError:
            await self._handle_connect_failure(
                TimeoutError(f"Connect timed out after {self._connect_timeout}s")
            )
            return False
        except Exception as e:
            await self._handle_connect_failure(e)
            return False

        if self._closing or self._state != ConnectionState.CONNECTING:
            # disconnect() was called while the handshake was in flight
            logger.info("Connect finished after shutdown request, closing")
            with contextlib.suppress(Exception):
                await ws.close(code=NORMAL_CLOSURE, reason="Normal closure")
            return False

        self._ws = ws
        self._reconnect_attempts = 0
        self._last_message_time = time.time()
        self._set_state(ConnectionState.CONNECTED)
        logger.info(f"Connected to {self._url}")
        if self._metrics:
            self._metrics.set_feed_connected(True)

        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(ws), name="feed_heartbeat"
        )
        self._receive_task = asyncio.create_task(
            self._receive_loop(ws), name="feed_receive"
        )

        # Let the connection settle before resubscribing
        await asyncio.sleep(self._subscription_delay)

        if self._ws is not ws or not self.is_connected:
            return False

        await self._resubscribe_all()
        self._emit(FeedSignalType.CONNECTED)
        return True

    async def _handle_connect_failure(self, error: BaseException) -> None:
        logger.error(f"Failed to connect: {error}")
        self._ws = None
        self._set_state(ConnectionState.DISCONNECTED)
        if self._metrics:
            self._metrics.record_error(
                error_type=type(error).__name__,
                message=str(error),
                component="websocket",
            )
        self._emit(FeedSignalType.ERROR, error=error)
        if self._closing:
            logger.info("Shutdown requested during connect, not reconnecting")
            return
        self._schedule_reconnect()

    async def disconnect(self) -> None:
        """
        Close the feed connection without reconnecting.

        Cancels any pending reconnect, stops the heartbeat, closes the
        transport with a normal-closure code and resets the attempt counter.
        """
        logger.info("Disconnecting from feed...")
        self._closing = True
        await self._cancel_reconnect()

        ws = self._ws
        if self._state != ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.CLOSING)

        await self._stop_heartbeat()

        if ws is not None:
            try:
                await ws.close(code=NORMAL_CLOSURE, reason="Normal closure")
            except Exception as e:
                logger.warning(f"Error closing feed connection: {e}")

        receive_task = self._receive_task
        if receive_task and receive_task is not asyncio.current_task():
            if not receive_task.done():
                await asyncio.wait({receive_task}, timeout=self._close_timeout)
            if not receive_task.done():
                receive_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await receive_task
        self._receive_task = None

        if ws is not None and self._ws is ws:
            # The receive loop never saw the close frame
            self._ws = None
            self._emit(
                FeedSignalType.DISCONNECTED,
                code=NORMAL_CLOSURE,
                reason="Normal closure",
            )

        self._reconnect_attempts = 0
        self._set_state(ConnectionState.DISCONNECTED)
        if self._metrics:
            self._metrics.set_feed_connected(False)
        logger.info("Feed disconnected")

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    async def _receive_loop(self, ws: Any) -> None:
        """Main loop for receiving frames."""
        try:
            async for raw in ws:
                self._last_message_time = time.time()
                if self._metrics:
                    self._metrics.record_message_received()
                await self._handle_message(raw)

        except asyncio.CancelledError:
            logger.debug("Receive loop cancelled")
            raise

        except ConnectionClosed as e:
            logger.warning(f"Feed connection closed with error: {e}")

        except Exception as e:
            logger.error(f"Error in receive loop: {e}")
            self._emit(FeedSignalType.ERROR, error=e)

        await self._handle_close(
            ws,
            getattr(ws, "close_code", None),
            getattr(ws, "close_reason", None),
        )

    async def _handle_close(self, ws: Any, code: Optional[int], reason: Optional[str]) -> None:
        """Transition to DISCONNECTED and reconnect unless we asked for the close."""
        if ws is not self._ws:
            return

        if self._heartbeat_task and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
        self._heartbeat_task = None

        caller_initiated = self._closing or self._state == ConnectionState.CLOSING
        self._ws = None
        self._set_state(ConnectionState.DISCONNECTED)
        if self._metrics:
            self._metrics.set_feed_connected(False)

        logger.info(f"Feed connection closed [{code}]: {reason or 'unknown reason'}")
        self._emit(FeedSignalType.DISCONNECTED, code=code, reason=reason)

        if not caller_initiated:
            self._schedule_reconnect()

    async def _heartbeat_loop(self, ws: Any) -> None:
        """Ping the server periodically. Pongs are only logged."""
        try:
            while True:
                await asyncio.sleep(self._heartbeat_interval)

                if ws is not self._ws or not self.is_connected:
                    return

                try:
                    pong_waiter = await ws.ping()
                except ConnectionClosed:
                    logger.debug("Heartbeat skipped, connection closed")
                    return
                except Exception as e:
                    logger.warning(f"Heartbeat ping failed: {e}")
                    continue

                pong_waiter.add_done_callback(self._on_pong)

        except asyncio.CancelledError:
            logger.debug("Heartbeat loop cancelled")
            raise

    @staticmethod
    def _on_pong(waiter: Any) -> None:
        if waiter.cancelled() or waiter.exception() is not None:
            logger.debug("Heartbeat pong not received")
        else:
            logger.debug("Heartbeat ok")

    async def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        """Schedule the next connect attempt, or give up at the cap."""
        if self._reconnect_attempts >= self._max_reconnect_attempts:
            logger.error(
                f"Max reconnect attempts reached ({self._max_reconnect_attempts}), "
                f"giving up"
            )
            self._emit(FeedSignalType.EXHAUSTED)
            return

        self._reconnect_attempts += 1
        delay = self._reconnect_delay * self._reconnect_attempts
        logger.info(
            f"Reconnecting in {delay:.1f}s "
            f"(attempt {self._reconnect_attempts}/{self._max_reconnect_attempts})..."
        )
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay), name="feed_reconnect"
        )

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # Stays the current reconnect task until connect() returns, so
        # disconnect() can cancel a handshake in flight
        await self.connect()

    async def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    async def _handle_message(self, raw: Union[str, bytes]) -> None:
        """Parse and dispatch one frame. Never raises."""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")

        if raw == "pong":
            logger.debug("Received text pong")
            return

        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to parse feed message: {e}")
            self._record_dropped_frame(e)
            return

        if not isinstance(data, dict):
            error = ValueError(f"Unexpected frame: {str(data)[:100]}")
            logger.warning(str(error))
            self._record_dropped_frame(error)
            return

        event = data.get("event")

        if event in ("subscribe", "unsubscribe"):
            arg = data.get("arg") if isinstance(data.get("arg"), dict) else {}
            logger.info(f"Subscription confirmed ({event}): {arg.get('instId', 'unknown')}")
            return

        if event == "error":
            message = data.get("msg") or "unknown error"
            code = data.get("code")
            logger.error(f"Feed error message [{code}]: {message}")
            if self._metrics:
                self._metrics.record_error("FeedError", message, component="websocket")
            self._emit(FeedSignalType.ERROR, error=FeedError(message, code))
            return

        arg = data.get("arg")
        items = data.get("data")
        if isinstance(arg, dict) and arg.get("channel") == TICKER_CHANNEL and isinstance(items, list):
            await self._handle_ticker_items(items)
            return

        logger.debug(f"Unhandled feed message: {str(data)[:200]}")

    async def _handle_ticker_items(self, items: list) -> None:
        """Decode each item; a bad item is dropped without affecting the rest."""
        for item in items:
            tick = PriceTick.from_feed(item)
            if tick is None:
                if self._metrics:
                    self._metrics.record_tick_dropped()
                continue

            if self._metrics:
                self._metrics.record_tick()

            try:
                result = self._on_tick(tick)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error handling tick for {tick.symbol}: {e}")
                if self._metrics:
                    self._metrics.record_error(
                        type(e).__name__, str(e), component="processor", symbol=tick.symbol
                    )
                self._emit(FeedSignalType.ERROR, error=e)

    def _record_dropped_frame(self, error: BaseException) -> None:
        if self._metrics:
            self._metrics.record_frame_dropped()
            self._metrics.record_error(type(error).__name__, str(error), component="parser")
        self._emit(FeedSignalType.ERROR, error=error)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(self, symbol: str) -> bool:
        """
        Add a symbol to the subscription set.

        The symbol is kept across reconnects. If the feed is connected the
        request is sent immediately.

        Returns:
            True if the wire request was sent
        """
        if symbol not in self._subscriptions:
            self._subscriptions.add(symbol)
            logger.info(f"Added subscription: {symbol}")
            self._update_subscription_metric()

        return await self._send_request("subscribe", symbol)

    async def unsubscribe(self, symbol: str) -> bool:
        """
        Remove a symbol from the subscription set.

        Returns:
            True if the wire request was sent
        """
        if symbol in self._subscriptions:
            self._subscriptions.discard(symbol)
            logger.info(f"Removed subscription: {symbol}")
            self._update_subscription_metric()

        return await self._send_request("unsubscribe", symbol)

    def _update_subscription_metric(self) -> None:
        if self._metrics:
            self._metrics.set_subscribed_symbols(len(self._subscriptions))

    async def _resubscribe_all(self) -> None:
        logger.info(f"Resubscribing {len(self._subscriptions)} symbols...")
        for symbol in sorted(self._subscriptions):
            await self._send_request("subscribe", symbol)

    async def _send_request(self, op: str, symbol: str) -> bool:
        """Send a subscribe/unsubscribe request for one symbol."""
        if not self.is_connected or self._ws is None:
            if op == "subscribe":
                logger.warning(f"Feed not connected, {symbol} will be subscribed on connect")
            return False

        message = {
            "op": op,
            "args": [{"channel": TICKER_CHANNEL, "instId": to_feed_id(symbol)}],
        }
        try:
            await self._ws.send(json.dumps(message))
            logger.info(f"Sent {op} request: {symbol}")
            return True
        except Exception as e:
            logger.error(f"Failed to send {op} request for {symbol}: {e}")
            return False
