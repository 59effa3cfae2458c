"""
Price Monitor - Main Entry Point

Watches live USDT spot tickers and sends a webhook alert whenever a price
leaves its configured band. After each alert the band is rebased around
the new price.

Usage:
    python -m price_monitor.main [--config CONFIG_PATH] [--log-level LEVEL]

Configuration:
    The monitor reads configuration from:
    1. A .env file in the working directory (does not override the environment)
    2. Environment variables
    3. An optional JSON file passed with --config (overrides the environment)

Environment Variables:
    FEED_URL                        Websocket endpoint (default: OKX public v5)
    MONITOR_SYMBOLS                 Comma-separated symbols (default: BTCUSDT,ETHUSDT,...)
    PRICE_BANDS                     Bands as SYM=min:max,... (default: built-in bands)
    RECONNECT_ATTEMPTS              Attempts before giving up (default: 5)
    RECONNECT_DELAY_SECONDS         Base reconnect delay, multiplied by attempt (default: 5)
    CONNECT_TIMEOUT_SECONDS         Connect timeout (default: 10)
    HEARTBEAT_INTERVAL_SECONDS      Ping interval (default: 30)
    SUBSCRIPTION_DELAY_SECONDS      Settle delay before resubscribing (default: 0.1)
    PRICE_CHANGE_THRESHOLD          Band half-width after an alert (default: 0.01)
    ALERT_COOLDOWN_SECONDS          Minimum time between identical alerts (default: 60)
    ALERT_CLEANUP_INTERVAL_SECONDS  Alert record sweep interval (default: 900)
    ALERT_MAX_AGE_SECONDS           Alert record retention (default: 3600)
    WEBHOOK_KEY                     WeChat Work robot key
    WEBHOOK_URL                     Webhook endpoint override
    STATUS_LOG_INTERVAL_SECONDS     Status log interval (default: 300)
    DASHBOARD_ENABLED               Serve the status API (default: false)
    DASHBOARD_HOST                  Status API host (default: 127.0.0.1)
    DASHBOARD_PORT                  Status API port (default: 9060)
    LOG_LEVEL                       Logging level (DEBUG/INFO/WARNING/ERROR)

Exit codes:
    0  clean shutdown (SIGINT/SIGTERM)
    1  invalid configuration, or the feed could not be re-established
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

# Configure logging before imports
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

from price_monitor.core.service import MonitorService, ServiceConfig  # noqa: E402
from price_monitor.ingestion.symbols import is_valid_symbol  # noqa: E402
from price_monitor.ingestion.websocket import FeedConnectionManager  # noqa: E402
from price_monitor.monitoring.notifier import WECHAT_WEBHOOK_URL  # noqa: E402

DEFAULT_SYMBOLS = [
    "BTCUSDT",
    "ETHUSDT",
    "SOLUSDT",
    "DOGEUSDT",
    "OKBUSDT",
    "BNBUSDT",
    "APTUSDT",
]

# Starting bands collapse to a single price, so the first tick on either
# side of it fires and rebases.
DEFAULT_THRESHOLDS: Dict[str, Tuple[float, float]] = {
    "SOLUSDT": (143.0, 143.0),
    "ETHUSDT": (2400.0, 2400.0),
    "BTCUSDT": (108000.0, 108000.0),
    "DOGEUSDT": (0.165, 0.165),
    "OKBUSDT": (51.0, 51.0),
    "BNBUSDT": (630.0, 630.0),
    "APTUSDT": (4.5, 4.5),
}


def parse_symbol_list(raw: str) -> List[str]:
    """Parse "BTCUSDT, ethusdt" into ["BTCUSDT", "ETHUSDT"]."""
    return [s.strip().upper() for s in raw.split(",") if s.strip()]


def parse_bands(raw: str) -> Dict[str, Tuple[float, float]]:
    """
    Parse "BTCUSDT=100000:110000,ETHUSDT=2400:2400".

    Raises:
        ValueError: On a malformed entry
    """
    bands: Dict[str, Tuple[float, float]] = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        symbol, sep, bounds = entry.partition("=")
        low, colon, high = bounds.partition(":")
        if not sep or not colon:
            raise ValueError(f"Malformed price band '{entry}', expected SYMBOL=min:max")
        bands[symbol.strip().upper()] = (float(low), float(high))
    return bands


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == "true"


@dataclass
class MonitorConfig:
    """Complete monitor configuration."""

    # Feed
    feed_url: str = FeedConnectionManager.OKX_PUBLIC_URL
    symbols: List[str] = field(default_factory=lambda: list(DEFAULT_SYMBOLS))
    reconnect_attempts: int = 5
    reconnect_delay_seconds: float = 5.0
    connect_timeout_seconds: float = 10.0
    heartbeat_interval_seconds: float = 30.0
    subscription_delay_seconds: float = 0.1

    # Thresholds
    thresholds: Dict[str, Tuple[float, float]] = field(
        default_factory=lambda: dict(DEFAULT_THRESHOLDS)
    )
    price_change_threshold: float = 0.01

    # Alerts
    alert_cooldown_seconds: float = 60.0
    alert_cleanup_interval_seconds: float = 900.0
    alert_max_age_seconds: float = 3600.0
    webhook_key: Optional[str] = None
    webhook_url: str = WECHAT_WEBHOOK_URL

    # Housekeeping
    status_log_interval_seconds: float = 300.0

    # Status API
    dashboard_enabled: bool = False
    dashboard_host: str = "127.0.0.1"
    dashboard_port: int = 9060

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        """Load configuration from environment variables."""
        symbols_raw = os.environ.get("MONITOR_SYMBOLS")
        bands_raw = os.environ.get("PRICE_BANDS")

        return cls(
            feed_url=os.environ.get("FEED_URL", FeedConnectionManager.OKX_PUBLIC_URL),
            symbols=parse_symbol_list(symbols_raw) if symbols_raw else list(DEFAULT_SYMBOLS),
            reconnect_attempts=int(os.environ.get("RECONNECT_ATTEMPTS", "5")),
            reconnect_delay_seconds=float(os.environ.get("RECONNECT_DELAY_SECONDS", "5")),
            connect_timeout_seconds=float(os.environ.get("CONNECT_TIMEOUT_SECONDS", "10")),
            heartbeat_interval_seconds=float(os.environ.get("HEARTBEAT_INTERVAL_SECONDS", "30")),
            subscription_delay_seconds=float(os.environ.get("SUBSCRIPTION_DELAY_SECONDS", "0.1")),
            thresholds=parse_bands(bands_raw) if bands_raw else dict(DEFAULT_THRESHOLDS),
            price_change_threshold=float(os.environ.get("PRICE_CHANGE_THRESHOLD", "0.01")),
            alert_cooldown_seconds=float(os.environ.get("ALERT_COOLDOWN_SECONDS", "60")),
            alert_cleanup_interval_seconds=float(os.environ.get("ALERT_CLEANUP_INTERVAL_SECONDS", "900")),
            alert_max_age_seconds=float(os.environ.get("ALERT_MAX_AGE_SECONDS", "3600")),
            webhook_key=os.environ.get("WEBHOOK_KEY"),
            webhook_url=os.environ.get("WEBHOOK_URL", WECHAT_WEBHOOK_URL),
            status_log_interval_seconds=float(os.environ.get("STATUS_LOG_INTERVAL_SECONDS", "300")),
            dashboard_enabled=_env_bool("DASHBOARD_ENABLED", "false"),
            dashboard_host=os.environ.get("DASHBOARD_HOST", "127.0.0.1"),
            dashboard_port=int(os.environ.get("DASHBOARD_PORT", "9060")),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )

    def apply_overrides(self, data: Dict[str, Any]) -> None:
        """
        Merge values loaded from a JSON config file.

        ``symbols`` is a list, ``thresholds`` maps symbol to {"min", "max"},
        and any other key must name a scalar field. Scalars are coerced to
        the field's type, so "5" is accepted for an int field.

        Raises:
            ValueError: On an unknown key, a malformed threshold or a value
                that cannot be converted
        """
        scalar_fields = {f.name for f in fields(self)} - {"symbols", "thresholds"}

        for key, value in data.items():
            if key == "symbols":
                if not isinstance(value, list):
                    raise ValueError(f"symbols must be a list, got {value!r}")
                self.symbols = [str(s).strip().upper() for s in value]
            elif key == "thresholds":
                if not isinstance(value, dict):
                    raise ValueError(f"thresholds must be an object, got {value!r}")
                thresholds = dict(self.thresholds)
                for symbol, bounds in value.items():
                    try:
                        thresholds[symbol.upper()] = (float(bounds["min"]), float(bounds["max"]))
                    except (KeyError, TypeError, ValueError) as e:
                        raise ValueError(f"Malformed threshold for {symbol}: {bounds}") from e
                self.thresholds = thresholds
            elif key in scalar_fields:
                setattr(self, key, self._coerce(key, value))
            else:
                raise ValueError(f"Unknown configuration key: {key}")

    def _coerce(self, key: str, value: Any) -> Any:
        current = getattr(self, key)
        if key == "webhook_key":
            return None if value is None else str(value)

        if isinstance(current, bool):
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.lower() in ("true", "false"):
                return value.lower() == "true"
            raise ValueError(f"{key} must be true or false, got {value!r}")

        if isinstance(value, (bool, list, dict)) or value is None:
            raise ValueError(f"{key} has invalid value {value!r}")

        try:
            if isinstance(current, int):
                return int(value)
            if isinstance(current, float):
                return float(value)
        except ValueError as e:
            raise ValueError(f"{key} has invalid value {value!r}") from e
        return str(value)

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "MonitorConfig":
        """Environment first, then the JSON file on top."""
        config = cls.from_env()
        if config_path:
            path = Path(config_path)
            with open(path) as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError(f"Config file {path} must contain a JSON object")
            config.apply_overrides(data)
            logger.info(f"Loaded configuration overrides from {path}")
        return config

    def validate(self) -> List[str]:
        """
        Check the configuration.

        Returns:
            Warnings that do not prevent startup

        Raises:
            ValueError: On a configuration the monitor cannot run with
        """
        if not self.symbols:
            raise ValueError("At least one symbol must be configured")

        invalid = [s for s in self.symbols if not is_valid_symbol(s)]
        if invalid:
            raise ValueError(f"Invalid symbols: {', '.join(invalid)}")

        for symbol, (low, high) in self.thresholds.items():
            if low > high:
                raise ValueError(f"Band min exceeds max for {symbol}: {low} > {high}")

        if not 0 < self.price_change_threshold < 1:
            raise ValueError(
                f"PRICE_CHANGE_THRESHOLD must be between 0 and 1, got {self.price_change_threshold}"
            )

        if self.reconnect_attempts < 0:
            raise ValueError(f"RECONNECT_ATTEMPTS must not be negative, got {self.reconnect_attempts}")

        positive = {
            "reconnect_delay_seconds": self.reconnect_delay_seconds,
            "connect_timeout_seconds": self.connect_timeout_seconds,
            "heartbeat_interval_seconds": self.heartbeat_interval_seconds,
            "alert_cooldown_seconds": self.alert_cooldown_seconds,
            "alert_cleanup_interval_seconds": self.alert_cleanup_interval_seconds,
            "alert_max_age_seconds": self.alert_max_age_seconds,
            "status_log_interval_seconds": self.status_log_interval_seconds,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")

        if self.subscription_delay_seconds < 0:
            raise ValueError("subscription_delay_seconds must not be negative")

        warnings = []
        if not self.webhook_key:
            warnings.append("WEBHOOK_KEY is not set, alerts will only be logged")

        unbanded = [s for s in self.symbols if s not in self.thresholds]
        if unbanded:
            warnings.append(f"No price band for {', '.join(unbanded)}, alerts disabled for them")

        return warnings

    def to_service_config(self) -> ServiceConfig:
        """Build the service configuration."""
        return ServiceConfig(
            feed_url=self.feed_url,
            symbols=list(self.symbols),
            reconnect_attempts=self.reconnect_attempts,
            reconnect_delay=self.reconnect_delay_seconds,
            connect_timeout=self.connect_timeout_seconds,
            heartbeat_interval=self.heartbeat_interval_seconds,
            subscription_delay=self.subscription_delay_seconds,
            thresholds=dict(self.thresholds),
            price_change_threshold=self.price_change_threshold,
            alert_cooldown=self.alert_cooldown_seconds,
            alert_cleanup_interval=self.alert_cleanup_interval_seconds,
            alert_max_age=self.alert_max_age_seconds,
            webhook_key=self.webhook_key,
            webhook_url=self.webhook_url,
            status_log_interval=self.status_log_interval_seconds,
            dashboard_enabled=self.dashboard_enabled,
            dashboard_host=self.dashboard_host,
            dashboard_port=self.dashboard_port,
        )


def load_env_file(path: str = ".env") -> None:
    """Load environment variables from .env file if it exists."""
    env_path = Path(path)
    if env_path.exists():
        logger.info(f"Loading environment from {env_path}")
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    value = value.strip().strip('"').strip("'")
                    os.environ.setdefault(key.strip(), value)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Live price-threshold monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to a JSON configuration file",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    return parser.parse_args(argv)


async def main_async(args: argparse.Namespace) -> int:
    """Async main function."""
    try:
        config = MonitorConfig.load(args.config)
        warnings = config.validate()
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    if not args.log_level:
        logging.getLogger().setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    for warning in warnings:
        logger.warning(warning)

    service = MonitorService(config.to_service_config())
    service.setup_signal_handlers()

    try:
        return await service.run_forever()
    except Exception:
        logger.exception("Price monitor crashed")
        await service.stop()
        return 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    # Load .env file
    load_env_file()

    # Parse arguments
    args = parse_args(argv)

    # Override log level if specified
    if args.log_level:
        logging.getLogger().setLevel(getattr(logging, args.log_level))

    try:
        return asyncio.run(main_async(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
