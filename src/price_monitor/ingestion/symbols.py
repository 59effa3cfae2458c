"""
Symbol spelling helpers.

The monitor uses the compact spelling (``BTCUSDT``) everywhere; the feed
expects instrument ids with a separator (``BTC-USDT``).
"""

from __future__ import annotations

import re

QUOTE_ASSET = "USDT"
FEED_SEPARATOR = "-"

SYMBOL_PATTERN = re.compile(r"^[A-Z]{2,10}USDT$")


def is_valid_symbol(symbol: object) -> bool:
    """Whether ``symbol`` is a canonical ``<BASE>USDT`` symbol."""
    if not isinstance(symbol, str):
        return False
    return SYMBOL_PATTERN.match(symbol) is not None


def to_feed_id(symbol: str) -> str:
    """
    Convert a canonical symbol to the feed's instrument id.

    ``BTCUSDT`` -> ``BTC-USDT``. Anything not ending in the quote asset is
    returned unchanged.
    """
    if symbol.endswith(QUOTE_ASSET) and len(symbol) > len(QUOTE_ASSET):
        base = symbol[: -len(QUOTE_ASSET)]
        return f"{base}{FEED_SEPARATOR}{QUOTE_ASSET}"
    return symbol


def from_feed_id(feed_id: str) -> str:
    """Convert a feed instrument id back to the canonical symbol."""
    return feed_id.replace(FEED_SEPARATOR, "")
