"""
Live Price-Threshold Monitor.

Streams ticker data for a fixed set of symbols, tracks the latest price per
symbol and sends a webhook alert whenever price leaves its configured band.
After each alert the band is recentred on the new price.
"""

__version__ = "0.1.0"
