"""
Core Layer - Threshold tracking and orchestration.

This module provides:
    - ThresholdTracker: Latest price per symbol and band crossing detection
    - PriceBand: A symbol's [min, max] alert band
    - CrossingEvent: A detected crossing with its rebased band
    - MonitorService: Wires feed, tracker, deduplicator and notifier
    - ServiceConfig: Configuration for the service

Data Flow:
    1. WebSocket receives a ticker frame
    2. ThresholdTracker stores the price and checks the band
    3. AlertDeduplicator gates the crossing by symbol and direction
    4. WebhookNotifier delivers the alert off the event loop
"""

# Tracking
from .threshold_tracker import (
    CrossingDirection,
    CrossingEvent,
    PriceBand,
    ThresholdTracker,
)

# Service
from .service import MonitorService, MonitorStatus, ServiceConfig, ServiceState

__all__ = [
    "CrossingDirection",
    "CrossingEvent",
    "PriceBand",
    "ThresholdTracker",
    "MonitorService",
    "MonitorStatus",
    "ServiceConfig",
    "ServiceState",
]
