"""
Monitoring Layer - Alerting and status.

This module provides:
    - AlertDeduplicator: Per-key cooldown so an alert fires once per window
    - WebhookNotifier: WeChat Work webhook delivery
    - create_dashboard_app: FastAPI status endpoints

Alert Deduplication:
    - Same symbol and direction won't fire again within the cooldown
    - Upper and lower crossings are tracked separately
"""

from .alerting import AlertDeduplicator, AlertRecord
from .notifier import WebhookNotifier
from .dashboard import create_dashboard_app

__all__ = [
    # Alerting
    "AlertDeduplicator",
    "AlertRecord",
    # Notification
    "WebhookNotifier",
    # Status
    "create_dashboard_app",
]
