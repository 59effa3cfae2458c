"""
Webhook notifier for price alerts.

Posts text messages to a WeChat Work group-robot webhook. Delivery is
best-effort: failures are logged and reported as False, never raised.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import requests

logger = logging.getLogger(__name__)

WECHAT_WEBHOOK_URL = "https://qyapi.weixin.qq.com/cgi-bin/webhook/send"
PLACEHOLDER_KEY = "your-webhook-key-here"


class WebhookNotifier:
    """
    Sends alert text to a webhook.

    Usage:
        notifier = WebhookNotifier(webhook_key="...")
        ok = notifier.send("BTCUSDT above max", dedupe_key="BTCUSDT_upper")
    """

    def __init__(
        self,
        webhook_key: Optional[str] = None,
        api_url: str = WECHAT_WEBHOOK_URL,
        timeout: float = 10.0,
        _session: Optional[Any] = None,  # For testing
    ) -> None:
        """
        Initialize the notifier.

        Args:
            webhook_key: Robot key appended as ``?key=``
            api_url: Webhook endpoint
            timeout: HTTP timeout in seconds
            _session: Injected HTTP session for testing
        """
        self._webhook_key = webhook_key
        self._api_url = api_url
        self._timeout = timeout
        self._session = _session or requests.Session()

    @property
    def is_configured(self) -> bool:
        return bool(self._webhook_key) and self._webhook_key != PLACEHOLDER_KEY

    def send(self, message: str, dedupe_key: Optional[str] = None) -> bool:
        """
        Post a text message.

        Args:
            message: Alert text
            dedupe_key: Alert key, used for logging only

        Returns:
            True if the webhook accepted the message
        """
        label = dedupe_key or "alert"

        if not self.is_configured:
            logger.warning(f"Webhook key not configured, dropping {label}")
            return False

        payload = {
            "msgtype": "text",
            "text": {"content": message},
        }

        try:
            response = self._session.post(
                self._api_url,
                params={"key": self._webhook_key},
                json=payload,
                timeout=self._timeout,
            )
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as e:
            logger.error(f"Network error sending {label}: {e}")
            return False
        except ValueError as e:
            logger.error(f"Could not parse webhook response for {label}: {e}")
            return False

        if not isinstance(body, dict):
            logger.error(f"Unexpected webhook response for {label}: {str(body)[:100]}")
            return False

        if body.get("errcode") == 0:
            logger.info(f"Sent webhook alert: {label}")
            return True

        logger.error(f"Webhook rejected {label}: {body.get('errmsg', 'unknown error')}")
        return False
