"""Notification webhook client with exponential backoff retry logic"""

import logging
import time
from typing import Callable, Iterable

import httpx

from quota_ledger.config import settings
from quota_ledger.domain.models import Notification
from quota_ledger.infrastructure.observability.metrics import (
    notification_failure_counter,
    notification_latency_histogram,
)


class NotificationClient:
    """Best-effort delivery of user notifications; never raises to the caller"""

    def __init__(
        self,
        webhook_url: str | None = None,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.webhook_url = webhook_url or settings.notification_webhook_url
        self.max_retries = settings.webhook_max_retries
        self.backoff_base = settings.webhook_backoff_base
        self.timeout = settings.http_timeout_seconds
        self._client = http_client
        self._sleep = sleep

    def notify_user(self, user_id: int, title: str, body: str) -> bool:
        """
        POST a notification to the webhook with retry logic.

        Retry strategy:
        - Exponential backoff: base, 2*base, 4*base...
        - Retries on non-2xx responses and network failures
        - Gives up after max_retries, counting and logging the failure

        Returns: True when delivered
        """
        if not self.webhook_url:
            logging.info("Notification not delivered, no webhook configured", extra={"user_id": user_id, "title": title})
            return False

        payload = {"user_id": user_id, "title": title, "body": body}
        client = self._client or httpx.Client(timeout=self.timeout)
        attempt = 0
        try:
            while attempt < self.max_retries:
                try:
                    with notification_latency_histogram.time():
                        response = client.post(self.webhook_url, json=payload)
                        response.raise_for_status()
                        return True

                except (httpx.HTTPStatusError, httpx.RequestError) as e:
                    attempt += 1
                    notification_failure_counter.inc()

                    if attempt >= self.max_retries:
                        logging.warning(
                            f"Notification delivery failed: {e}",
                            extra={"user_id": user_id, "title": title, "attempts": attempt},
                        )
                        return False

                    self._sleep(self.backoff_base * (2 ** (attempt - 1)))
        finally:
            if self._client is None:
                client.close()
        return False

    def dispatch(self, notifications: Iterable[Notification]) -> int:
        """Deliver queued notifications; returns how many were delivered"""
        return sum(1 for n in notifications if self.notify_user(n.user_id, n.title, n.body))


def dispatch_after_commit(notifier: NotificationClient, notifications: Iterable[Notification]) -> None:
    """Hand committed notifications to the notifier; a failure here is logged, never propagated"""
    notifications = list(notifications)
    if not notifications:
        return
    try:
        notifier.dispatch(notifications)
    except Exception as e:
        notification_failure_counter.inc()
        logging.exception(f"Notification dispatch failed: {e}", extra={"count": len(notifications)})
