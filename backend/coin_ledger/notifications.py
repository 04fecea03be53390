"""
Notification Sinks

Fire-and-forget delivery of human-readable ledger events
("alice has purchased `200 CPU` !").

- publish() never blocks the caller and never raises; delivery runs as a
  background task
- Every call is bounded by NOTIFY_TIMEOUT_SECONDS and retried up to
  NOTIFY_MAX_RETRIES times with exponential backoff
- Delivery failures are logged and dropped
"""

import asyncio
import logging
import os
from typing import Optional, Set

import httpx

from .config import NOTIFY_MAX_RETRIES, NOTIFY_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class NotificationSink:
    """Base sink: logs every event. Subclasses add a remote delivery."""

    def __init__(self):
        self._pending: Set[asyncio.Task] = set()

    def publish(self, title: str, message: str) -> None:
        logger.info(f"[{title}] {message}")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller); the log line above is all we can do
            return
        task = loop.create_task(self._deliver(title, message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, title: str, message: str) -> None:
        try:
            await self.send(title, message)
        except Exception as e:
            logger.warning(f"Notification '{title}' dropped: {e}")

    async def send(self, title: str, message: str) -> None:
        """Deliver one event. The base sink has nowhere to send to."""

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown, tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class LogSink(NotificationSink):
    """Log-only sink used when no webhook is configured."""


class DiscordWebhookSink(NotificationSink):
    """Posts each event as an embed to a Discord webhook."""

    def __init__(
        self,
        webhook_url: str,
        timeout_seconds: float = NOTIFY_TIMEOUT_SECONDS,
        max_retries: int = NOTIFY_MAX_RETRIES,
        backoff_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__()
        self.webhook_url = webhook_url
        self.timeout = httpx.Timeout(timeout_seconds)
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._transport = transport

    async def send(self, title: str, message: str) -> None:
        payload = {
            "embeds": [{
                "title": title,
                "description": message,
                "color": 0x10B981
            }]
        }

        last_error: Optional[Exception] = None
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(self.max_retries + 1):
                try:
                    response = await client.post(self.webhook_url, json=payload)
                    if response.status_code < 500:
                        if response.status_code >= 400:
                            logger.warning(f"Discord webhook rejected event ({response.status_code}): {response.text}")
                        return
                    last_error = Exception(f"HTTP {response.status_code}")
                except httpx.HTTPError as e:
                    last_error = e

                if attempt < self.max_retries:
                    await asyncio.sleep(self.backoff_seconds * (2 ** attempt))

        raise Exception(f"Discord webhook failed after {self.max_retries + 1} attempts: {last_error}")


def build_notifier() -> NotificationSink:
    """Discord sink if DISCORD_WEBHOOK_URL is set, else log-only."""
    webhook_url = os.environ.get("DISCORD_WEBHOOK_URL", "")
    if webhook_url:
        return DiscordWebhookSink(webhook_url)
    return LogSink()
