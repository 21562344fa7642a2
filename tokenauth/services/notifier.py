"""Origin-change notifications.

When a refresh request arrives from a different network origin than the
one recorded in the presented access token, the account owner is alerted.
Delivery is fire-and-forget: failures are logged and never reach the
rotation that triggered them.
"""

import asyncio
import logging
from collections.abc import Awaitable
from datetime import UTC, datetime
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

# Short timeout for webhook calls — don't hold on to the connection
_WEBHOOK_TIMEOUT = 5.0

# Recipient the log notifier refuses, for exercising failure paths
INVALID_RECIPIENT = "invalid@mail"

ALERT_SUBJECT = "New IP warning"

# Strong references to in-flight deliveries so they are not garbage collected
_pending: set[asyncio.Task[None]] = set()


class NotificationError(Exception):
    """A notification could not be delivered."""

    pass


class Notifier(Protocol):
    async def notify(self, recipient: str, origin: str) -> None:
        """Alert ``recipient`` that their credentials were used from ``origin``."""
        ...


class LogNotifier:
    """Writes alerts to the application log instead of sending them."""

    def __init__(self, sender: str = "tokenauth"):
        self.sender = sender

    async def notify(self, recipient: str, origin: str) -> None:
        if recipient == INVALID_RECIPIENT:
            raise NotificationError(f"Invalid recipient: {recipient}")
        logger.info(
            "Notification sent: from=%s to=%s subject=%r body=%r",
            self.sender,
            recipient,
            ALERT_SUBJECT,
            f"IP: {origin}",
        )


class WebhookNotifier:
    """POSTs alerts to a webhook URL (Discord, Slack or generic JSON)."""

    def __init__(self, webhook_url: str, timeout: float = _WEBHOOK_TIMEOUT):
        self.webhook_url = webhook_url
        self.timeout = timeout

    async def notify(self, recipient: str, origin: str) -> None:
        payload = _build_payload(recipient, origin, self.webhook_url)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json=payload)
        except httpx.HTTPError as e:
            raise NotificationError(f"Webhook request failed: {e}") from e
        if response.status_code >= 400:
            raise NotificationError(f"Webhook returned HTTP {response.status_code}")


def _build_payload(recipient: str, origin: str, webhook_url: str) -> dict:
    """Build webhook payload, adapting format for known services."""
    message = f"Credentials for {recipient} were refreshed from a new IP: {origin}"

    # Discord webhook format
    if "discord.com/api/webhooks" in webhook_url:
        return {"content": f"⚠️ **{ALERT_SUBJECT}**\n{message}"}

    # Slack webhook format
    if "hooks.slack.com" in webhook_url:
        return {"text": f"⚠️ *{ALERT_SUBJECT}*\n{message}"}

    # Generic webhook format
    return {
        "title": ALERT_SUBJECT,
        "message": message,
        "recipient": recipient,
        "origin": origin,
        "timestamp": datetime.now(UTC).isoformat(),
        "source": "tokenauth",
    }


async def _deliver(delivery: Awaitable[None], recipient: str) -> None:
    try:
        await delivery
    except Exception as e:
        logger.error("Failed to send IP warning to %s: %s", recipient, e)


def dispatch_notification(notifier: Notifier, recipient: str, origin: str) -> None:
    """Schedule a notification as a fire-and-forget background task.

    The notifier is invoked immediately; awaiting its result happens in a
    background task so the caller never waits on delivery.
    """
    try:
        delivery = notifier.notify(recipient, origin)
    except Exception as e:
        logger.error("Failed to send IP warning to %s: %s", recipient, e)
        return

    task = asyncio.create_task(_deliver(delivery, recipient))
    _pending.add(task)
    task.add_done_callback(_pending.discard)


async def drain_notifications() -> None:
    """Wait for all in-flight notifications (shutdown and tests)."""
    while _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)
