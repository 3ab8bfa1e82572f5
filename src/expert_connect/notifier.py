"""Outbound notification collaborator.

Delivery channels (push, email, in-app) live outside this service. The engine
only hands a message to a Notifier after its transaction has committed, and
always through :func:`deliver`, which never lets a failure escape.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx

from expert_connect.core.config import Settings
from expert_connect.core.models import Notification

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Fire-and-forget delivery of one message to one user."""

    @abstractmethod
    async def notify(self, user_id: int, notification: Notification, event_key: str) -> None:
        ...

    async def close(self) -> None:
        """Clean up any resources (HTTP sessions, etc.)."""
        pass


class LogNotifier(Notifier):
    """Default notifier: writes the message to the log."""

    async def notify(self, user_id: int, notification: Notification, event_key: str) -> None:
        logger.info(
            "notify user=%s event=%s title=%r data=%s",
            user_id, event_key, notification.title, notification.data,
        )


class WebhookNotifier(Notifier):
    """POSTs each notification to the delivery service's webhook."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self.webhook_url = settings.notify_webhook_url
        self.api_key = settings.notify_api_key
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                headers=headers,
                timeout=self.settings.notify_timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def notify(self, user_id: int, notification: Notification, event_key: str) -> None:
        payload = {
            "user_id": user_id,
            "event_key": event_key,
            "title": notification.title,
            "body": notification.body,
            "data": notification.data,
        }
        resp = await self.client.post(self.webhook_url, json=payload)
        resp.raise_for_status()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def create_notifier(settings: Settings) -> Notifier:
    if settings.notify_webhook_url:
        return WebhookNotifier(settings)
    return LogNotifier()


async def deliver(
    notifier: Notifier,
    user_id: int | None,
    notification: Notification,
    event_key: str,
) -> bool:
    """Best-effort delivery. Returns False instead of raising on any failure."""
    if not user_id or user_id < 1:
        logger.error("Skipping %s: invalid user id %r", event_key, user_id)
        return False
    try:
        await notifier.notify(user_id, notification, event_key)
    except httpx.HTTPStatusError as e:
        logger.error("Notify %s for user %s failed: HTTP %s", event_key, user_id, e.response.status_code)
        return False
    except Exception:
        logger.exception("Notify %s for user %s failed", event_key, user_id)
        return False
    return True
