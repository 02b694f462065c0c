"""Outbound notification dispatch (SMS/email transport lives behind the webhook)."""

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass

import httpx

from src.core.config import settings
from src.core.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    recipient: str
    template_key: str
    message: str
    related_entity_type: str
    related_entity_id: int


class NotificationDispatcher(ABC):
    """Hands a rendered message to the delivery transport."""

    @abstractmethod
    async def dispatch(self, notification: Notification) -> str | None:
        """
        Send a notification.

        Returns the transport's message id when it provides one. Raises
        ExternalServiceError when the hand-off itself fails.
        """


class WebhookNotificationDispatcher(NotificationDispatcher):
    """POSTs notifications as JSON to the messaging service."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def dispatch(self, notification: Notification) -> str | None:
        try:
            if self._client is not None:
                resp = await self._client.post(self.url, json=asdict(notification), timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await client.post(self.url, json=asdict(notification), timeout=self.timeout)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError("notifications", str(e) or e.__class__.__name__)

        try:
            body = resp.json()
        except ValueError:
            return None
        if isinstance(body, dict) and body.get("id") is not None:
            return str(body["id"])
        return None


class LogNotificationDispatcher(NotificationDispatcher):
    """Writes notifications to the log. Used when no webhook is configured."""

    async def dispatch(self, notification: Notification) -> str | None:
        logger.info(
            "Notification %s to %s (%s #%s): %s",
            notification.template_key,
            notification.recipient,
            notification.related_entity_type,
            notification.related_entity_id,
            notification.message,
        )
        return None


def get_notification_dispatcher() -> NotificationDispatcher:
    """Dispatcher for the configured transport."""
    if settings.notification_webhook_url:
        return WebhookNotificationDispatcher(
            settings.notification_webhook_url,
            timeout=settings.notification_timeout_seconds,
        )
    return LogNotificationDispatcher()
