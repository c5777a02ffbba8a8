"""
User notifications.

Notifications are fire-and-forget: a delivery failure is logged and never
propagates into the payment or ledger operation that triggered it.
"""
from typing import Optional, Protocol

import httpx
import structlog

from creator_ledger.config import get_settings

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    """Anything that can deliver a notification to a user."""

    async def notify(
        self, user_id: str, kind: str, title: str, body: str, link: Optional[str] = None
    ) -> None:
        ...


class LoggingNotifier:
    """Writes notifications to the log; the default when no service is configured."""

    async def notify(
        self, user_id: str, kind: str, title: str, body: str, link: Optional[str] = None
    ) -> None:
        logger.info(
            "notification_sent",
            user_id=user_id,
            kind=kind,
            title=title,
            body=body,
            link=link,
        )


class HttpNotifier:
    """Posts notifications to the notification service."""

    def __init__(self, url: str, http_client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.http_client = http_client or httpx.AsyncClient(timeout=5.0)

    async def notify(
        self, user_id: str, kind: str, title: str, body: str, link: Optional[str] = None
    ) -> None:
        response = await self.http_client.post(
            self.url,
            json={"user_id": user_id, "type": kind, "title": title, "body": body, "link": link},
        )
        response.raise_for_status()

    async def close(self) -> None:
        await self.http_client.aclose()


def build_notifier() -> Notifier:
    """Notifier for the configured environment."""
    settings = get_settings()
    if settings.notification_service_url:
        return HttpNotifier(settings.notification_service_url)
    return LoggingNotifier()


async def safe_notify(
    notifier: Notifier,
    user_id: str,
    kind: str,
    title: str,
    body: str,
    link: Optional[str] = None,
) -> None:
    """Deliver a notification, logging and swallowing any failure."""
    try:
        await notifier.notify(user_id, kind, title, body, link)
    except Exception as e:
        logger.warning("notification_failed", user_id=user_id, kind=kind, error=str(e))
