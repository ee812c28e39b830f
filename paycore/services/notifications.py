from __future__ import annotations

import asyncio
from typing import Protocol

import httpx
import structlog

from paycore.billing.types import AccessNotification

logger = structlog.get_logger(__name__)

NOTIFY_TIMEOUT_SECONDS = 10.0


class AccessNotifier(Protocol):
    def notify(self, notification: AccessNotification) -> None: ...

    async def drain(self, timeout_seconds: float | None = None) -> int: ...


class NullAccessNotifier:
    def notify(self, notification: AccessNotification) -> None:
        logger.info("access_notification_skipped", email=notification.email)

    async def drain(self, timeout_seconds: float | None = None) -> int:
        return 0


class HttpAccessNotifier:
    """Posts access links to the mail service without blocking the caller."""

    def __init__(self, *, webhook_url: str, timeout_seconds: float = NOTIFY_TIMEOUT_SECONDS) -> None:
        self._webhook_url = webhook_url
        self._timeout_seconds = timeout_seconds
        self._pending: set[asyncio.Task[None]] = set()

    def notify(self, notification: AccessNotification) -> None:
        task = asyncio.get_running_loop().create_task(self.deliver(notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self, timeout_seconds: float | None = None) -> int:
        """Wait for in-flight deliveries; returns how many were cancelled."""
        if not self._pending:
            return 0
        timeout = self._timeout_seconds if timeout_seconds is None else timeout_seconds
        _, not_done = await asyncio.wait(set(self._pending), timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            await asyncio.gather(*not_done, return_exceptions=True)
            logger.warning("access_notifications_dropped", count=len(not_done))
        return len(not_done)

    async def deliver(self, notification: AccessNotification) -> bool:
        body = {
            "to": notification.email,
            "name": notification.name,
            "product_name": notification.product_name,
            "access_link": notification.access_link,
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                response = await client.post(self._webhook_url, json=body)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "access_notification_failed",
                email=notification.email,
                error_type=type(exc).__name__,
            )
            return False
        logger.info("access_notification_sent", email=notification.email)
        return True


def build_access_notifier(settings) -> AccessNotifier:
    webhook_url = (settings.access_email_webhook_url or "").strip()
    if not webhook_url:
        return NullAccessNotifier()
    return HttpAccessNotifier(
        webhook_url=webhook_url,
        timeout_seconds=float(settings.provider_timeout_seconds),
    )
