"""Notification delivery for opened update jobs.

Delivery is best effort: a sink logs its own failures and never raises
into the pipeline that triggered it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from containers_up.logging import get_logger

log = get_logger("containers_up.notifications")


@dataclass
class Notification:
    """A message about one host."""

    host_name: str
    subject: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "host_name": self.host_name,
            "subject": self.subject,
            "message": self.message,
        }


class NotificationSink(Protocol):
    async def send(self, notification: Notification) -> bool: ...


class LogNotifier:
    """Writes notifications to the application log."""

    async def send(self, notification: Notification) -> bool:
        log.info(
            "notification",
            host=notification.host_name,
            subject=notification.subject,
            message=notification.message,
        )
        return True


class WebhookNotifier:
    """POSTs notifications as JSON to a configured URL."""

    def __init__(self, url: str, app_url: str | None = None, timeout: float = 10) -> None:
        self._url = url
        self._app_url = app_url.rstrip("/") if app_url else None
        self._timeout = timeout

    def payload(self, notification: Notification) -> dict[str, Any]:
        data = notification.to_dict()
        if self._app_url:
            data["message"] = f"{notification.message}\n\n{self._app_url}"
            data["url"] = self._app_url
        return data

    async def send(self, notification: Notification) -> bool:
        """Deliver *notification*; True if the endpoint accepted it."""
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(self._url, json=self.payload(notification))
            if resp.is_success:
                log.debug("notification_sent", subject=notification.subject)
                return True
            log.warning(
                "notification_rejected",
                status=resp.status_code,
                body=resp.text[:200],
            )
            return False
        except httpx.HTTPError as exc:
            log.warning("notification_send_failed", error=str(exc))
            return False


def create_notifier(notify_url: str | None, app_url: str | None = None) -> NotificationSink:
    if notify_url:
        return WebhookNotifier(notify_url, app_url=app_url)
    return LogNotifier()
