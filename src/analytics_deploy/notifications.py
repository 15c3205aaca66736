"""Best-effort outcome notifications.

A notification that cannot be delivered is logged and dropped; it never
changes the outcome of the run that triggered it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

import httpx

from analytics_deploy.logging import get_logger
from analytics_deploy.models import Environment, utc_now

log = get_logger("analytics_deploy.notifications")


class NotificationStatus(Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass(frozen=True)
class NotificationContext:
    environment: Environment
    revision: str
    message: str
    timestamp: datetime = field(default_factory=utc_now)


def build_payload(status: NotificationStatus, context: NotificationContext) -> dict[str, Any]:
    return {
        "status": status.value,
        "environment": context.environment.value,
        "revision": context.revision,
        "timestamp": context.timestamp.isoformat(),
        "message": context.message,
    }


class NotificationSink(Protocol):
    async def notify(self, status: NotificationStatus, context: NotificationContext) -> bool: ...


class WebhookNotifier:
    """POSTs a JSON payload to an incoming webhook."""

    def __init__(self, url: str | None, timeout: float = 10.0) -> None:
        self._url = url
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    async def notify(self, status: NotificationStatus, context: NotificationContext) -> bool:
        """Deliver a notification. Returns True if the webhook accepted it."""
        if not self._url:
            log.debug("notification_skipped_no_webhook", status=status.value)
            return False

        try:
            payload = build_payload(status, context)
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(self._url, json=payload)
            if resp.status_code >= 400:
                log.warning(
                    "notification_rejected",
                    status=resp.status_code,
                    body=resp.text[:200],
                )
                return False
            log.info("notification_sent", outcome=status.value)
            return True
        except httpx.RequestError as exc:
            log.warning("notification_send_failed", error=str(exc))
            return False
        except Exception as exc:
            log.warning("notification_error", error=f"{type(exc).__name__}: {exc}")
            return False
