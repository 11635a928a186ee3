"""Dispatch synchronization status events to the notification webhook."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from insight_sync.config import get_settings

logger = logging.getLogger(__name__)


class SyncEventStatus(str, Enum):
    SUCCESS = "Success"
    FAILED = "Failed"


@dataclass(frozen=True)
class SyncStatusEvent:
    phase: str
    status: SyncEventStatus
    error: str = ""
    target_name: str | None = None
    occurred_at: datetime | None = None


class SyncNotificationService:
    """Post status events to the configured webhook endpoint, if available.

    Delivery is fire-and-forget; a failed post is logged and dropped.
    """

    def __init__(self, *, settings_provider=get_settings, request_client=None) -> None:
        self._settings_provider = settings_provider
        self._request_client = request_client

    def publish(self, event: SyncStatusEvent) -> None:
        settings = self._settings_provider()
        webhook_url = getattr(settings, "notification_webhook_url", None)
        if not webhook_url:
            logger.debug("No notification webhook configured; dropping %s event for %s", event.status.value, event.phase)
            return

        body = self._build_payload(event)

        try:
            client = self._request_client
            if client is None:
                import requests

                response = requests.post(
                    webhook_url,
                    headers={"Content-Type": "application/json"},
                    data=json.dumps(body),
                    timeout=15,
                )
            else:
                response = client(webhook_url, body)
        except Exception as exc:
            logger.warning("Failed to deliver sync notification for %s: %s", event.phase, exc)
            return

        status_code = getattr(response, "status_code", None)
        if status_code is not None and status_code >= 400:
            logger.warning(
                "Notification webhook responded with %s for phase %s",
                status_code,
                event.phase,
            )

    def _build_payload(self, event: SyncStatusEvent) -> dict[str, Any]:
        return {
            "phase": event.phase,
            "status": event.status.value,
            "error": event.error or "",
            "target_name": event.target_name,
            "occurred_at": event.occurred_at.isoformat() if event.occurred_at else None,
        }


__all__ = ["SyncEventStatus", "SyncNotificationService", "SyncStatusEvent"]
