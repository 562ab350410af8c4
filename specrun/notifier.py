"""Webhook notifications."""

from __future__ import annotations

import logging

import httpx

from .events import Event

logger = logging.getLogger(__name__)


class Notifier:
    """Send webhook notifications for worker events."""

    def __init__(self, webhook_url: str = "", events: list[str] | None = None, timeout: float = 10):
        self.webhook_url = webhook_url
        self.events = events or []
        self.timeout = timeout

    def wants(self, event_type: str) -> bool:
        return bool(self.webhook_url) and event_type in self.events

    async def notify(self, event: Event) -> None:
        if not self.wants(event.type):
            return

        payload = {
            "event": event.type,
            "spec_id": event.spec_id,
            "worker_id": event.worker_id,
            "timestamp": event.timestamp,
            "data": event.data,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.webhook_url, json=payload)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            # A failed notification never affects the run.
            logger.warning("Webhook notification for %s failed: %s", event.type, e)
