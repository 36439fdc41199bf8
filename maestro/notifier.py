"""Webhook notifications."""

from __future__ import annotations

import logging

import httpx

from .models import WorkflowOutcome

logger = logging.getLogger(__name__)


class Notifier:
    """Send webhook notifications for workflow end states."""

    def __init__(self, webhook_url: str = "", events: list[str] | None = None):
        self.webhook_url = webhook_url
        self.events = events or []
        self.client = httpx.AsyncClient()

    async def notify(self, event: str, outcome: WorkflowOutcome) -> None:
        if not self.webhook_url or event not in self.events:
            return

        payload = {
            "event": event,
            "workflow_id": outcome.workflow_id,
            "state": outcome.state.value,
            "reason": outcome.reason,
            "error_kind": outcome.error_kind,
        }

        try:
            await self.client.post(self.webhook_url, json=payload, timeout=10)
        except httpx.HTTPError as exc:
            # Delivery failure never affects the workflow
            logger.warning("Webhook %s for %s failed: %s", event, outcome.workflow_id, exc)

    async def close(self) -> None:
        await self.client.aclose()
