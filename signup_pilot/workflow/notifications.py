"""Human intervention notifiers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from signup_pilot.utils.logging import get_logger

logger = get_logger("workflow.notifications")


@dataclass
class InterventionRequest:
    """A request for a parent to act on a paused stage."""

    attempt_id: str
    stage_id: str
    barrier: str
    reason: str = ""
    requested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "stage_id": self.stage_id,
            "barrier": self.barrier,
            "reason": self.reason,
            "requested_at": self.requested_at.isoformat(),
        }


class HumanNotifier(ABC):
    """Base class for intervention notifiers."""

    @abstractmethod
    async def notify(self, request: InterventionRequest) -> bool:
        """
        Tell a human that a stage is waiting on them.

        Args:
            request: What is blocked and why

        Returns:
            True if the notification was delivered
        """
        ...


class LoggingNotifier(HumanNotifier):
    """Writes intervention requests to the log only."""

    async def notify(self, request: InterventionRequest) -> bool:
        logger.warning("human_intervention_needed", **request.to_dict())
        return True


class WebhookNotifier(HumanNotifier):
    """
    Posts intervention requests to an incoming webhook.

    The payload uses the attachment format accepted by Slack-compatible
    webhooks.
    """

    def __init__(
        self,
        webhook_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize the notifier.

        Args:
            webhook_url: Incoming webhook URL
            timeout: Request timeout in seconds
            client: Optional shared HTTP client
        """
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._client = client

    def _payload(self, request: InterventionRequest) -> dict[str, Any]:
        text = request.reason or (
            f"Registration attempt `{request.attempt_id}` is paused at "
            f"`{request.barrier}` and needs you to continue."
        )
        return {
            "attachments": [{
                "color": "warning",
                "title": f"Action needed: {request.stage_id}",
                "text": text,
                "fields": [
                    {"title": "Attempt", "value": request.attempt_id, "short": True},
                    {"title": "Step", "value": request.barrier, "short": True},
                ],
            }],
        }

    async def notify(self, request: InterventionRequest) -> bool:
        payload = self._payload(request)
        try:
            if self._client is not None:
                response = await self._client.post(self.webhook_url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.webhook_url, json=payload)
        except httpx.HTTPError as e:
            logger.error("webhook_error", error=str(e), attempt_id=request.attempt_id)
            return False

        if response.status_code >= 300:
            logger.warning("webhook_send_failed", status=response.status_code)
            return False

        logger.debug("webhook_message_sent", attempt_id=request.attempt_id)
        return True


def create_notifier(webhook_url: Optional[str]) -> HumanNotifier:
    """Webhook notifier when a URL is configured, log-only otherwise."""
    if not webhook_url:
        logger.debug("webhook_not_configured")
        return LoggingNotifier()
    return WebhookNotifier(webhook_url)
