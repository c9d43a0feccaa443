from __future__ import annotations

from typing import Any, Optional

import httpx

from .base import DeliveryStatus, DeliveryResult, NotificationChannel, NotificationMessage


def slack_payload(message: NotificationMessage, *, username: str = "Deploy Monitor") -> dict[str, Any]:
    """Slack/Discord attachment payload layered over the common notification shape."""
    text = message.message
    if message.alerts:
        text += "\n\n*Alerts:*\n" + "\n".join(f"• {a}" for a in message.alerts)
    if message.recommendations:
        text += "\n\n*Recommendations:*\n" + "\n".join(f"• {r}" for r in message.recommendations)
    return {
        "username": username,
        "text": f"{message.emoji} {message.title}",
        "attachments": [
            {
                "color": message.color,
                "title": message.title,
                "text": text,
                "ts": int(message.timestamp.timestamp()),
                "fields": [
                    {"title": "Status", "value": message.status.value, "short": True},
                    {"title": "Severity", "value": message.severity.value, "short": True},
                ],
            }
        ],
        "notification": message.to_payload(),
    }


class WebhookChannel(NotificationChannel):
    name = "webhook"

    def __init__(
        self,
        url: Optional[str],
        *,
        username: str = "Deploy Monitor",
        timeout_seconds: float = 15.0,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds)
        self.url = (url or "").strip() or None
        self.username = username

    async def send(self, message: NotificationMessage, client: httpx.AsyncClient) -> DeliveryResult:
        if not self.url:
            return self._result(DeliveryStatus.SKIPPED, "no webhook URL configured")
        try:
            resp = await client.post(
                self.url,
                json=slack_payload(message, username=self.username),
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as e:
            return self._result(DeliveryStatus.FAILED, f"{type(e).__name__}: {e}")
        if resp.status_code >= 400:
            return self._result(DeliveryStatus.FAILED, f"HTTP {resp.status_code}: {resp.text[:200]}")
        return self._result(DeliveryStatus.SENT, f"HTTP {resp.status_code}")
