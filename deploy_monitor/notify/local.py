"""Channels that never leave the host: the structured log and an append-only JSON-lines file."""

from __future__ import annotations

import json
from pathlib import Path

import httpx
import structlog

from .base import DeliveryStatus, DeliveryResult, NotificationChannel, NotificationMessage


logger = structlog.get_logger(__name__)


class ConsoleChannel(NotificationChannel):
    name = "console"

    async def send(self, message: NotificationMessage, client: httpx.AsyncClient) -> DeliveryResult:
        logger.info(
            "notification",
            title=message.title,
            severity=message.severity.value,
            status=message.status.value,
            alerts=len(message.alerts),
            recommendations=len(message.recommendations),
        )
        for line in message.as_text().splitlines():
            logger.info("notification_line", text=line)
        return self._result(DeliveryStatus.SENT)


class FileChannel(NotificationChannel):
    name = "file"

    def __init__(self, path: str | Path, *, timeout_seconds: float = 15.0) -> None:
        super().__init__(timeout_seconds=timeout_seconds)
        self.path = Path(path)

    async def send(self, message: NotificationMessage, client: httpx.AsyncClient) -> DeliveryResult:
        entry = {
            **message.to_payload(),
            "status": message.status.value,
            "alerts": list(message.alerts),
            "recommendations": list(message.recommendations),
            "metrics": message.metrics,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False, sort_keys=True) + "\n")
        except OSError as e:
            return self._result(DeliveryStatus.FAILED, str(e))
        return self._result(DeliveryStatus.SENT, str(self.path))
