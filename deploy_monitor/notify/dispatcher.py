from __future__ import annotations

import asyncio
from typing import Optional, Sequence

import httpx
import structlog

from ..config import AlertingConfig, StorageConfig
from ..models import ComprehensiveReport, MonitoringSession, Severity
from .base import DeliveryResult, DeliveryStatus, NotificationChannel, NotificationMessage, format_report
from .local import ConsoleChannel, FileChannel
from .telegram import TelegramChannel, TelegramConfig
from .webhook import WebhookChannel


logger = structlog.get_logger(__name__)


class AlertDispatcher:
    """Fans one report out to every channel, gated by a minimum severity.

    Channels run concurrently and independently; one failing channel never prevents
    the others from being attempted.
    """

    def __init__(
        self,
        channels: Sequence[NotificationChannel],
        *,
        min_severity: Severity = Severity.MEDIUM,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.channels = list(channels)
        self.min_severity = min_severity
        self._client = client

    @classmethod
    def from_config(cls, cfg: AlertingConfig, storage: StorageConfig) -> "AlertDispatcher":
        channels: list[NotificationChannel] = []
        if cfg.console.enabled:
            channels.append(ConsoleChannel(timeout_seconds=cfg.console.timeout_seconds))
        if cfg.file.enabled:
            channels.append(FileChannel(storage.path(cfg.file.path), timeout_seconds=cfg.file.timeout_seconds))
        if cfg.webhook.enabled:
            channels.append(
                WebhookChannel(
                    cfg.webhook.url,
                    username=cfg.webhook.username,
                    timeout_seconds=cfg.webhook.timeout_seconds,
                )
            )
        if cfg.telegram.enabled:
            tg = None
            if cfg.telegram.bot_token and cfg.telegram.chat_id:
                tg = TelegramConfig(bot_token=cfg.telegram.bot_token, chat_id=cfg.telegram.chat_id)
            channels.append(TelegramChannel(tg, timeout_seconds=cfg.telegram.timeout_seconds))
        return cls(channels, min_severity=cfg.min_severity)

    def should_notify(self, severity: Severity) -> bool:
        return severity.rank >= self.min_severity.rank

    async def notify(
        self,
        report: ComprehensiveReport,
        *,
        session: Optional[MonitoringSession] = None,
        base_url: Optional[str] = None,
    ) -> list[DeliveryResult]:
        if not self.should_notify(report.severity):
            logger.info(
                "notification_below_threshold",
                severity=report.severity.value,
                threshold=self.min_severity.value,
                overall_status=report.overall_status.value,
            )
            return [
                DeliveryResult(ch.name, DeliveryStatus.SKIPPED, f"severity below {self.min_severity.value}")
                for ch in self.channels
            ]
        return await self.send(format_report(report, session=session, base_url=base_url))

    async def send(self, message: NotificationMessage) -> list[DeliveryResult]:
        if not self.channels:
            return []
        if self._client is not None:
            return await self._send_with(self._client, message)
        async with httpx.AsyncClient() as client:
            return await self._send_with(client, message)

    async def _send_with(self, client: httpx.AsyncClient, message: NotificationMessage) -> list[DeliveryResult]:
        outcomes = await asyncio.gather(
            *(ch.send(message, client) for ch in self.channels),
            return_exceptions=True,
        )
        results: list[DeliveryResult] = []
        for ch, outcome in zip(self.channels, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.warning("notification_channel_error", channel=ch.name, error=repr(outcome))
                results.append(DeliveryResult(ch.name, DeliveryStatus.FAILED, f"{type(outcome).__name__}: {outcome}"))
            else:
                results.append(outcome)
        logger.info(
            "notifications_dispatched",
            title=message.title,
            results={r.channel: r.status.value for r in results},
        )
        return results
