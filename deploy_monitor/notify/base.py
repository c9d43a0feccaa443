"""Notification message shape shared by every channel.

Each channel receives the same NotificationMessage and turns it into its own wire
format; `to_payload()` is the common `{title, message, severity, color, timestamp}` core.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import httpx

from ..models import ComprehensiveReport, MonitoringSession, OverallStatus, Severity


STATUS_COLORS = {
    OverallStatus.HEALTHY: "#28a745",
    OverallStatus.WARNING: "#ffc107",
    OverallStatus.CRITICAL: "#dc3545",
}
DEFAULT_COLOR = "#6c757d"

STATUS_EMOJI = {
    OverallStatus.HEALTHY: "✅",
    OverallStatus.WARNING: "⚠️",
    OverallStatus.CRITICAL: "🚨",
    OverallStatus.UNKNOWN: "❓",
}


class DeliveryStatus(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class DeliveryResult:
    channel: str
    status: DeliveryStatus
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"channel": self.channel, "status": self.status.value, "detail": self.detail}


@dataclass(frozen=True)
class NotificationMessage:
    title: str
    message: str
    severity: Severity
    status: OverallStatus
    color: str
    timestamp: datetime
    alerts: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()
    metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def emoji(self) -> str:
        return STATUS_EMOJI.get(self.status, "🔔")

    def to_payload(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "message": self.message,
            "severity": self.severity.value,
            "color": self.color,
            "timestamp": self.timestamp.isoformat(),
        }

    def as_text(self) -> str:
        """Plain-text rendering used by console and chat channels."""
        lines = [f"{self.emoji} {self.title}", "", self.message.replace("**", "")]
        if self.alerts:
            lines += ["", "Alerts:"]
            lines += [f"{i}. {a}" for i, a in enumerate(self.alerts, start=1)]
        if self.recommendations:
            lines += ["", "Recommendations:"]
            lines += [f"{i}. {r}" for i, r in enumerate(self.recommendations, start=1)]
        lines += ["", f"⏰ {self.timestamp.isoformat()}"]
        return "\n".join(lines)


def format_report(
    report: ComprehensiveReport,
    *,
    session: Optional[MonitoringSession] = None,
    base_url: Optional[str] = None,
) -> NotificationMessage:
    d = report.deployment_summary
    h = report.health_summary
    status = report.overall_status

    title = f"Deployment Monitoring Report: {status.value.upper()}"
    if session is not None:
        title = f"{title} ({session.branch}@{session.short_sha})"

    body: list[str] = []
    if base_url:
        body.append(f"**URL:** {base_url}")
    latest = d.latest
    if latest is not None:
        body.append(f"**Latest Deployment:** {latest.identifier} ({latest.status.value})")
    body.append(f"**Deployments:** {d.successful}/{d.total} ready, {d.failed} failed ({d.failure_rate}%)")
    rate = h.success_rate
    body.append(
        f"**Endpoints:** {h.passed} passed, {h.failed} failed, {h.skipped} skipped"
        + (f" ({rate:.1f}%)" if rate is not None else "")
    )
    if h.passed:
        body.append(f"**Avg Response Time:** {h.average_latency_ms:.0f}ms")
    body.append(f"**Severity:** {report.severity.value}")

    metrics: dict[str, Any] = {
        "deploymentFailureRate": d.failure_rate,
        "endpointSuccessRate": round(rate, 1) if rate is not None else None,
        "averageLatencyMs": round(h.average_latency_ms, 1),
        "alertCount": len(report.alerts),
    }
    if session is not None:
        metrics["sessionId"] = session.session_id

    return NotificationMessage(
        title=title,
        message="\n".join(body),
        severity=report.severity,
        status=status,
        color=STATUS_COLORS.get(status, DEFAULT_COLOR),
        timestamp=report.timestamp,
        alerts=tuple(f"[{a.severity.value.upper()}] {a.title}: {a.message}" for a in report.alerts),
        recommendations=tuple(f"[{r.priority.upper()}] {r.title}: {r.action}" for r in report.recommendations),
        metrics=metrics,
    )


class NotificationChannel(ABC):
    name: str = "base"

    def __init__(self, *, timeout_seconds: float = 15.0) -> None:
        self.timeout_seconds = float(timeout_seconds)

    @abstractmethod
    async def send(self, message: NotificationMessage, client: httpx.AsyncClient) -> DeliveryResult:
        """Deliver `message`; failures are returned as a FAILED result, not raised."""

    def _result(self, status: DeliveryStatus, detail: str = "") -> DeliveryResult:
        return DeliveryResult(channel=self.name, status=status, detail=detail)
