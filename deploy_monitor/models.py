"""Data model shared by the poller, health checker, analyzer and session store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class DeploymentStatus(str, Enum):
    QUEUED = "Queued"
    BUILDING = "Building"
    READY = "Ready"
    ERROR = "Error"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, token: str | None) -> "DeploymentStatus":
        s = str(token or "").replace("●", "").strip().lower()
        if not s:
            return cls.UNKNOWN
        if s == "initializing":
            return cls.BUILDING
        for member in cls:
            if member.value.lower() == s:
                return member
        return cls.UNKNOWN

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentStatus.READY, DeploymentStatus.ERROR)


class OverallStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _OVERALL_RANK[self]


_OVERALL_RANK = {
    OverallStatus.UNKNOWN: 0,
    OverallStatus.HEALTHY: 1,
    OverallStatus.WARNING: 2,
    OverallStatus.CRITICAL: 3,
}


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: Any, *, default: Severity | None = None) -> Severity:
        s = str(value.value if isinstance(value, Enum) else value or "").strip().lower()
        for member in cls:
            if member.value == s:
                return member
        if default is not None:
            return default
        raise ValueError(f"Unknown severity {value!r}; expected one of low|medium|high|critical")


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


def max_severity(a: Severity, b: Severity) -> Severity:
    return a if a.rank >= b.rank else b


def max_status(a: OverallStatus, b: OverallStatus) -> OverallStatus:
    return a if a.rank >= b.rank else b


class PerformanceRating(str, Enum):
    FAST = "fast"
    ACCEPTABLE = "acceptable"
    SLOW = "slow"


class AlertType(str, Enum):
    SITE_DOWN = "site_down"
    DEPLOYMENT_FAILURES = "deployment_failures"
    PERFORMANCE_DEGRADATION = "performance_degradation"
    API_HEALTH_ISSUES = "api_health_issues"
    MONITORING_FAILURE = "monitoring_failure"


class PollOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


class SessionTrigger(str, Enum):
    MANUAL = "manual"
    POST_PUSH = "post-push"
    SCHEDULED = "scheduled"

    @property
    def id_prefix(self) -> str:
        return {"manual": "manual", "post-push": "autopush", "scheduled": "scheduled"}[self.value]


class SessionStatus(str, Enum):
    MONITORING = "monitoring"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class DeploymentRecord:
    identifier: str
    url: str
    status: DeploymentStatus
    age: str = ""
    environment: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "url": self.url,
            "status": self.status.value,
            "age": self.age,
            "environment": self.environment,
        }


@dataclass(frozen=True)
class HealthProbeResult:
    name: str
    target_path: str
    method: str
    expected_statuses: tuple[int, ...]
    observed_status: int
    latency_ms: float
    optional: bool = False
    error_detail: str | None = None
    performance: PerformanceRating | None = None

    @property
    def matched(self) -> bool:
        """True when the endpoint answered with one of its expected status codes."""
        return self.observed_status != 0 and self.observed_status in self.expected_statuses

    @property
    def success(self) -> bool:
        return self.matched or self.optional

    @property
    def skipped(self) -> bool:
        return self.optional and not self.matched

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "targetPath": self.target_path,
            "method": self.method,
            "expectedStatusSet": list(self.expected_statuses),
            "observedStatus": self.observed_status,
            "latencyMs": round(self.latency_ms, 1),
            "success": self.success,
            "optional": self.optional,
            "errorDetail": self.error_detail,
            "performance": self.performance.value if self.performance else None,
        }


@dataclass(frozen=True)
class PollResult:
    outcome: PollOutcome
    poll_count: int
    deployment: DeploymentRecord | None = None
    deployments: tuple[DeploymentRecord, ...] = ()
    fallback: bool = False
    reason: str = ""
    elapsed_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.outcome is PollOutcome.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "pollCount": self.poll_count,
            "deployment": self.deployment.to_dict() if self.deployment else None,
            "fallback": self.fallback,
            "reason": self.reason,
            "elapsedSeconds": round(self.elapsed_seconds, 1),
        }


@dataclass(frozen=True)
class DeploymentSummary:
    total: int = 0
    successful: int = 0
    failed: int = 0
    building: int = 0
    failure_rate: float = 0.0
    recent_status_pattern: tuple[DeploymentStatus, ...] = ()
    records: tuple[DeploymentRecord, ...] = ()
    build_issues: tuple[str, ...] = ()

    @property
    def latest(self) -> DeploymentRecord | None:
        return self.records[0] if self.records else None

    @property
    def has_errors(self) -> bool:
        return self.failed > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "building": self.building,
            "failureRate": self.failure_rate,
            "recentStatusPattern": [s.value for s in self.recent_status_pattern],
            "deployments": [r.to_dict() for r in self.records],
            "buildIssues": list(self.build_issues),
        }


@dataclass(frozen=True)
class HealthSummary:
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    average_latency_ms: float = 0.0
    fastest_ms: float | None = None
    slowest_ms: float | None = None
    fast_endpoints: int = 0
    slow_endpoints: int = 0
    status_counts: tuple[tuple[int, int], ...] = ()
    results: tuple[HealthProbeResult, ...] = ()

    @property
    def evaluated(self) -> int:
        return self.total - self.skipped

    @property
    def success_rate(self) -> float | None:
        """Percentage of non-skipped probes that passed, or None with nothing evaluated."""
        if self.evaluated <= 0:
            return None
        return (self.passed / float(self.evaluated)) * 100.0

    def count_status(self, status: int) -> int:
        return dict(self.status_counts).get(int(status), 0)

    @property
    def server_errors(self) -> int:
        return sum(n for code, n in self.status_counts if code >= 500)

    @property
    def transport_failures(self) -> int:
        return self.count_status(0)

    def to_dict(self) -> dict[str, Any]:
        rate = self.success_rate
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "successRate": round(rate, 1) if rate is not None else None,
            "averageLatencyMs": round(self.average_latency_ms, 1),
            "fastestMs": self.fastest_ms,
            "slowestMs": self.slowest_ms,
            "fastEndpoints": self.fast_endpoints,
            "slowEndpoints": self.slow_endpoints,
            "statusCounts": {str(code): n for code, n in self.status_counts},
            "tests": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class Alert:
    severity: Severity
    type: AlertType
    title: str
    message: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class Recommendation:
    priority: str
    category: str
    title: str
    description: str
    action: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "priority": self.priority,
            "category": self.category,
            "title": self.title,
            "description": self.description,
            "action": self.action,
        }


@dataclass(frozen=True)
class ComprehensiveReport:
    timestamp: datetime
    overall_status: OverallStatus
    severity: Severity
    deployment_summary: DeploymentSummary
    health_summary: HealthSummary
    alerts: tuple[Alert, ...] = ()
    recommendations: tuple[Recommendation, ...] = ()

    @property
    def healthy(self) -> bool:
        return self.overall_status is OverallStatus.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "overallStatus": self.overall_status.value,
            "severity": self.severity.value,
            "deploymentSummary": self.deployment_summary.to_dict(),
            "healthSummary": self.health_summary.to_dict(),
            "alerts": [a.to_dict() for a in self.alerts],
            "recommendations": [r.to_dict() for r in self.recommendations],
        }


@dataclass(frozen=True)
class PhaseResults:
    deployment_check: bool
    health_check: bool
    comprehensive_check: bool | None  # None when skipped (feature branch)

    @property
    def total(self) -> int:
        return 2 if self.comprehensive_check is None else 3

    @property
    def passed(self) -> int:
        # A skipped comprehensive phase does not count toward total or passed.
        return sum(1 for v in (self.deployment_check, self.health_check, self.comprehensive_check) if v)

    @property
    def pass_rate(self) -> int:
        return (self.passed * 100) // self.total

    @property
    def final_status(self) -> str:
        if self.passed == self.total:
            return "SUCCESS"
        if self.passed >= self.total - 1:
            return "MOSTLY_SUCCESS"
        return "FAILED"

    @property
    def exit_code(self) -> int:
        return {"SUCCESS": 0, "MOSTLY_SUCCESS": 1}.get(self.final_status, 2)


@dataclass
class MonitoringSession:
    session_id: str
    trigger: SessionTrigger
    branch: str
    commit_id: str
    started_at: datetime
    status: SessionStatus = SessionStatus.MONITORING
    monitoring_level: str = "standard"
    completed_at: datetime | None = None
    final_report: dict[str, Any] | None = None
    phases: PhaseResults | None = None
    error: str | None = None
    pid: int | None = None
    artifacts: dict[str, str] = field(default_factory=dict)

    @property
    def short_sha(self) -> str:
        return self.commit_id[:8]

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.MONITORING
