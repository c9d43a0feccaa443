"""Fuse deployment and endpoint health signals into one severity-classified report.

Severity is decided by an ordered list of pure rule functions. Each rule receives the
verdict accumulated so far and may only raise it, so the order documents precedence
and a rule never undoes an earlier, more severe determination.

Alerts are derived from the same inputs. Recommendations are advisory and never feed
back into severity.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from .config import ThresholdConfig
from .models import (
    Alert,
    AlertType,
    ComprehensiveReport,
    DeploymentRecord,
    DeploymentStatus,
    DeploymentSummary,
    HealthSummary,
    OverallStatus,
    Recommendation,
    Severity,
    max_severity,
    max_status,
)


@dataclass(frozen=True)
class Verdict:
    status: OverallStatus
    severity: Severity

    def raise_to(self, status: OverallStatus, severity: Severity) -> "Verdict":
        return Verdict(max_status(self.status, status), max_severity(self.severity, severity))


Rule = Callable[[Verdict, DeploymentSummary, HealthSummary, ThresholdConfig], Verdict]


def summarize_deployments(
    records: Iterable[DeploymentRecord],
    build_issues: Iterable[str] = (),
    *,
    window: int = 10,
    pattern_size: int = 5,
) -> DeploymentSummary:
    """Summarize the most recent `window` records (newest first)."""
    kept = tuple(records)[: max(0, int(window))]
    total = len(kept)
    successful = sum(1 for r in kept if r.status is DeploymentStatus.READY)
    failed = sum(1 for r in kept if r.status is DeploymentStatus.ERROR)
    building = sum(1 for r in kept if r.status in (DeploymentStatus.BUILDING, DeploymentStatus.QUEUED))
    return DeploymentSummary(
        total=total,
        successful=successful,
        failed=failed,
        building=building,
        failure_rate=round(failed * 100.0 / total, 1) if total else 0.0,
        recent_status_pattern=tuple(r.status for r in kept[: max(0, int(pattern_size))]),
        records=kept,
        build_issues=tuple(build_issues),
    )


def _pattern_errors(deployments: DeploymentSummary) -> int:
    return sum(1 for s in deployments.recent_status_pattern if s is DeploymentStatus.ERROR)


def _predominantly_error(deployments: DeploymentSummary) -> bool:
    pattern = deployments.recent_status_pattern
    return bool(pattern) and _pattern_errors(deployments) * 2 > len(pattern)


def _site_down(health: HealthSummary) -> bool:
    return health.evaluated > 0 and health.passed == 0


def initial_verdict(deployments: DeploymentSummary, health: HealthSummary) -> Verdict:
    if deployments.total == 0 and health.total == 0:
        return Verdict(OverallStatus.UNKNOWN, Severity.LOW)
    return Verdict(OverallStatus.HEALTHY, Severity.LOW)


def rule_failed_deployment_site_down(v: Verdict, d: DeploymentSummary, h: HealthSummary, t: ThresholdConfig) -> Verdict:
    # Skipped optional probes say nothing about the site; no matched probe counts as down.
    if d.has_errors and h.passed == 0:
        return v.raise_to(OverallStatus.CRITICAL, Severity.CRITICAL)
    return v


def rule_failed_deployment_site_up(v: Verdict, d: DeploymentSummary, h: HealthSummary, t: ThresholdConfig) -> Verdict:
    if d.has_errors and h.passed > 0:
        return v.raise_to(OverallStatus.WARNING, Severity.MEDIUM)
    return v


def rule_endpoint_success_rate(v: Verdict, d: DeploymentSummary, h: HealthSummary, t: ThresholdConfig) -> Verdict:
    rate = h.success_rate
    if rate is None:
        return v
    if rate < t.min_success_rate_percent:
        return v.raise_to(OverallStatus.CRITICAL, Severity.HIGH)
    if h.failed > 0:
        return v.raise_to(OverallStatus.WARNING, Severity.MEDIUM)
    return v


def rule_average_latency(v: Verdict, d: DeploymentSummary, h: HealthSummary, t: ThresholdConfig) -> Verdict:
    if h.passed > 0 and h.average_latency_ms > t.max_average_latency_ms:
        return v.raise_to(OverallStatus.WARNING, Severity.MEDIUM)
    return v


def rule_persistent_failure_pattern(v: Verdict, d: DeploymentSummary, h: HealthSummary, t: ThresholdConfig) -> Verdict:
    if d.failure_rate > t.max_failure_rate_percent and _predominantly_error(d):
        return v.raise_to(OverallStatus.CRITICAL, Severity.HIGH)
    return v


RULES: tuple[Rule, ...] = (
    rule_failed_deployment_site_down,
    rule_failed_deployment_site_up,
    rule_endpoint_success_rate,
    rule_average_latency,
    rule_persistent_failure_pattern,
)


def classify(
    deployments: DeploymentSummary,
    health: HealthSummary,
    thresholds: ThresholdConfig,
    rules: Iterable[Rule] = RULES,
) -> Verdict:
    verdict = initial_verdict(deployments, health)
    for rule in rules:
        verdict = rule(verdict, deployments, health, thresholds)
    return verdict


def build_alerts(
    deployments: DeploymentSummary,
    health: HealthSummary,
    thresholds: ThresholdConfig,
    now: datetime,
) -> tuple[Alert, ...]:
    alerts: list[Alert] = []

    if _site_down(health):
        alerts.append(
            Alert(
                severity=Severity.CRITICAL,
                type=AlertType.SITE_DOWN,
                title="Site Critical Status",
                message=f"None of {health.evaluated} required endpoints responded as expected",
                timestamp=now,
            )
        )

    errors = _pattern_errors(deployments)
    latest = deployments.latest
    if errors >= thresholds.consecutive_failure_alert:
        alerts.append(
            Alert(
                severity=Severity.HIGH,
                type=AlertType.DEPLOYMENT_FAILURES,
                title="Multiple Recent Deployment Failures",
                message=f"{errors} of the last {len(deployments.recent_status_pattern)} deployments failed",
                timestamp=now,
            )
        )
    elif latest is not None and latest.status is DeploymentStatus.ERROR:
        alerts.append(
            Alert(
                severity=Severity.MEDIUM,
                type=AlertType.DEPLOYMENT_FAILURES,
                title="Latest Deployment Failed",
                message=f"Deployment {latest.identifier} reported Error",
                timestamp=now,
            )
        )

    if health.passed > 0 and health.average_latency_ms > thresholds.max_average_latency_ms:
        alerts.append(
            Alert(
                severity=Severity.MEDIUM,
                type=AlertType.PERFORMANCE_DEGRADATION,
                title="Performance Degradation Detected",
                message=f"Average response time: {health.average_latency_ms:.0f}ms "
                f"(ceiling {thresholds.max_average_latency_ms:.0f}ms)",
                timestamp=now,
            )
        )

    if health.evaluated > 0 and not _site_down(health):
        failure_pct = health.failed * 100.0 / health.evaluated
        if failure_pct > thresholds.api_failure_alert_percent:
            alerts.append(
                Alert(
                    severity=Severity.MEDIUM,
                    type=AlertType.API_HEALTH_ISSUES,
                    title="API Health Issues",
                    message=f"{failure_pct:.1f}% of API endpoints are failing",
                    timestamp=now,
                )
            )

    return tuple(alerts)


BUILD_ISSUE_CATEGORIES: tuple[tuple[tuple[str, ...], str, str, str], ...] = (
    (
        ("element type is invalid", "fileupload", "is not exported", "attempted import error"),
        "Fix Component Import Issues",
        "Build failures point at component import/export mismatches.",
        "Check that imported components are exported under the expected name (default vs named)",
    ),
    (
        ("module not found", "cannot find module", "can't resolve"),
        "Resolve Missing Modules",
        "The build cannot resolve one or more modules.",
        "Verify dependencies are declared and import paths are correct",
    ),
    (
        ("type error", "typeerror", "ts2"),
        "Fix Type Errors",
        "Type checking fails during the build.",
        "Run the type checker locally and fix the reported errors",
    ),
    (
        ("environment variable", "process.env", "missing env", "env var"),
        "Configure Environment Variables",
        "The build references environment variables that are not set.",
        "Compare the project's environment settings with the variables the build expects",
    ),
    (
        ("out of memory", "heap out of memory", "enomem", "javascript heap"),
        "Reduce Build Memory Usage",
        "The build ran out of memory.",
        "Lower build parallelism or raise the memory limit of the build environment",
    ),
)


def _build_issue_recommendations(deployments: DeploymentSummary) -> list[Recommendation]:
    out: list[Recommendation] = []
    lowered = [issue.lower() for issue in deployments.build_issues]
    for needles, title, description, action in BUILD_ISSUE_CATEGORIES:
        hits = [issue for issue in lowered if any(n in issue for n in needles)]
        if hits:
            out.append(
                Recommendation(
                    priority="high",
                    category="build",
                    title=title,
                    description=f"{description} ({len(hits)} matching log line(s))",
                    action=action,
                )
            )
    return out


def build_recommendations(
    deployments: DeploymentSummary,
    health: HealthSummary,
    thresholds: ThresholdConfig,
) -> tuple[Recommendation, ...]:
    recs: list[Recommendation] = []
    latest = deployments.latest
    unmatched = [r for r in health.results if not r.matched and not r.optional]

    if deployments.has_errors and health.passed > 0:
        recs.append(
            Recommendation(
                priority="medium",
                category="deployment",
                title="Deployment Status Does Not Match Site Health",
                description=(
                    f"{deployments.failed} deployment(s) report Error while "
                    f"{health.passed} endpoint(s) still respond as expected; a previous build is likely serving traffic"
                ),
                action="Inspect the failed build logs before the next push replaces the serving build",
            )
        )

    recs.extend(_build_issue_recommendations(deployments))

    if deployments.failure_rate > thresholds.recommendation_failure_rate_percent:
        recs.append(
            Recommendation(
                priority="medium",
                category="deployment",
                title="High Deployment Failure Rate",
                description=f"{deployments.failure_rate}% of recent deployments have failed",
                action="Review the build process and fix recurring build issues",
            )
        )

    auth_failures = sum(1 for r in unmatched if r.observed_status == 401)
    if auth_failures >= 2:
        recs.append(
            Recommendation(
                priority="medium",
                category="authentication",
                title="Authentication Issues Detected",
                description=f"{auth_failures} endpoints returned 401 Unauthorized unexpectedly",
                action="Verify the authentication flow and API endpoint protection",
            )
        )

    server_errors = sum(1 for r in unmatched if r.observed_status >= 500)
    if server_errors:
        recs.append(
            Recommendation(
                priority="high",
                category="server",
                title="Server Errors Returned",
                description=f"{server_errors} endpoint(s) answered with a 5xx status",
                action="Check the application's runtime logs for unhandled exceptions",
            )
        )

    transport_failures = sum(1 for r in unmatched if r.observed_status == 0)
    if transport_failures >= 2:
        recs.append(
            Recommendation(
                priority="high",
                category="connectivity",
                title="Endpoints Unreachable",
                description=f"{transport_failures} endpoint(s) timed out or refused the connection",
                action="Check DNS, TLS and the platform's domain configuration",
            )
        )

    if health.passed > 0 and health.average_latency_ms > thresholds.max_average_latency_ms:
        recs.append(
            Recommendation(
                priority="medium",
                category="performance",
                title="Slow API Response Times",
                description=f"Average response time is {health.average_latency_ms:.0f}ms",
                action="Optimize database queries and consider caching strategies",
            )
        )
    elif health.slow_endpoints > 2:
        recs.append(
            Recommendation(
                priority="low",
                category="performance",
                title="Several Slow Endpoints",
                description=f"{health.slow_endpoints} endpoints were classified as slow",
                action="Profile the slowest endpoints",
            )
        )

    if latest is not None and latest.status is DeploymentStatus.READY and _site_down(health):
        recs.append(
            Recommendation(
                priority="high",
                category="infrastructure",
                title="Site Accessibility Issues",
                description="Production site is not accessible despite a successful deployment",
                action="Check domain configuration and the hosting project's settings",
            )
        )

    return tuple(recs)


def analyze(
    deployments: DeploymentSummary,
    health: HealthSummary,
    thresholds: ThresholdConfig,
    *,
    now: Optional[datetime] = None,
) -> ComprehensiveReport:
    """Pure function of its inputs (plus `now`, which only stamps the report)."""
    ts = now or datetime.now(timezone.utc)
    verdict = classify(deployments, health, thresholds)
    return ComprehensiveReport(
        timestamp=ts,
        overall_status=verdict.status,
        severity=verdict.severity,
        deployment_summary=deployments,
        health_summary=health,
        alerts=build_alerts(deployments, health, thresholds, ts),
        recommendations=build_recommendations(deployments, health, thresholds),
    )


def monitoring_failure_report(error: str, *, now: Optional[datetime] = None) -> ComprehensiveReport:
    ts = now or datetime.now(timezone.utc)
    return ComprehensiveReport(
        timestamp=ts,
        overall_status=OverallStatus.CRITICAL,
        severity=Severity.CRITICAL,
        deployment_summary=DeploymentSummary(),
        health_summary=HealthSummary(),
        alerts=(
            Alert(
                severity=Severity.CRITICAL,
                type=AlertType.MONITORING_FAILURE,
                title="Monitoring System Failure",
                message=f"Monitoring run failed: {error}",
                timestamp=ts,
            ),
        ),
    )
