from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import record
from deploy_monitor.analyzer import (
    RULES,
    Verdict,
    analyze,
    build_recommendations,
    classify,
    monitoring_failure_report,
    summarize_deployments,
)
from deploy_monitor.config import ThresholdConfig
from deploy_monitor.health import summarize
from deploy_monitor.models import (
    AlertType,
    DeploymentSummary,
    HealthProbeResult,
    HealthSummary,
    OverallStatus,
    PerformanceRating,
    Severity,
)


NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
THRESHOLDS = ThresholdConfig()


def probe(name: str, status: int, latency: float = 120.0, *, expected=(200,), optional=False) -> HealthProbeResult:
    matched = status != 0 and status in expected
    perf = None
    if matched:
        perf = PerformanceRating.FAST if latency < 500 else PerformanceRating.SLOW if latency >= 2000 else PerformanceRating.ACCEPTABLE
    return HealthProbeResult(
        name=name,
        target_path="/" + name,
        method="GET",
        expected_statuses=tuple(expected),
        observed_status=status,
        latency_ms=latency,
        optional=optional,
        performance=perf,
    )


def deployments(*statuses: str, issues=()) -> DeploymentSummary:
    return summarize_deployments([record(s, i) for i, s in enumerate(statuses)], issues)


def test_all_ready_and_all_passing_is_healthy() -> None:
    report = analyze(
        deployments("Ready", "Ready", "Ready"),
        summarize([probe(f"e{i}", 200) for i in range(5)]),
        THRESHOLDS,
        now=NOW,
    )
    assert report.overall_status is OverallStatus.HEALTHY
    assert report.severity is Severity.LOW
    assert report.alerts == ()
    assert report.recommendations == ()
    assert report.timestamp == NOW


def test_failed_deployment_while_site_serves_is_warning_not_critical() -> None:
    health = summarize([probe(f"e{i}", 200) for i in range(4)] + [probe("missing", 404)])
    report = analyze(deployments("Error", "Ready", "Ready", "Ready", "Ready"), health, THRESHOLDS, now=NOW)

    assert report.overall_status is OverallStatus.WARNING
    assert report.severity is Severity.MEDIUM
    assert [r.title for r in report.recommendations] == ["Deployment Status Does Not Match Site Health"]
    assert [a.type for a in report.alerts] == [AlertType.DEPLOYMENT_FAILURES]
    assert report.alerts[0].severity is Severity.MEDIUM


def test_real_outage_is_critical() -> None:
    health = summarize([probe(f"e{i}", 0, 15000.0) for i in range(5)])
    report = analyze(deployments("Error", "Error", "Error", "Ready"), health, THRESHOLDS, now=NOW)

    assert report.overall_status is OverallStatus.CRITICAL
    assert report.severity is Severity.CRITICAL
    types = [a.type for a in report.alerts]
    assert AlertType.SITE_DOWN in types
    assert AlertType.DEPLOYMENT_FAILURES in types
    assert AlertType.API_HEALTH_ISSUES not in types
    assert any(a.severity is Severity.HIGH for a in report.alerts if a.type is AlertType.DEPLOYMENT_FAILURES)
    categories = [r.category for r in report.recommendations]
    assert "connectivity" in categories
    assert "deployment" in categories


def test_slow_but_working_is_warning_with_performance_alert() -> None:
    health = summarize([probe(f"e{i}", 200, 6000.0) for i in range(3)])
    report = analyze(deployments("Ready"), health, THRESHOLDS, now=NOW)

    assert report.overall_status is OverallStatus.WARNING
    assert report.severity is Severity.MEDIUM
    assert [a.type for a in report.alerts] == [AlertType.PERFORMANCE_DEGRADATION]
    titles = [r.title for r in report.recommendations]
    assert "Slow API Response Times" in titles


def test_low_success_rate_is_critical_high() -> None:
    health = summarize([probe("a", 200), probe("b", 500), probe("c", 500)])
    report = analyze(deployments("Ready"), health, THRESHOLDS, now=NOW)

    assert report.overall_status is OverallStatus.CRITICAL
    assert report.severity is Severity.HIGH
    assert [a.type for a in report.alerts] == [AlertType.API_HEALTH_ISSUES]
    assert [r.category for r in report.recommendations] == ["server"]


def test_persistent_failure_pattern_is_critical() -> None:
    health = summarize([probe("a", 200)])
    report = analyze(deployments("Error", "Error", "Error", "Ready", "Ready"), health, THRESHOLDS, now=NOW)
    assert report.overall_status is OverallStatus.CRITICAL
    assert report.severity is Severity.HIGH


def test_no_data_is_unknown() -> None:
    report = analyze(DeploymentSummary(), HealthSummary(), THRESHOLDS, now=NOW)
    assert report.overall_status is OverallStatus.UNKNOWN
    assert report.severity is Severity.LOW


def test_only_optional_probes_skip_rate_rule() -> None:
    health = summarize([probe("admin", 0, optional=True)])
    report = analyze(deployments("Ready"), health, THRESHOLDS, now=NOW)
    assert health.success_rate is None
    assert report.overall_status is OverallStatus.HEALTHY


@pytest.mark.parametrize(
    "probes",
    [[], [probe("admin", 0, optional=True)]],
    ids=["no-probes", "optional-only"],
)
def test_failed_deployment_without_matched_probe_is_critical(probes) -> None:
    report = analyze(deployments("Error", "Ready"), summarize(probes), THRESHOLDS, now=NOW)
    assert report.overall_status is OverallStatus.CRITICAL
    assert report.severity is Severity.CRITICAL
    assert AlertType.DEPLOYMENT_FAILURES in [a.type for a in report.alerts]


def test_analysis_is_deterministic() -> None:
    d = deployments("Error", "Ready", "Building")
    h = summarize([probe("a", 200), probe("b", 401), probe("c", 401), probe("d", 503)])
    first = analyze(d, h, THRESHOLDS, now=NOW)
    second = analyze(d, h, THRESHOLDS, now=NOW)
    assert first == second
    assert first.to_dict() == second.to_dict()


@pytest.mark.parametrize("start", list(OverallStatus))
def test_rules_never_lower_an_earlier_verdict(start: OverallStatus) -> None:
    d = deployments("Ready")
    h = summarize([probe("a", 200)])
    for sev in Severity:
        v = Verdict(start, sev)
        for rule in RULES:
            out = rule(v, d, h, THRESHOLDS)
            assert out.status.rank >= v.status.rank
            assert out.severity.rank >= v.severity.rank


def test_classify_respects_custom_rule_order() -> None:
    d = deployments("Error")
    h = summarize([probe("a", 0)])
    assert classify(d, h, THRESHOLDS, rules=()).status is OverallStatus.HEALTHY
    assert classify(d, h, THRESHOLDS, rules=RULES[:1]) == Verdict(OverallStatus.CRITICAL, Severity.CRITICAL)


def test_build_issue_recommendations() -> None:
    d = deployments(
        "Error",
        "Ready",
        issues=[
            "Attempted import error: 'FileUpload' is not exported from './ui'",
            "Module not found: Can't resolve 'lodash'",
            "FATAL ERROR: Reached heap limit - JavaScript heap out of memory",
        ],
    )
    recs = build_recommendations(d, summarize([probe("a", 200)]), THRESHOLDS)
    titles = [r.title for r in recs]
    assert titles[:4] == [
        "Deployment Status Does Not Match Site Health",
        "Fix Component Import Issues",
        "Resolve Missing Modules",
        "Reduce Build Memory Usage",
    ]
    assert "High Deployment Failure Rate" in titles
    assert all(r.priority == "high" for r in recs if r.category == "build")


def test_unexpected_auth_failures_recommendation() -> None:
    h = summarize([probe("a", 200), probe("b", 401), probe("c", 401), probe("d", 401, expected=(200, 401))])
    recs = build_recommendations(deployments("Ready"), h, THRESHOLDS)
    assert [r.category for r in recs] == ["authentication"]
    assert "2 endpoints" in recs[0].description


def test_site_down_despite_ready_deployment() -> None:
    h = summarize([probe("a", 503), probe("b", 0)])
    recs = build_recommendations(deployments("Ready"), h, THRESHOLDS)
    assert recs[-1].category == "infrastructure"


def test_summarize_deployments_window_and_pattern() -> None:
    statuses = ["Error", "Ready", "Building", "Queued", "Error", "Ready", "Ready", "Ready", "Ready", "Ready", "Error", "Error"]
    s = summarize_deployments([record(x, i) for i, x in enumerate(statuses)])
    assert s.total == 10
    assert s.failed == 2
    assert s.successful == 6
    assert s.building == 2
    assert s.failure_rate == 20.0
    assert [p.value for p in s.recent_status_pattern] == ["Error", "Ready", "Building", "Queued", "Error"]
    assert s.latest is not None and s.latest.identifier == "app-0.example.app"

    empty = summarize_deployments([])
    assert empty.failure_rate == 0.0
    assert empty.latest is None


def test_monitoring_failure_report() -> None:
    report = monitoring_failure_report("lister crashed", now=NOW)
    assert report.overall_status is OverallStatus.CRITICAL
    assert report.severity is Severity.CRITICAL
    assert report.alerts[0].type is AlertType.MONITORING_FAILURE
    assert "lister crashed" in report.alerts[0].message
