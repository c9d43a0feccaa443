"""Continuous supervisor: repeats poll → check → analyze → persist → alert on an interval.

A new deployment identifier triggers a full run (session, poll, report, alerts). An
unchanged one, or an unavailable lister, only gets a cheap health recheck. Cycles that
raise count toward a circuit breaker; reaching the limit halts the loop with a final report.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

import structlog
from jinja2 import Environment, FileSystemLoader

from .analyzer import analyze, summarize_deployments
from .cancellation import StopSignal
from .config import MonitorConfig
from .errors import ConsecutiveFailureLimitExceeded, DuplicateSessionError, ParseError, TransportError
from .models import ComprehensiveReport, OverallStatus, SessionTrigger
from .runner import MonitorRunner
from .store import TEMPLATE_DIR


logger = structlog.get_logger(__name__)

FINAL_REPORT_FILE = "supervisor-report.md"


class SupervisorState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    RUNNING_FULL_CYCLE = "running_full_cycle"
    RECHECKING = "rechecking"
    HALTED = "halted"
    STOPPED = "stopped"


@dataclass(frozen=True)
class SupervisorMetrics:
    started_at: datetime
    total_cycles: int = 0
    successful_cycles: int = 0
    failed_cycles: int = 0
    healthy_checks: int = 0
    full_runs: int = 0
    average_latency_ms: float = 0.0
    consecutive_failures: int = 0
    last_deployment_id: Optional[str] = None
    last_status: Optional[OverallStatus] = None
    last_error: Optional[str] = None

    @property
    def uptime_percent(self) -> float:
        if self.successful_cycles == 0:
            return 0.0
        return self.healthy_checks * 100.0 / self.successful_cycles

    def record_success(self, report: ComprehensiveReport, *, full_run: bool, deployment_id: Optional[str]) -> "SupervisorMetrics":
        n = self.successful_cycles + 1
        latency = report.health_summary.average_latency_ms
        if report.health_summary.passed:
            avg = self.average_latency_ms + (latency - self.average_latency_ms) / n
        else:
            avg = self.average_latency_ms
        return replace(
            self,
            total_cycles=self.total_cycles + 1,
            successful_cycles=n,
            healthy_checks=self.healthy_checks + (1 if report.overall_status is not OverallStatus.CRITICAL else 0),
            full_runs=self.full_runs + (1 if full_run else 0),
            average_latency_ms=avg,
            consecutive_failures=0,
            last_deployment_id=deployment_id or self.last_deployment_id,
            last_status=report.overall_status,
        )

    def record_failure(self, error: str) -> "SupervisorMetrics":
        return replace(
            self,
            total_cycles=self.total_cycles + 1,
            failed_cycles=self.failed_cycles + 1,
            consecutive_failures=self.consecutive_failures + 1,
            last_error=error,
        )


@dataclass(frozen=True)
class CycleResult:
    kind: str  # "full" or "recheck"
    report: ComprehensiveReport
    deployment_id: Optional[str]
    session_id: Optional[str] = None


class ContinuousSupervisor:
    def __init__(
        self,
        cfg: MonitorConfig,
        runner: MonitorRunner,
        *,
        report_path: Optional[Path] = None,
    ) -> None:
        self.cfg = cfg
        self.runner = runner
        self.report_path = report_path or Path(cfg.storage.root) / FINAL_REPORT_FILE
        self.state = SupervisorState.IDLE
        self.metrics = SupervisorMetrics(started_at=datetime.now(timezone.utc))
        self._stop = StopSignal()
        self._jinja = Environment(loader=FileSystemLoader(str(TEMPLATE_DIR)), trim_blocks=True, lstrip_blocks=True)

    def stop(self) -> None:
        self._stop.set("supervisor stop requested")

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def run_cycle(self, metrics: SupervisorMetrics) -> CycleResult:
        self.state = SupervisorState.POLLING
        try:
            records = await self.runner.lister.list_deployments(self._stop)
        except (TransportError, ParseError) as e:
            # Health rechecks continue while the lister is unavailable.
            logger.warning("deployment_listing_unavailable", error=str(e))
            records = []
        latest = records[0] if records else None

        if latest is not None and latest.identifier != metrics.last_deployment_id:
            self.state = SupervisorState.RUNNING_FULL_CYCLE
            logger.info("new_deployment_detected", deployment=latest.identifier, status=latest.status.value)
            try:
                outcome = await self.runner.run(
                    trigger=SessionTrigger.SCHEDULED,
                    branch=self.cfg.supervisor.branch,
                    commit_id=latest.identifier,
                    stop=self._stop,
                )
            except DuplicateSessionError as e:
                logger.info("full_cycle_skipped", deployment=latest.identifier, existing_session=e.existing_session_id)
            else:
                return CycleResult("full", outcome.report, latest.identifier, outcome.session.session_id)

        self.state = SupervisorState.RECHECKING
        health = await self.runner.checker.run(stop=self._stop)
        deployments = summarize_deployments(
            records,
            window=self.cfg.thresholds.deployment_window,
            pattern_size=self.cfg.thresholds.pattern_size,
        )
        report = analyze(deployments, health, self.cfg.thresholds)
        if metrics.last_status is not None and report.overall_status is not metrics.last_status:
            logger.warning(
                "health_status_changed",
                previous=metrics.last_status.value,
                current=report.overall_status.value,
            )
            await self.runner.dispatcher.notify(report, base_url=self.cfg.health.base_url)
        return CycleResult("recheck", report, latest.identifier if latest else None)

    async def run(self, *, max_cycles: Optional[int] = None) -> SupervisorMetrics:
        """Loop until stopped, `max_cycles` is reached, or the circuit breaker trips.

        Raises ConsecutiveFailureLimitExceeded after writing the final report.
        """
        cfg = self.cfg.supervisor
        metrics = self.metrics
        logger.info("supervisor_started", interval_seconds=cfg.interval_seconds, max_failures=cfg.max_consecutive_failures)

        while not self._stop.is_set():
            try:
                result = await self.run_cycle(metrics)
            except Exception as e:
                if self._stop.is_set():
                    break
                error = f"{type(e).__name__}: {e}"
                metrics = metrics.record_failure(error)
                self.metrics = metrics
                logger.error(
                    "supervisor_cycle_failed",
                    error=error,
                    consecutive_failures=metrics.consecutive_failures,
                )
                if metrics.consecutive_failures >= cfg.max_consecutive_failures:
                    self.state = SupervisorState.HALTED
                    exc = ConsecutiveFailureLimitExceeded(metrics.consecutive_failures, cfg.max_consecutive_failures, error)
                    self.write_final_report(metrics, f"halted: {exc}")
                    logger.error("supervisor_halted", error=str(exc))
                    raise exc from e
            else:
                metrics = metrics.record_success(
                    result.report,
                    full_run=result.kind == "full",
                    deployment_id=result.deployment_id,
                )
                self.metrics = metrics
                logger.info(
                    "supervisor_cycle",
                    kind=result.kind,
                    overall_status=result.report.overall_status.value,
                    cycles=metrics.total_cycles,
                    uptime=round(metrics.uptime_percent, 1),
                    average_latency_ms=round(metrics.average_latency_ms, 1),
                )

            if max_cycles is not None and metrics.total_cycles >= max_cycles:
                break
            self.state = SupervisorState.IDLE
            if await self._stop.sleep(cfg.interval_seconds):
                break

        self.state = SupervisorState.STOPPED
        self.write_final_report(metrics, "stopped")
        logger.info("supervisor_stopped", cycles=metrics.total_cycles)
        return metrics

    def render_final_report(self, metrics: SupervisorMetrics, reason: str, *, now: Optional[datetime] = None) -> str:
        ended = now or datetime.now(timezone.utc)
        return self._jinja.get_template("supervisor_report.md.j2").render(
            m=metrics,
            reason=reason,
            ended_at=ended.isoformat(),
            runtime_seconds=int((ended - metrics.started_at).total_seconds()),
            interval_seconds=self.cfg.supervisor.interval_seconds,
            max_failures=self.cfg.supervisor.max_consecutive_failures,
            base_url=self.cfg.health.base_url,
        )

    def write_final_report(self, metrics: SupervisorMetrics, reason: str) -> Path:
        text = self.render_final_report(metrics, reason)
        self.report_path.parent.mkdir(parents=True, exist_ok=True)
        self.report_path.write_text(text, encoding="utf-8")
        logger.info("supervisor_report_written", path=str(self.report_path))
        return self.report_path
