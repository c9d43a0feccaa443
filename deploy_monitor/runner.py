"""One-shot monitoring run: poll → health check → analyze → persist → alert."""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Optional

import structlog

from .analyzer import analyze, monitoring_failure_report, summarize_deployments
from .cancellation import StopSignal
from .config import MonitorConfig
from .errors import SessionStopped, StoreError
from .health import EndpointHealthChecker
from .lister import DeploymentLister, VercelCliLister
from .models import (
    ComprehensiveReport,
    DeploymentStatus,
    DeploymentSummary,
    HealthSummary,
    MonitoringSession,
    OverallStatus,
    PhaseResults,
    PollResult,
    SessionStatus,
    SessionTrigger,
)
from .notify import AlertDispatcher, DeliveryResult
from .poller import DeploymentPoller
from .store import ExportedReport, SessionStore


logger = structlog.get_logger(__name__)

EXIT_CODES = {
    OverallStatus.HEALTHY: 0,
    OverallStatus.WARNING: 1,
    OverallStatus.UNKNOWN: 1,
    OverallStatus.CRITICAL: 2,
}


@dataclass(frozen=True)
class RunOutcome:
    session: MonitoringSession
    report: ComprehensiveReport
    poll: Optional[PollResult] = None
    exported: Optional[ExportedReport] = None
    deliveries: tuple[DeliveryResult, ...] = ()

    @property
    def exit_code(self) -> int:
        if self.session.status is SessionStatus.STOPPED:
            return 1
        return EXIT_CODES[self.report.overall_status]


def build_store(cfg: MonitorConfig) -> SessionStore:
    return SessionStore(cfg.storage.sessions_path, cfg.storage.reports_path)


class MonitorRunner:
    def __init__(
        self,
        cfg: MonitorConfig,
        *,
        lister: DeploymentLister,
        store: SessionStore,
        checker: EndpointHealthChecker,
        dispatcher: AlertDispatcher,
        poller: Optional[DeploymentPoller] = None,
    ) -> None:
        self.cfg = cfg
        self.lister = lister
        self.store = store
        self.checker = checker
        self.dispatcher = dispatcher
        self.poller = poller or DeploymentPoller(lister, cfg.poller)

    @classmethod
    def from_config(cls, cfg: MonitorConfig) -> "MonitorRunner":
        return cls(
            cfg,
            lister=VercelCliLister(cfg.lister),
            store=build_store(cfg),
            checker=EndpointHealthChecker(cfg.health),
            dispatcher=AlertDispatcher.from_config(cfg.alerting, cfg.storage),
        )

    def open_session(self, trigger: SessionTrigger, branch: str, commit_id: str) -> MonitoringSession:
        """Create the persisted session; raises DuplicateSessionError for an in-flight commit."""
        level = "enhanced" if self.cfg.is_deployment_branch(branch) else "standard"
        return self.store.create_session(trigger, branch, commit_id, monitoring_level=level, pid=os.getpid())

    def stop_signal_for(self, session: MonitoringSession, parent: Optional[StopSignal] = None) -> StopSignal:
        """Signal that fires on `parent` or when the persisted session is marked stopped."""
        session_id = session.session_id

        def _probe() -> bool:
            if parent is not None and parent.is_set():
                return True
            return self.store.is_stopped(session_id)

        return StopSignal(_probe)

    async def run(
        self,
        *,
        trigger: SessionTrigger,
        branch: str,
        commit_id: str,
        stop: Optional[StopSignal] = None,
    ) -> RunOutcome:
        session = self.open_session(trigger, branch, commit_id)
        return await self.execute(session, stop=stop)

    async def execute(self, session: MonitoringSession, *, stop: Optional[StopSignal] = None) -> RunOutcome:
        """Drive an already-created session to a terminal status.

        Every path ends with a persisted session and an exported report. Only store
        errors propagate.
        """
        stop = self.stop_signal_for(session, parent=stop)
        log = logger.bind(session_id=session.session_id, branch=session.branch, commit=session.short_sha)
        log.info("run_started", trigger=session.trigger.value, level=session.monitoring_level)
        try:
            return await self._pipeline(session, stop, log)
        except SessionStopped as e:
            log.info("run_stopped", reason=str(e))
            return self._finish_stopped(session, str(e))
        except asyncio.CancelledError:
            log.info("run_cancelled")
            try:
                self._finish_stopped(session, "cancelled")
            except StoreError:
                log.exception("cancelled_run_not_recorded")
            raise
        except StoreError:
            raise
        except Exception as e:
            log.exception("run_crashed")
            return await self._finish_failed(session, f"{type(e).__name__}: {e}")

    async def _pipeline(self, session: MonitoringSession, stop: StopSignal, log) -> RunOutcome:
        delay = float(self.cfg.poller.propagation_delay_seconds)
        if session.trigger is SessionTrigger.POST_PUSH and delay > 0:
            log.info("propagation_delay", seconds=delay)
            await stop.sleep(delay)
        stop.checkpoint()

        poll = await self.poller.poll(stop=stop)
        log.info("poll_finished", outcome=poll.outcome.value, polls=poll.poll_count, fallback=poll.fallback)

        build_issues: list[str] = []
        latest = poll.deployment or (poll.deployments[0] if poll.deployments else None)
        if latest is not None and latest.status is DeploymentStatus.ERROR:
            build_issues = await self.lister.build_issues(latest, stop)
            log.info("build_issues_collected", count=len(build_issues))

        # Runs regardless of the poll outcome: the platform may report Error while the site is fine.
        health = await self.checker.run(stop=stop)
        stop.checkpoint()

        deployments = summarize_deployments(
            poll.deployments,
            build_issues,
            window=self.cfg.thresholds.deployment_window,
            pattern_size=self.cfg.thresholds.pattern_size,
        )
        report = analyze(deployments, health, self.cfg.thresholds)

        enhanced = session.monitoring_level == "enhanced"
        phases = PhaseResults(
            deployment_check=poll.success,
            health_check=health.failed == 0,
            comprehensive_check=(report.overall_status is not OverallStatus.CRITICAL) if enhanced else None,
        )
        done = self.store.complete_session(session.session_id, report, phases)
        if done.status is SessionStatus.STOPPED:
            return self._finish_stopped(done, done.error or "stopped", report=report)

        exported = self._export(done, report)
        deliveries = await self.dispatcher.notify(report, session=done, base_url=self.cfg.health.base_url)
        log.info(
            "run_completed",
            overall_status=report.overall_status.value,
            severity=report.severity.value,
            final_status=phases.final_status,
            pass_rate=phases.pass_rate,
        )
        return RunOutcome(session=done, report=report, poll=poll, exported=exported, deliveries=tuple(deliveries))

    def _export(self, session: MonitoringSession, report: ComprehensiveReport) -> ExportedReport:
        exported = self.store.export_report(report, session, base_url=self.cfg.health.base_url)
        session.artifacts.update(
            {
                "reportJson": str(exported.json_path),
                "reportMarkdown": str(exported.markdown_path),
            }
        )
        self.store.save(session)
        self.store.write_result_note(session)
        return exported

    def _finish_stopped(
        self,
        session: MonitoringSession,
        reason: str,
        *,
        report: Optional[ComprehensiveReport] = None,
    ) -> RunOutcome:
        stopped = self.store.stop_session(session.session_id, reason)
        if report is None:
            report = analyze(DeploymentSummary(), HealthSummary(), self.cfg.thresholds)
        exported = self._export(stopped, report)
        return RunOutcome(session=stopped, report=report, exported=exported)

    async def _finish_failed(self, session: MonitoringSession, error: str) -> RunOutcome:
        report = monitoring_failure_report(error)
        failed = self.store.fail_session(session.session_id, error, report)
        if failed.status is SessionStatus.COMPLETED:
            # The completed report is already exported and stays authoritative.
            return RunOutcome(session=failed, report=report)
        exported = self._export(failed, report)
        deliveries = await self.dispatcher.notify(report, session=failed, base_url=self.cfg.health.base_url)
        return RunOutcome(session=failed, report=report, exported=exported, deliveries=tuple(deliveries))
