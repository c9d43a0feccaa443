"""Session & report store.

Each session lives in `<sessions_dir>/<session_id>/session.json`, written atomically on
every transition so a crashed run still leaves a discoverable `monitoring` record.
Exported reports go to `<reports_dir>` as a JSON document plus a Markdown summary.
"""

from __future__ import annotations

import json
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import structlog
from jinja2 import Environment, FileSystemLoader

from .errors import DuplicateSessionError, SessionNotFoundError, StoreError
from .models import (
    ComprehensiveReport,
    MonitoringSession,
    OverallStatus,
    PhaseResults,
    SessionStatus,
    SessionTrigger,
)


logger = structlog.get_logger(__name__)

SESSION_FILE = "session.json"
RESULT_NOTE_FILE = "result.txt"
TEMPLATE_DIR = Path(__file__).parent / "templates"

STATUS_EMOJI = {
    "healthy": "✅",
    "warning": "⚠️",
    "critical": "❌",
    "unknown": "❓",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f"{path.name}.tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(path)
    except OSError as e:
        raise StoreError(f"cannot write {path}: {e}") from e


def session_to_document(session: MonitoringSession) -> dict[str, Any]:
    doc: dict[str, Any] = {
        "sessionId": session.session_id,
        "trigger": session.trigger.value,
        "branch": session.branch,
        "sha": session.commit_id,
        "shortSha": session.short_sha,
        "startedAt": session.started_at.isoformat(),
        "completedAt": session.completed_at.isoformat() if session.completed_at else None,
        "status": session.status.value,
        "monitoringLevel": session.monitoring_level,
        "isDeploymentBranch": session.monitoring_level == "enhanced",
        "pid": session.pid,
        "error": session.error,
        "artifacts": dict(session.artifacts),
        "finalReport": session.final_report,
    }
    phases = session.phases
    if phases is not None:
        doc.update(
            {
                "deploymentCheck": phases.deployment_check,
                "healthCheck": phases.health_check,
                "comprehensiveCheck": phases.comprehensive_check,
                "phasesPassedCount": phases.passed,
                "totalPhases": phases.total,
                "passRate": phases.pass_rate,
                "finalStatus": phases.final_status,
                "exitCode": phases.exit_code,
            }
        )
    return doc


def session_from_document(doc: dict[str, Any]) -> MonitoringSession:
    phases = None
    if "deploymentCheck" in doc and "healthCheck" in doc:
        phases = PhaseResults(
            deployment_check=bool(doc["deploymentCheck"]),
            health_check=bool(doc["healthCheck"]),
            comprehensive_check=doc.get("comprehensiveCheck"),
        )
    started = _parse_dt(doc.get("startedAt"))
    if started is None:
        raise ValueError("session document has no startedAt")
    return MonitoringSession(
        session_id=str(doc["sessionId"]),
        trigger=SessionTrigger(doc.get("trigger") or "manual"),
        branch=str(doc.get("branch") or ""),
        commit_id=str(doc.get("sha") or ""),
        started_at=started,
        status=SessionStatus(doc.get("status") or "monitoring"),
        monitoring_level=str(doc.get("monitoringLevel") or "standard"),
        completed_at=_parse_dt(doc.get("completedAt")),
        final_report=doc.get("finalReport"),
        phases=phases,
        error=doc.get("error"),
        pid=doc.get("pid"),
        artifacts=dict(doc.get("artifacts") or {}),
    )


def pid_alive(pid: Optional[int]) -> bool:
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    return True


def owner_may_be_running(session: MonitoringSession) -> bool:
    """A session without a recorded pid cannot be judged and counts as running."""
    return session.pid is None or pid_alive(session.pid)


@dataclass(frozen=True)
class ExportedReport:
    json_path: Path
    markdown_path: Path
    markdown: str


class SessionStore:
    def __init__(
        self,
        sessions_dir: str | Path,
        reports_dir: str | Path | None = None,
        *,
        is_live: Callable[[MonitoringSession], bool] = owner_may_be_running,
    ) -> None:
        self.sessions_dir = Path(sessions_dir)
        self.is_live = is_live
        self.reports_dir = Path(reports_dir) if reports_dir is not None else self.sessions_dir.parent / "reports"
        self._jinja = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

    def session_dir(self, session_id: str) -> Path:
        return self.sessions_dir / session_id

    def session_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / SESSION_FILE

    def new_session_id(self, trigger: SessionTrigger, commit_id: str, now: datetime) -> str:
        base = f"{trigger.id_prefix}-{now.strftime('%Y%m%d-%H%M%S')}-{(commit_id or 'unknown')[:8]}"
        candidate = base
        n = 2
        while self.session_dir(candidate).exists():
            candidate = f"{base}-{n}"
            n += 1
        return candidate

    def create_session(
        self,
        trigger: SessionTrigger,
        branch: str,
        commit_id: str,
        *,
        monitoring_level: str = "standard",
        pid: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> MonitoringSession:
        """Persist a new `monitoring` session.

        Raises DuplicateSessionError if a session for the same commit is still monitoring.
        A `monitoring` record whose owning process is gone is marked failed instead.
        """
        for existing in self.list_sessions(status=SessionStatus.MONITORING):
            if existing.commit_id != commit_id:
                continue
            if self.is_live(existing):
                raise DuplicateSessionError(commit_id, existing.session_id)
            logger.warning("stale_session_released", session_id=existing.session_id, pid=existing.pid)
            self.fail_session(existing.session_id, f"abandoned: owning process {existing.pid} is gone")

        started = now or _utcnow()
        session = MonitoringSession(
            session_id=self.new_session_id(trigger, commit_id, started),
            trigger=trigger,
            branch=branch,
            commit_id=commit_id,
            started_at=started,
            monitoring_level=monitoring_level,
            pid=pid,
        )
        self.save(session)
        logger.info(
            "session_created",
            session_id=session.session_id,
            trigger=trigger.value,
            branch=branch,
            commit=session.short_sha,
        )
        return session

    def save(self, session: MonitoringSession) -> None:
        _write_json_atomic(self.session_path(session.session_id), session_to_document(session))

    def get_session(self, session_id: str) -> MonitoringSession:
        path = self.session_path(session_id)
        if not path.exists():
            raise SessionNotFoundError(session_id)
        try:
            doc = json.loads(path.read_text(encoding="utf-8"))
            return session_from_document(doc)
        except (OSError, ValueError, KeyError) as e:
            raise StoreError(f"cannot read session {session_id}: {e}") from e

    def iter_sessions(self) -> Iterator[MonitoringSession]:
        if not self.sessions_dir.exists():
            return
        for path in sorted(self.sessions_dir.glob(f"*/{SESSION_FILE}")):
            try:
                yield session_from_document(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, KeyError) as e:
                logger.warning("session_unreadable", path=str(path), error=str(e))

    def list_sessions(
        self,
        status: Optional[SessionStatus] = None,
        *,
        trigger: Optional[SessionTrigger] = None,
        branch: Optional[str] = None,
    ) -> list[MonitoringSession]:
        """Newest first."""
        out = [
            s
            for s in self.iter_sessions()
            if (status is None or s.status is status)
            and (trigger is None or s.trigger is trigger)
            and (branch is None or s.branch == branch)
        ]
        out.sort(key=lambda s: s.started_at, reverse=True)
        return out

    def complete_session(
        self,
        session_id: str,
        report: ComprehensiveReport,
        phases: Optional[PhaseResults] = None,
        *,
        now: Optional[datetime] = None,
    ) -> MonitoringSession:
        session = self.get_session(session_id)
        if session.status is SessionStatus.STOPPED:
            # A stop that raced the final write wins.
            logger.info("session_complete_after_stop", session_id=session_id)
            return session
        session.status = SessionStatus.COMPLETED
        session.completed_at = now or _utcnow()
        session.final_report = report.to_dict()
        session.phases = phases
        self.save(session)
        logger.info(
            "session_completed",
            session_id=session_id,
            overall_status=report.overall_status.value,
            final_status=phases.final_status if phases else None,
        )
        return session

    def stop_session(self, session_id: str, reason: Optional[str] = None, *, now: Optional[datetime] = None) -> MonitoringSession:
        session = self.get_session(session_id)
        if not session.is_active:
            return session
        session.status = SessionStatus.STOPPED
        session.completed_at = now or _utcnow()
        session.error = reason
        self.save(session)
        logger.info("session_stopped", session_id=session_id, reason=reason)
        return session

    def fail_session(
        self,
        session_id: str,
        error: str,
        report: Optional[ComprehensiveReport] = None,
        *,
        now: Optional[datetime] = None,
    ) -> MonitoringSession:
        session = self.get_session(session_id)
        if not session.is_active:
            logger.info("session_fail_after_finish", session_id=session_id, status=session.status.value, error=error)
            return session
        session.status = SessionStatus.FAILED
        session.completed_at = now or _utcnow()
        session.error = error
        if report is not None:
            session.final_report = report.to_dict()
        self.save(session)
        logger.error("session_failed", session_id=session_id, error=error)
        return session

    def is_stopped(self, session_id: str) -> bool:
        try:
            return self.get_session(session_id).status is SessionStatus.STOPPED
        except (SessionNotFoundError, StoreError):
            return False

    def delete_session(self, session_id: str) -> None:
        path = self.session_dir(session_id)
        if not path.exists():
            raise SessionNotFoundError(session_id)
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise StoreError(f"cannot delete session {session_id}: {e}") from e
        logger.info("session_deleted", session_id=session_id)

    def report_files(self) -> list[Path]:
        if not self.reports_dir.exists():
            return []
        return sorted(p for p in self.reports_dir.iterdir() if p.is_file())

    def render_summary(
        self,
        report: ComprehensiveReport,
        session: Optional[MonitoringSession] = None,
        *,
        title: str = "Deployment Monitoring Report",
        base_url: Optional[str] = None,
    ) -> str:
        data = report.to_dict()
        status = report.overall_status.value
        return self._jinja.get_template("summary.md.j2").render(
            title=title,
            report=data,
            status=status,
            status_emoji=STATUS_EMOJI.get(status, "❓"),
            session=session_to_document(session) if session else None,
            base_url=base_url,
        )

    def export_report(
        self,
        report: ComprehensiveReport,
        session: Optional[MonitoringSession] = None,
        *,
        base_url: Optional[str] = None,
    ) -> ExportedReport:
        """Write `<stem>.json` and `<stem>.md` to the reports directory."""
        stem = session.session_id if session else f"monitor-report-{report.timestamp.strftime('%Y%m%d-%H%M%S')}"
        json_path = self.reports_dir / f"{stem}.json"
        md_path = self.reports_dir / f"{stem}.md"
        payload = report.to_dict()
        if session is not None:
            payload["session"] = {
                k: v for k, v in session_to_document(session).items() if k != "finalReport"
            }
        _write_json_atomic(json_path, payload)
        markdown = self.render_summary(report, session, base_url=base_url)
        try:
            md_path.write_text(markdown, encoding="utf-8")
        except OSError as e:
            raise StoreError(f"cannot write {md_path}: {e}") from e
        logger.info("report_exported", json_path=str(json_path), markdown_path=str(md_path))
        return ExportedReport(json_path=json_path, markdown_path=md_path, markdown=markdown)

    def write_result_note(self, session: MonitoringSession) -> Path:
        lines = [
            f"session: {session.session_id}",
            f"status: {session.status.value}",
            f"branch: {session.branch}",
            f"commit: {session.short_sha}",
            f"level: {session.monitoring_level}",
        ]
        if session.phases is not None:
            p = session.phases
            comprehensive = "skipped" if p.comprehensive_check is None else ("pass" if p.comprehensive_check else "fail")
            lines += [
                f"final: {p.final_status} ({p.passed}/{p.total} phases, {p.pass_rate}%)",
                f"deployment_check: {'pass' if p.deployment_check else 'fail'}",
                f"health_check: {'pass' if p.health_check else 'fail'}",
                f"comprehensive_check: {comprehensive}",
            ]
        if session.final_report:
            lines.append(f"overall: {session.final_report.get('overallStatus', OverallStatus.UNKNOWN.value)}")
        if session.error:
            lines.append(f"error: {session.error}")
        path = self.session_dir(session.session_id) / RESULT_NOTE_FILE
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError as e:
            raise StoreError(f"cannot write {path}: {e}") from e
        return path
