"""Session controller: start, inspect, stop and garbage-collect monitoring sessions.

Sessions started in this process are tracked as asyncio tasks. Sessions started by
other processes are only known through the store; their liveness is judged by the
recorded pid.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

import structlog

from .cancellation import StopSignal
from .errors import SessionNotFoundError
from .models import MonitoringSession, SessionStatus, SessionTrigger
from .runner import MonitorRunner, RunOutcome
from .store import pid_alive


logger = structlog.get_logger(__name__)


class SessionState(str, Enum):
    ACTIVE = "active"
    STALE = "stale"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class SessionView:
    session: MonitoringSession
    state: SessionState


@dataclass(frozen=True)
class CleanupResult:
    sessions_removed: tuple[str, ...] = ()
    reports_removed: tuple[str, ...] = ()


class SessionController:
    def __init__(self, runner: MonitorRunner) -> None:
        self.runner = runner
        self.store = runner.store
        self._tasks: dict[str, tuple[asyncio.Task, StopSignal]] = {}

    def start(self, trigger: SessionTrigger, branch: str, commit_id: str) -> MonitoringSession:
        """Create a session and run it in the background. Raises DuplicateSessionError."""
        session = self.runner.open_session(trigger, branch, commit_id)
        signal = StopSignal()
        task = asyncio.ensure_future(self.runner.execute(session, stop=signal))
        self._tasks[session.session_id] = (task, signal)
        task.add_done_callback(lambda _t, sid=session.session_id: self._tasks.pop(sid, None))
        logger.info("session_task_started", session_id=session.session_id)
        return session

    async def wait(self, session_id: str) -> RunOutcome:
        entry = self._tasks.get(session_id)
        if entry is None:
            raise SessionNotFoundError(session_id)
        return await entry[0]

    def is_running(self, session: MonitoringSession) -> bool:
        entry = self._tasks.get(session.session_id)
        if entry is not None:
            return not entry[0].done()
        if session.pid == os.getpid():
            # Recorded by this process but no task is tracking it any more.
            return False
        return pid_alive(session.pid)

    def classify(self, session: MonitoringSession) -> SessionState:
        if session.status is SessionStatus.MONITORING:
            return SessionState.ACTIVE if self.is_running(session) else SessionState.STALE
        return SessionState(session.status.value)

    def status(self) -> list[SessionView]:
        return [SessionView(s, self.classify(s)) for s in self.store.list_sessions()]

    def stop(self, session_id: str, reason: str = "stopped by user") -> MonitoringSession:
        """Mark the session stopped and signal its task; the task unwinds at its next checkpoint."""
        session = self.store.stop_session(session_id, reason)
        entry = self._tasks.get(session_id)
        if entry is not None:
            entry[1].set(reason)
        return session

    def kill_all(self, reason: str = "kill-all") -> list[str]:
        stopped: list[str] = []
        for session in self.store.list_sessions(status=SessionStatus.MONITORING):
            self.stop(session.session_id, reason)
            stopped.append(session.session_id)
        for session_id, (task, signal) in list(self._tasks.items()):
            if not task.done() and session_id not in stopped:
                signal.set(reason)
                stopped.append(session_id)
        logger.info("sessions_killed", count=len(stopped))
        return stopped

    async def drain(self) -> None:
        tasks = [task for task, _ in self._tasks.values()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def clean(self, age_days: Optional[float] = None, *, now: Optional[datetime] = None) -> CleanupResult:
        """Delete session and report documents older than `age_days`.

        Sessions that are still actively running are kept regardless of age.
        """
        days = float(age_days if age_days is not None else self.runner.cfg.storage.retention_days)
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)

        removed_sessions: list[str] = []
        for session in self.store.list_sessions():
            if session.started_at >= cutoff:
                continue
            if self.classify(session) is SessionState.ACTIVE:
                continue
            self.store.delete_session(session.session_id)
            removed_sessions.append(session.session_id)

        removed_reports: list[str] = []
        cutoff_ts = cutoff.timestamp()
        for path in self.store.report_files():
            if path.stat().st_mtime < cutoff_ts:
                path.unlink()
                removed_reports.append(path.name)

        logger.info(
            "cleanup_complete",
            age_days=days,
            sessions_removed=len(removed_sessions),
            reports_removed=len(removed_reports),
        )
        return CleanupResult(tuple(removed_sessions), tuple(removed_reports))
