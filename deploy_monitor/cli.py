from __future__ import annotations

import argparse
import asyncio
import inspect
import signal
import subprocess
from collections import deque
from pathlib import Path
from typing import Optional, Sequence

import structlog

from .analyzer import analyze
from .config import MonitorConfig, load_config
from .controller import SessionController, SessionState
from .errors import ConsecutiveFailureLimitExceeded, DuplicateSessionError, SessionNotFoundError
from .health import EndpointHealthChecker
from .logging_setup import configure_logging
from .models import DeploymentSummary, SessionTrigger
from .runner import EXIT_CODES, MonitorRunner
from .supervisor import ContinuousSupervisor


logger = structlog.get_logger(__name__)

DEFAULT_LOG_LINES = 50


def _git(*args: str) -> Optional[str]:
    try:
        result = subprocess.run(["git", *args], capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.SubprocessError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def current_branch() -> str:
    return _git("rev-parse", "--abbrev-ref", "HEAD") or "unknown"


def current_commit() -> str:
    return _git("rev-parse", "HEAD") or "unknown"


def tail_lines(path: Path, lines: int = DEFAULT_LOG_LINES) -> list[str]:
    if not path.exists():
        return []
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=max(0, int(lines)))]


def _install_signal_handlers(on_signal) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal)
        except (NotImplementedError, RuntimeError):
            pass


async def cmd_start(cfg: MonitorConfig, args: argparse.Namespace) -> int:
    controller = SessionController(MonitorRunner.from_config(cfg))
    branch = args.branch or current_branch()
    commit = args.commit or current_commit()
    trigger = SessionTrigger(args.trigger)
    try:
        session = controller.start(trigger, branch, commit)
    except DuplicateSessionError as e:
        print(f"Already monitoring {commit[:8]}: {e.existing_session_id}")
        return 1

    _install_signal_handlers(lambda: controller.stop(session.session_id, "interrupted"))
    print(f"Monitoring session {session.session_id} ({branch}@{session.short_sha}, {session.monitoring_level})")
    outcome = await controller.wait(session.session_id)

    s = outcome.session
    print(f"Status: {s.status.value}  Overall: {outcome.report.overall_status.value}  Severity: {outcome.report.severity.value}")
    if s.phases is not None:
        print(f"Final: {s.phases.final_status} ({s.phases.passed}/{s.phases.total} phases, {s.phases.pass_rate}%)")
    if outcome.exported is not None:
        print(f"Report: {outcome.exported.markdown_path}")
    for alert in outcome.report.alerts:
        print(f"  ALERT [{alert.severity.value}] {alert.title}: {alert.message}")
    return outcome.exit_code


def cmd_status(cfg: MonitorConfig, args: argparse.Namespace) -> int:
    controller = SessionController(MonitorRunner.from_config(cfg))
    views = controller.status()
    counts = {state: 0 for state in SessionState}
    for view in views:
        counts[view.state] += 1

    for state in (SessionState.ACTIVE, SessionState.STALE):
        rows = [v for v in views if v.state is state]
        if rows:
            print(f"{state.value.upper()} sessions:")
            for v in rows:
                s = v.session
                print(f"  {s.session_id}  {s.branch}@{s.short_sha}  started {s.started_at.isoformat()}  pid={s.pid}")
    done = [v for v in views if v.state not in (SessionState.ACTIVE, SessionState.STALE)][: args.limit]
    if done:
        print("Recent sessions:")
        for v in done:
            s = v.session
            final = s.phases.final_status if s.phases else "-"
            print(f"  {s.session_id}  {v.state.value:<9}  {final:<14}  {s.branch}@{s.short_sha}")
    print("Summary: " + ", ".join(f"{counts[state]} {state.value}" for state in SessionState))
    return 0


def cmd_stop(cfg: MonitorConfig, args: argparse.Namespace) -> int:
    controller = SessionController(MonitorRunner.from_config(cfg))
    try:
        session = controller.stop(args.session_id)
    except SessionNotFoundError:
        print(f"No such session: {args.session_id}")
        return 1
    print(f"{session.session_id}: {session.status.value}")
    return 0


def cmd_kill_all(cfg: MonitorConfig, args: argparse.Namespace) -> int:
    controller = SessionController(MonitorRunner.from_config(cfg))
    stopped = controller.kill_all()
    print(f"Stopped {len(stopped)} session(s)")
    for session_id in stopped:
        print(f"  {session_id}")
    return 0


def cmd_clean(cfg: MonitorConfig, args: argparse.Namespace) -> int:
    controller = SessionController(MonitorRunner.from_config(cfg))
    result = controller.clean(args.age_days)
    print(f"Removed {len(result.sessions_removed)} session(s) and {len(result.reports_removed)} report file(s)")
    return 0


def cmd_logs(cfg: MonitorConfig, args: argparse.Namespace) -> int:
    path = cfg.storage.log_path
    lines = tail_lines(path, args.lines)
    if not lines:
        print(f"No log entries at {path}")
        return 0
    print("\n".join(lines))
    return 0


async def cmd_supervise(cfg: MonitorConfig, args: argparse.Namespace) -> int:
    supervisor = ContinuousSupervisor(cfg, MonitorRunner.from_config(cfg))
    _install_signal_handlers(supervisor.stop)
    try:
        metrics = await supervisor.run(max_cycles=args.max_cycles)
    except ConsecutiveFailureLimitExceeded as e:
        print(f"Supervisor halted: {e}")
        print(f"Report: {supervisor.report_path}")
        return 2
    print(
        f"Supervisor stopped after {metrics.total_cycles} cycle(s); "
        f"uptime {metrics.uptime_percent:.1f}%  report: {supervisor.report_path}"
    )
    return 0


async def cmd_check(cfg: MonitorConfig, args: argparse.Namespace) -> int:
    if args.base_url:
        cfg = cfg.model_copy(update={"health": cfg.health.model_copy(update={"base_url": args.base_url})})
    health = await EndpointHealthChecker(cfg.health).run()
    for r in health.results:
        mark = "ok" if r.matched else ("skip" if r.skipped else "FAIL")
        perf = r.performance.value if r.performance else "-"
        print(f"  {mark:<4}  {r.method:<6} {r.target_path:<28} {r.observed_status:>3}  {r.latency_ms:7.0f}ms  {perf}")
    report = analyze(DeploymentSummary(), health, cfg.thresholds)
    rate = health.success_rate
    print(
        f"Passed {health.passed}, failed {health.failed}, skipped {health.skipped}"
        + (f" ({rate:.1f}%)" if rate is not None else "")
        + f"; overall {report.overall_status.value}"
    )
    return EXIT_CODES[report.overall_status]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="deploy-monitor", description="Deployment & health monitoring")
    parser.add_argument("--config", default=None, help="Path to YAML config (default: DEPLOY_MONITOR_CONFIG or packaged)")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("start", help="Run one monitoring session in the foreground")
    p.add_argument("branch", nargs="?", default=None)
    p.add_argument("commit", nargs="?", default=None)
    p.add_argument(
        "--trigger",
        choices=[t.value for t in SessionTrigger],
        default=SessionTrigger.MANUAL.value,
    )

    p = sub.add_parser("status", help="List active, stale and recent sessions")
    p.add_argument("--limit", type=int, default=10, help="Recent sessions to show")

    p = sub.add_parser("stop", help="Stop a monitoring session")
    p.add_argument("session_id")

    sub.add_parser("kill-all", help="Stop every active session")

    p = sub.add_parser("clean", help="Remove old session and report documents")
    p.add_argument("age_days", nargs="?", type=float, default=None)

    p = sub.add_parser("logs", help="Show the tail of the monitoring log")
    p.add_argument("lines", nargs="?", type=int, default=DEFAULT_LOG_LINES)

    p = sub.add_parser("supervise", help="Run the continuous supervisor")
    p.add_argument("--max-cycles", type=int, default=None)

    p = sub.add_parser("check", help="Probe the endpoint list once, without a session")
    p.add_argument("--base-url", default=None)

    return parser


COMMANDS = {
    "start": cmd_start,
    "status": cmd_status,
    "stop": cmd_stop,
    "kill-all": cmd_kill_all,
    "clean": cmd_clean,
    "logs": cmd_logs,
    "supervise": cmd_supervise,
    "check": cmd_check,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = load_config(args.config)
    if args.log_level:
        cfg = cfg.model_copy(update={"log_level": args.log_level})
    configure_logging(cfg.log_level, cfg.storage.log_path)

    handler = COMMANDS[args.command]
    if inspect.iscoroutinefunction(handler):
        return asyncio.run(handler(cfg, args))
    return handler(cfg, args)


if __name__ == "__main__":
    raise SystemExit(main())
