from __future__ import annotations

import asyncio
import json

import pytest

from conftest import record
from deploy_monitor.health import EndpointHealthChecker
from deploy_monitor.models import AlertType, OverallStatus, SessionStatus, SessionTrigger
from deploy_monitor.notify import AlertDispatcher, DeliveryStatus
from deploy_monitor.runner import MonitorRunner, build_store


SHA = "feedfacecafebeef0000111122223333deadbeef"


def make_runner(cfg, lister) -> MonitorRunner:
    return MonitorRunner(
        cfg,
        lister=lister,
        store=build_store(cfg),
        checker=EndpointHealthChecker(cfg.health),
        dispatcher=AlertDispatcher.from_config(cfg.alerting, cfg.storage),
    )


@pytest.mark.asyncio
async def test_healthy_run_on_feature_branch(make_config, make_lister) -> None:
    cfg = make_config()
    runner = make_runner(cfg, make_lister([[record("Building")], [record("Ready"), record("Ready", 2)]]))

    outcome = await runner.run(trigger=SessionTrigger.MANUAL, branch="feature/login", commit_id=SHA)

    assert outcome.report.overall_status is OverallStatus.HEALTHY
    assert outcome.exit_code == 0
    assert outcome.poll is not None and outcome.poll.poll_count == 2
    s = outcome.session
    assert s.status is SessionStatus.COMPLETED
    assert s.monitoring_level == "standard"
    assert (s.phases.final_status, s.phases.total, s.phases.comprehensive_check) == ("SUCCESS", 2, None)
    assert [d.status for d in outcome.deliveries] == [DeliveryStatus.SKIPPED]

    doc = json.loads(runner.store.session_path(s.session_id).read_text(encoding="utf-8"))
    assert doc["status"] == "completed"
    assert doc["artifacts"]["reportJson"].endswith(f"{s.session_id}.json")
    assert (runner.store.session_dir(s.session_id) / "result.txt").exists()
    assert outcome.exported is not None and outcome.exported.markdown_path.exists()


@pytest.mark.asyncio
async def test_failed_deployment_with_site_up_is_warning(make_config, make_lister) -> None:
    cfg = make_config()
    lister = make_lister(
        [[record("Error"), record("Ready", 2), record("Ready", 3)]],
        build_log_issues=["Module not found: Can't resolve '@/components/FileUpload'"],
    )
    runner = make_runner(cfg, lister)

    outcome = await runner.run(trigger=SessionTrigger.POST_PUSH, branch="main", commit_id=SHA)

    assert lister.inspected == ["app-1.example.app"]
    assert outcome.report.overall_status is OverallStatus.WARNING
    assert outcome.exit_code == 1
    titles = [r.title for r in outcome.report.recommendations]
    assert "Deployment Status Does Not Match Site Health" in titles
    assert "Resolve Missing Modules" in titles

    phases = outcome.session.phases
    assert outcome.session.monitoring_level == "enhanced"
    assert (phases.deployment_check, phases.health_check, phases.comprehensive_check) == (False, True, True)
    assert phases.final_status == "MOSTLY_SUCCESS"

    assert [d.status for d in outcome.deliveries] == [DeliveryStatus.SENT]
    log_path = cfg.storage.path(cfg.alerting.file.path)
    entry = json.loads(log_path.read_text(encoding="utf-8").splitlines()[-1])
    assert entry["status"] == "warning"
    assert entry["metrics"]["sessionId"] == outcome.session.session_id


@pytest.mark.asyncio
async def test_site_down_is_critical(make_config, make_lister) -> None:
    cfg = make_config(endpoints=[{"name": "home", "path": "/boom"}, {"name": "api", "path": "/admin"}])
    runner = make_runner(cfg, make_lister([[record("Error"), record("Error", 2), record("Error", 3)]]))

    outcome = await runner.run(trigger=SessionTrigger.MANUAL, branch="main", commit_id=SHA)

    assert outcome.report.overall_status is OverallStatus.CRITICAL
    assert outcome.exit_code == 2
    assert AlertType.SITE_DOWN in [a.type for a in outcome.report.alerts]
    assert outcome.session.phases.final_status == "FAILED"


@pytest.mark.asyncio
async def test_crash_marks_session_failed(make_config, make_lister) -> None:
    cfg = make_config()
    runner = make_runner(cfg, make_lister([RuntimeError("lister exploded")]))

    outcome = await runner.run(trigger=SessionTrigger.MANUAL, branch="main", commit_id=SHA)

    assert outcome.session.status is SessionStatus.FAILED
    assert "lister exploded" in outcome.session.error
    assert outcome.report.alerts[0].type is AlertType.MONITORING_FAILURE
    assert outcome.exit_code == 2
    assert runner.store.get_session(outcome.session.session_id).status is SessionStatus.FAILED


@pytest.mark.asyncio
async def test_session_stopped_before_execution(make_config, make_lister) -> None:
    cfg = make_config()
    lister = make_lister([[record("Ready")]])
    runner = make_runner(cfg, lister)

    session = runner.open_session(SessionTrigger.MANUAL, "main", SHA)
    runner.store.stop_session(session.session_id, "operator")
    outcome = await runner.execute(session)

    assert outcome.session.status is SessionStatus.STOPPED
    assert outcome.exit_code == 1
    assert lister.calls == 0
    assert outcome.exported is not None


@pytest.mark.asyncio
async def test_stop_persisted_mid_run_is_observed(make_config, make_lister) -> None:
    cfg = make_config()
    lister = make_lister([[record("Building")]])
    runner = make_runner(cfg, lister)
    session = runner.open_session(SessionTrigger.MANUAL, "main", SHA)

    async def stop_later() -> None:
        await asyncio.sleep(0.2)
        runner.store.stop_session(session.session_id, "stopped from another process")

    stopper = asyncio.ensure_future(stop_later())
    outcome = await asyncio.wait_for(runner.execute(session), timeout=10)
    await stopper

    assert outcome.session.status is SessionStatus.STOPPED
    assert outcome.session.error == "stopped from another process"
    assert lister.calls >= 1


@pytest.mark.asyncio
async def test_cancelled_run_is_stopped_with_report(make_config, make_lister) -> None:
    cfg = make_config()
    runner = make_runner(cfg, make_lister([[record("Building")]]))

    task = asyncio.ensure_future(runner.run(trigger=SessionTrigger.MANUAL, branch="main", commit_id=SHA))
    await asyncio.sleep(0.2)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    (session,) = runner.store.list_sessions()
    assert session.status is SessionStatus.STOPPED
    assert session.error == "cancelled"
    doc = json.loads(runner.store.session_path(session.session_id).read_text(encoding="utf-8"))
    assert doc["artifacts"]["reportMarkdown"].endswith(".md")
    assert (runner.store.session_dir(session.session_id) / "result.txt").exists()


class _ExplodingDispatcher(AlertDispatcher):
    async def notify(self, report, **kwargs):
        raise RuntimeError("dispatch crashed")


@pytest.mark.asyncio
async def test_crash_after_completion_keeps_session_completed(make_config, make_lister) -> None:
    cfg = make_config()
    runner = MonitorRunner(
        cfg,
        lister=make_lister([[record("Ready")]]),
        store=build_store(cfg),
        checker=EndpointHealthChecker(cfg.health),
        dispatcher=_ExplodingDispatcher([]),
    )

    outcome = await runner.run(trigger=SessionTrigger.MANUAL, branch="main", commit_id=SHA)

    stored = runner.store.get_session(outcome.session.session_id)
    assert stored.status is SessionStatus.COMPLETED
    assert stored.error is None
    assert stored.final_report["overallStatus"] == "healthy"
    assert outcome.exported is None
