from __future__ import annotations

import asyncio
import math

import pytest

from conftest import lister_error, record
from deploy_monitor.cancellation import StopSignal
from deploy_monitor.config import PollerConfig
from deploy_monitor.errors import SessionStopped
from deploy_monitor.models import PollOutcome
from deploy_monitor.poller import DeploymentPoller, backoff_schedule


def _poller(lister, clock, **cfg) -> DeploymentPoller:
    return DeploymentPoller(lister, PollerConfig(**cfg), clock=clock, sleep=clock.sleep)


@pytest.mark.asyncio
async def test_poll_succeeds_once_latest_is_ready(make_lister, fake_clock) -> None:
    lister = make_lister([[record("Building")], [record("Building")], [record("Ready"), record("Error", 2)]])
    result = await _poller(lister, fake_clock).poll(max_wait=600)

    assert result.outcome is PollOutcome.SUCCESS
    assert result.poll_count == 3
    assert result.deployment is not None and result.deployment.status.value == "Ready"
    assert len(result.deployments) == 2
    assert fake_clock.sleeps == pytest.approx([10.0, 12.0])


@pytest.mark.asyncio
async def test_poll_reports_failed_deployment(make_lister, fake_clock) -> None:
    lister = make_lister([[record("Queued")], [record("Error")]])
    result = await _poller(lister, fake_clock).poll(max_wait=600)

    assert result.outcome is PollOutcome.FAILED
    assert result.poll_count == 2
    assert not result.success


@pytest.mark.asyncio
async def test_poll_timeout_respects_budget_and_cap(make_lister, fake_clock) -> None:
    lister = make_lister([[record("Building")]])
    poller = _poller(
        lister,
        fake_clock,
        base_interval_seconds=8,
        backoff_multiplier=1.5,
        max_interval_seconds=16,
    )
    result = await poller.poll(max_wait=60)

    assert result.outcome is PollOutcome.TIMEOUT
    assert fake_clock.sleeps == [8.0, 12.0, 16.0, 16.0, 8.0]
    assert sum(fake_clock.sleeps) == 60.0
    assert all(s <= 16.0 for s in fake_clock.sleeps)
    assert result.poll_count == 5
    assert result.poll_count <= math.ceil(60 / 8)


@pytest.mark.asyncio
async def test_poll_default_backoff_never_exceeds_budget(make_lister, fake_clock) -> None:
    lister = make_lister([[record("Building")]])
    result = await _poller(lister, fake_clock).poll(max_wait=600)

    assert result.outcome is PollOutcome.TIMEOUT
    assert sum(fake_clock.sleeps) <= 600.0 + 1e-6
    assert max(fake_clock.sleeps) <= 60.0
    assert result.poll_count <= math.ceil(600 / 10) + 1


@pytest.mark.asyncio
async def test_unavailable_lister_waits_fallback_and_succeeds(make_lister, fake_clock) -> None:
    lister = make_lister(available=False)
    poller = _poller(lister, fake_clock)

    result = await poller.poll(max_wait=600)
    assert result.outcome is PollOutcome.SUCCESS
    assert result.fallback is True
    assert result.poll_count == 0
    assert fake_clock.sleeps == [180.0]
    assert lister.calls == 0

    fake_clock.sleeps.clear()
    await poller.poll(max_wait=100)
    assert fake_clock.sleeps == [50.0]


@pytest.mark.asyncio
async def test_consecutive_lister_failures_abort(make_lister, fake_clock) -> None:
    lister = make_lister([lister_error("boom")])
    result = await _poller(lister, fake_clock).poll(max_wait=6000)

    assert result.outcome is PollOutcome.FAILED
    assert result.poll_count == 5
    assert "5 consecutive failures" in result.reason
    assert "boom" in result.reason


@pytest.mark.asyncio
async def test_building_resets_failure_count(make_lister, fake_clock) -> None:
    lister = make_lister(
        [
            lister_error(),
            lister_error(),
            [record("Unknown")],
            [record("Building")],
            lister_error(),
            lister_error(),
            [record("Ready")],
        ]
    )
    result = await _poller(lister, fake_clock, max_consecutive_failures=4).poll(max_wait=6000)

    assert result.outcome is PollOutcome.SUCCESS
    assert result.poll_count == 7


@pytest.mark.asyncio
async def test_unknown_status_counts_as_failure(make_lister, fake_clock) -> None:
    lister = make_lister([[record("Unknown")]])
    result = await _poller(lister, fake_clock, max_consecutive_failures=3).poll(max_wait=6000)

    assert result.outcome is PollOutcome.FAILED
    assert result.poll_count == 3
    assert "unrecognised deployment status" in result.reason


@pytest.mark.asyncio
async def test_empty_listing_does_not_count_as_failure(make_lister, fake_clock) -> None:
    lister = make_lister([[]])
    result = await _poller(lister, fake_clock, max_consecutive_failures=2).poll(max_wait=100)

    assert result.outcome is PollOutcome.TIMEOUT
    assert result.poll_count > 2
    assert result.deployment is None


@pytest.mark.asyncio
async def test_stop_interrupts_backoff_sleep_promptly(make_lister) -> None:
    lister = make_lister([[record("Building")]])
    poller = DeploymentPoller(lister, PollerConfig(base_interval_seconds=30, max_interval_seconds=60))
    stop = StopSignal(probe_interval=0.05)

    loop = asyncio.get_running_loop()
    loop.call_later(0.1, stop.set, "operator stop")
    started = loop.time()
    with pytest.raises(SessionStopped):
        await poller.poll(max_wait=600, stop=stop)
    assert loop.time() - started < 5
    assert lister.calls == 1


@pytest.mark.asyncio
async def test_externally_persisted_stop_is_observed(make_lister, fake_clock) -> None:
    flag = {"stopped": False}

    async def sleep_then_flag(seconds: float) -> None:
        await fake_clock.sleep(seconds)
        flag["stopped"] = True

    lister = make_lister([[record("Building")]])
    poller = DeploymentPoller(lister, PollerConfig(), clock=fake_clock, sleep=sleep_then_flag)
    with pytest.raises(SessionStopped):
        await poller.poll(max_wait=600, stop=StopSignal(lambda: flag["stopped"]))
    assert lister.calls == 1


def test_backoff_schedule() -> None:
    cfg = PollerConfig(base_interval_seconds=8, backoff_multiplier=1.5, max_interval_seconds=16)
    assert backoff_schedule(cfg, 60) == [8.0, 12.0, 16.0, 16.0, 8.0]
    assert backoff_schedule(cfg, 5) == [5.0]
    assert backoff_schedule(cfg, 0) == []


def test_fallback_wait_stays_below_budget(make_lister) -> None:
    poller = DeploymentPoller(make_lister(), PollerConfig(fallback_wait_seconds=180))
    assert poller.fallback_wait(600) == 180.0
    assert poller.fallback_wait(100) == 50.0
    assert poller.fallback_wait(10) < 10
