"""Deployment status poller with capped exponential backoff and a wall-clock deadline."""

from __future__ import annotations

import time
from typing import Awaitable, Callable, Optional

import structlog

from .cancellation import StopSignal
from .config import PollerConfig
from .errors import ConsecutiveFailureLimitExceeded, TransportError
from .lister import DeploymentLister
from .models import DeploymentRecord, DeploymentStatus, PollOutcome, PollResult


logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


def backoff_schedule(cfg: PollerConfig, max_wait: float) -> list[float]:
    """Sleeps the poller would take if every poll were non-terminal (clipped to `max_wait`)."""
    out: list[float] = []
    interval = float(cfg.base_interval_seconds)
    remaining = float(max_wait)
    while remaining > 0:
        step = min(interval, remaining)
        out.append(step)
        remaining -= step
        interval = min(interval * cfg.backoff_multiplier, cfg.max_interval_seconds)
    return out


class DeploymentPoller:
    def __init__(
        self,
        lister: DeploymentLister,
        cfg: PollerConfig,
        *,
        clock: Clock = time.monotonic,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        self.lister = lister
        self.cfg = cfg
        self._clock = clock
        self._sleep = sleep

    async def _pause(self, seconds: float, stop: StopSignal) -> None:
        if self._sleep is not None:
            await self._sleep(seconds)
        else:
            await stop.sleep(seconds)
        stop.checkpoint()

    def fallback_wait(self, max_wait: float) -> float:
        # Must stay strictly below the overall budget.
        return max(0.0, min(float(self.cfg.fallback_wait_seconds), float(max_wait) * 0.5))

    async def poll(self, *, max_wait: float | None = None, stop: StopSignal | None = None) -> PollResult:
        """Poll the lister until the newest deployment is terminal, the budget runs out,
        or the lister fails `max_consecutive_failures` times in a row.

        Raises SessionStopped if `stop` fires; every other failure is returned as data.
        """
        stop = stop or StopSignal()
        budget = float(max_wait if max_wait is not None else self.cfg.max_wait_seconds)
        started = self._clock()
        deadline = started + budget

        stop.checkpoint()
        if not await self.lister.is_available():
            wait = self.fallback_wait(budget)
            logger.warning("poll_fallback_wait", wait_seconds=wait)
            await self._pause(wait, stop)
            return PollResult(
                outcome=PollOutcome.SUCCESS,
                poll_count=0,
                fallback=True,
                reason=f"Deployment lister unavailable; waited {wait:.0f}s",
                elapsed_seconds=self._clock() - started,
            )

        interval = float(self.cfg.base_interval_seconds)
        poll_count = 0
        failures = 0
        last_error: str | None = None
        latest: DeploymentRecord | None = None
        records: list[DeploymentRecord] = []

        while True:
            stop.checkpoint()
            if self._clock() >= deadline:
                break

            poll_count += 1
            try:
                records = await self.lister.list_deployments(stop)
            except TransportError as e:
                failures += 1
                last_error = str(e)
                logger.warning("poll_lister_error", poll_count=poll_count, failures=failures, error=last_error)
            else:
                if not records:
                    logger.info("poll_no_deployments", poll_count=poll_count)
                else:
                    latest = records[0]
                    status = latest.status
                    logger.info(
                        "poll_status",
                        poll_count=poll_count,
                        deployment=latest.identifier,
                        status=status.value,
                    )
                    if status is DeploymentStatus.READY:
                        return self._result(PollOutcome.SUCCESS, poll_count, latest, records, started, "Deployment ready")
                    if status is DeploymentStatus.ERROR:
                        return self._result(PollOutcome.FAILED, poll_count, latest, records, started, "Deployment failed")
                    if status is DeploymentStatus.UNKNOWN:
                        failures += 1
                        last_error = f"unrecognised deployment status for {latest.identifier}"
                    else:
                        failures = 0

            if failures >= self.cfg.max_consecutive_failures:
                err = ConsecutiveFailureLimitExceeded(failures, self.cfg.max_consecutive_failures, last_error)
                logger.error("poll_aborted", poll_count=poll_count, error=str(err))
                return self._result(PollOutcome.FAILED, poll_count, latest, records, started, str(err))

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            await self._pause(min(interval, remaining), stop)
            interval = min(interval * self.cfg.backoff_multiplier, self.cfg.max_interval_seconds)

        logger.warning("poll_timeout", poll_count=poll_count, max_wait_seconds=budget)
        return self._result(
            PollOutcome.TIMEOUT,
            poll_count,
            latest,
            records,
            started,
            f"Deployment not terminal after {budget:.0f}s",
        )

    def _result(
        self,
        outcome: PollOutcome,
        poll_count: int,
        latest: DeploymentRecord | None,
        records: list[DeploymentRecord],
        started: float,
        reason: str,
    ) -> PollResult:
        return PollResult(
            outcome=outcome,
            poll_count=poll_count,
            deployment=latest,
            deployments=tuple(records),
            reason=reason,
            elapsed_seconds=self._clock() - started,
        )
