"""Endpoint health checker: concurrent HTTP probes with latency classification."""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from typing import Iterable, Optional
from urllib.parse import urljoin

import httpx
import structlog

from .cancellation import StopSignal
from .config import EndpointConfig, HealthConfig
from .models import HealthProbeResult, HealthSummary, PerformanceRating


logger = structlog.get_logger(__name__)


def classify_latency(latency_ms: float, fast_ms: float, acceptable_ms: float) -> PerformanceRating:
    if latency_ms < fast_ms:
        return PerformanceRating.FAST
    if latency_ms < acceptable_ms:
        return PerformanceRating.ACCEPTABLE
    return PerformanceRating.SLOW


def endpoint_url(base_url: str, path: str) -> str:
    base = str(base_url or "").strip()
    return urljoin(base.rstrip("/") + "/", str(path or "").lstrip("/"))


async def probe_endpoint(
    client: httpx.AsyncClient,
    base_url: str,
    endpoint: EndpointConfig,
    *,
    timeout_seconds: float,
    fast_ms: float,
    acceptable_ms: float,
) -> HealthProbeResult:
    """Issue one probe. Transport failures come back as observed status 0, never raised."""
    url = endpoint_url(base_url, endpoint.path)
    started = time.perf_counter()
    status = 0
    err = None
    try:
        resp = await client.request(
            endpoint.method,
            url,
            json=endpoint.body,
            timeout=float(timeout_seconds),
            follow_redirects=False,
        )
        status = int(resp.status_code)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        err = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
    latency_ms = (time.perf_counter() - started) * 1000.0

    expected = tuple(int(s) for s in endpoint.expected_status)
    if err is None and status not in expected:
        err = f"unexpected_status: {status} not in {list(expected)}"

    matched = status != 0 and status in expected
    result = HealthProbeResult(
        name=endpoint.name,
        target_path=endpoint.path,
        method=endpoint.method,
        expected_statuses=expected,
        observed_status=status,
        latency_ms=latency_ms,
        optional=endpoint.optional,
        error_detail=err,
        performance=classify_latency(latency_ms, fast_ms, acceptable_ms) if matched else None,
    )
    if result.matched:
        logger.debug("probe_ok", endpoint=endpoint.name, status=status, latency_ms=round(latency_ms, 1))
    elif result.optional:
        logger.info("probe_optional_failed", endpoint=endpoint.name, status=status, error=err)
    else:
        logger.warning("probe_failed", endpoint=endpoint.name, status=status, error=err)
    return result


def summarize(results: Iterable[HealthProbeResult]) -> HealthSummary:
    """Aggregate probe results. Latency figures cover matched probes only."""
    rows = tuple(results)
    matched = [r for r in rows if r.matched]
    skipped = sum(1 for r in rows if r.skipped)
    failed = sum(1 for r in rows if not r.success)
    latencies = [r.latency_ms for r in matched]
    statuses = Counter(r.observed_status for r in rows)
    return HealthSummary(
        total=len(rows),
        passed=len(matched),
        failed=failed,
        skipped=skipped,
        average_latency_ms=(sum(latencies) / len(latencies)) if latencies else 0.0,
        fastest_ms=min(latencies) if latencies else None,
        slowest_ms=max(latencies) if latencies else None,
        fast_endpoints=sum(1 for r in matched if r.performance is PerformanceRating.FAST),
        slow_endpoints=sum(1 for r in matched if r.performance is PerformanceRating.SLOW),
        status_counts=tuple(sorted(statuses.items())),
        results=rows,
    )


class EndpointHealthChecker:
    def __init__(self, cfg: HealthConfig, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self.cfg = cfg
        self._client = client

    async def check(
        self,
        endpoints: Optional[list[EndpointConfig]] = None,
        *,
        stop: Optional[StopSignal] = None,
    ) -> list[HealthProbeResult]:
        """Probe every endpoint (at most `concurrency` in flight); results keep input order."""
        targets = list(endpoints if endpoints is not None else self.cfg.endpoints)
        if not targets:
            return []

        if self._client is not None:
            return await self._check_with(self._client, targets, stop)
        async with httpx.AsyncClient(headers={"User-Agent": self.cfg.user_agent}) as client:
            return await self._check_with(client, targets, stop)

    async def _check_with(
        self,
        client: httpx.AsyncClient,
        targets: list[EndpointConfig],
        stop: Optional[StopSignal],
    ) -> list[HealthProbeResult]:
        sem = asyncio.Semaphore(self.cfg.concurrency)

        async def _one(endpoint: EndpointConfig) -> HealthProbeResult:
            async with sem:
                return await probe_endpoint(
                    client,
                    self.cfg.base_url,
                    endpoint,
                    timeout_seconds=self.cfg.timeout_seconds,
                    fast_ms=self.cfg.fast_ms,
                    acceptable_ms=self.cfg.acceptable_ms,
                )

        probes = asyncio.gather(*(_one(e) for e in targets))
        if stop is not None:
            results = await stop.guard(probes)
        else:
            results = await probes
        return list(results)

    async def run(
        self,
        endpoints: Optional[list[EndpointConfig]] = None,
        *,
        stop: Optional[StopSignal] = None,
    ) -> HealthSummary:
        summary = summarize(await self.check(endpoints, stop=stop))
        rate = summary.success_rate
        logger.info(
            "health_check_complete",
            base_url=self.cfg.base_url,
            passed=summary.passed,
            failed=summary.failed,
            skipped=summary.skipped,
            success_rate=round(rate, 1) if rate is not None else None,
            average_latency_ms=round(summary.average_latency_ms, 1),
        )
        return summary
