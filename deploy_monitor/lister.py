"""Deployment lister: runs the platform CLI and parses its listings into DeploymentRecords."""

from __future__ import annotations

import asyncio
from typing import Protocol

import structlog

from .cancellation import StopSignal
from .config import ListerConfig
from .errors import ParseError, SessionStopped, TransportError
from .models import DeploymentRecord, DeploymentStatus


logger = structlog.get_logger(__name__)

TABLE_FOOTER = "To display the next page"
BUILD_ISSUE_MARKERS = ("Error", "Failed", "⨯")


class DeploymentLister(Protocol):
    async def is_available(self) -> bool: ...

    async def list_deployments(self, stop: StopSignal | None = None) -> list[DeploymentRecord]: ...

    async def build_issues(self, deployment: DeploymentRecord, stop: StopSignal | None = None) -> list[str]: ...


def _identifier_from_url(url: str) -> str:
    s = url.strip()
    for prefix in ("https://", "http://"):
        if s.startswith(prefix):
            s = s[len(prefix):]
    return s.rstrip("/")


def _tokens(line: str) -> list[str]:
    # The status bullet may be printed as its own column.
    return [t for t in line.strip().split() if t != "●"]


def parse_table_listing(output: str) -> list[DeploymentRecord]:
    """Parse the header-table listing (Age, Deployment, Status, Environment, Duration, Username).

    Lines before the header, separator rules and rows with too few columns are ignored;
    parsing stops at the pagination footer.
    """
    records: list[DeploymentRecord] = []
    in_table = False
    for line in (output or "").splitlines():
        if TABLE_FOOTER in line:
            break
        if not in_table:
            if "Age" in line and "Deployment" in line and "Status" in line:
                in_table = True
            continue
        if not line.strip() or "─" in line:
            continue
        parts = _tokens(line)
        if len(parts) < 5:
            continue
        age, url, status, environment = parts[0], parts[1], parts[2], parts[3]
        records.append(
            DeploymentRecord(
                identifier=_identifier_from_url(url),
                url=url,
                status=DeploymentStatus.parse(status),
                age=age,
                environment=environment,
            )
        )
    return records


def parse_compact_listing(output: str) -> list[DeploymentRecord]:
    """Parse `url status age` lines; anything without a URL and a known status is skipped."""
    records: list[DeploymentRecord] = []
    for line in (output or "").splitlines():
        parts = _tokens(line)
        if len(parts) < 3 or not parts[0].startswith("http"):
            continue
        status = DeploymentStatus.parse(parts[1])
        if status is DeploymentStatus.UNKNOWN:
            continue
        records.append(
            DeploymentRecord(
                identifier=_identifier_from_url(parts[0]),
                url=parts[0],
                status=status,
                age=parts[2],
            )
        )
    return records


PARSERS = {
    "table": parse_table_listing,
    "compact": parse_compact_listing,
}


def parse_listing(output: str, output_format: str) -> list[DeploymentRecord]:
    parser = PARSERS.get(str(output_format or "").strip().lower())
    if parser is None:
        raise ParseError(f"unsupported listing format: {output_format!r}")
    return parser(output)


def extract_build_issues(log_text: str) -> list[str]:
    issues: list[str] = []
    for line in (log_text or "").splitlines():
        if any(marker in line for marker in BUILD_ISSUE_MARKERS):
            s = line.strip()
            if s:
                issues.append(s)
    return issues


async def run_command(
    cmd: list[str],
    *,
    timeout_seconds: float,
    stop: StopSignal | None = None,
) -> str:
    """Run an external command and return stdout.

    Raises TransportError when the binary is missing, the command fails or times out,
    and SessionStopped when `stop` fires first. The process is killed in both cases.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise TransportError(f"cannot run {cmd[0]}: {e}") from e

    communicate = asyncio.ensure_future(proc.communicate())
    waiters: set[asyncio.Future] = {communicate}
    stop_waiter: asyncio.Future | None = None
    if stop is not None:
        stop_waiter = asyncio.ensure_future(stop.wait())
        waiters.add(stop_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        _kill(proc)
        communicate.cancel()
        raise
    finally:
        if stop_waiter is not None and not stop_waiter.done():
            stop_waiter.cancel()

    if communicate not in done:
        _kill(proc)
        communicate.cancel()
        if stop_waiter is not None and stop_waiter in done:
            raise SessionStopped(stop.reason if stop else "stopped")
        raise TransportError(f"{' '.join(cmd)} timed out after {timeout_seconds:.0f}s")

    out_b, err_b = communicate.result()
    out = (out_b or b"").decode("utf-8", errors="replace")
    err = (err_b or b"").decode("utf-8", errors="replace")
    if proc.returncode != 0:
        detail = (err.strip() or out.strip())[:300]
        raise TransportError(f"{' '.join(cmd)} exited {proc.returncode}: {detail}")
    return out


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass


class VercelCliLister:
    """Lists deployments through the Vercel CLI."""

    def __init__(self, cfg: ListerConfig) -> None:
        self.cfg = cfg

    def _scope_args(self) -> list[str]:
        return ["--scope", self.cfg.scope] if self.cfg.scope else []

    def list_command(self) -> list[str]:
        if self.cfg.output_format == "compact":
            return [self.cfg.binary, "ls", self.cfg.project, "--limit", str(self.cfg.limit), *self._scope_args()]
        return [self.cfg.binary, "list", self.cfg.project, *self._scope_args()]

    async def is_available(self) -> bool:
        probes = [[self.cfg.binary, "--version"]]
        if self.cfg.require_auth:
            probes.append([self.cfg.binary, "whoami", *self._scope_args()])
        for cmd in probes:
            try:
                await run_command(cmd, timeout_seconds=self.cfg.timeout_seconds)
            except TransportError as e:
                logger.warning("lister_unavailable", command=" ".join(cmd[1:]), error=str(e))
                return False
        return True

    async def list_deployments(self, stop: StopSignal | None = None) -> list[DeploymentRecord]:
        output = await run_command(self.list_command(), timeout_seconds=self.cfg.timeout_seconds, stop=stop)
        records = parse_listing(output, self.cfg.output_format)
        logger.debug("deployments_listed", count=len(records), project=self.cfg.project)
        return records[: max(1, int(self.cfg.limit))]

    async def build_issues(self, deployment: DeploymentRecord, stop: StopSignal | None = None) -> list[str]:
        cmd = [self.cfg.binary, "inspect", "--logs", deployment.url, *self._scope_args()]
        try:
            output = await run_command(cmd, timeout_seconds=self.cfg.timeout_seconds, stop=stop)
        except TransportError as e:
            logger.warning("build_log_unavailable", deployment=deployment.identifier, error=str(e))
            return []
        return extract_build_issues(output)
