from __future__ import annotations

import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable

import pytest

from deploy_monitor.config import (
    AlertingConfig,
    ChannelConfig,
    EndpointConfig,
    FileChannelConfig,
    HealthConfig,
    MonitorConfig,
    PollerConfig,
    StorageConfig,
    SupervisorConfig,
)
from deploy_monitor.errors import TransportError
from deploy_monitor.models import DeploymentRecord, DeploymentStatus


class _Handler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def _reply(self, status: int, body: str = "", headers: dict[str, str] | None = None) -> None:
        body_bytes = body.encode("utf-8")
        self.send_response(status)
        for k, v in (headers or {}).items():
            self.send_header(k, v)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body_bytes)))
        self.end_headers()
        self.wfile.write(body_bytes)

    def do_GET(self) -> None:  # noqa: N802
        if self.path == "/slow":
            time.sleep(0.25)
            self._reply(200, "slow but fine")
            return
        if self.path == "/redirect":
            self._reply(302, "", {"Location": "/ok"})
            return
        routes = {
            "/ok": 200,
            "/login": 401,
            "/admin": 403,
            "/boom": 500,
        }
        status = routes.get(self.path, 404)
        self._reply(status, "Not Found" if status == 404 else "hello")

    def do_POST(self) -> None:  # noqa: N802
        length = int(self.headers.get("Content-Length") or 0)
        raw = self.rfile.read(length) if length else b""
        if self.path.startswith("/hook"):
            self.server.captured.append({"path": self.path, "body": json.loads(raw or b"null")})  # type: ignore[attr-defined]
            self._reply(500 if self.path == "/hook-fail" else 200, "ok")
            return
        if self.path == "/api/echo":
            try:
                json.loads(raw or b"")
            except ValueError:
                self._reply(400, "bad json")
                return
            self._reply(200, "accepted")
            return
        self._reply(404, "Not Found")


@pytest.fixture(scope="session")
def local_server() -> Any:
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    httpd.captured = []  # type: ignore[attr-defined]
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield httpd
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


@pytest.fixture(scope="session")
def local_server_base_url(local_server: Any) -> str:
    host, port = local_server.server_address[:2]
    return f"http://{host}:{port}"


class FakeClock:
    """Monotonic clock advanced only by the sleeps it records."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeLister:
    """In-memory lister.

    `listings` is consumed one entry per call (the last entry repeats); an entry may be
    an exception instance to raise. Assigning `records` replaces the listing outright.
    """

    def __init__(
        self,
        listings: list[Any] | None = None,
        *,
        available: bool = True,
        build_log_issues: list[str] | None = None,
    ) -> None:
        self.listings = list(listings or [[]])
        self.available = available
        self.build_log_issues = list(build_log_issues or [])
        self.calls = 0
        self.inspected: list[str] = []

    @property
    def records(self) -> list[DeploymentRecord]:
        return self.listings[-1]

    @records.setter
    def records(self, value: list[DeploymentRecord]) -> None:
        self.listings = [list(value)]
        self.calls = 0

    async def is_available(self) -> bool:
        return self.available

    async def list_deployments(self, stop=None) -> list[DeploymentRecord]:
        item = self.listings[min(self.calls, len(self.listings) - 1)]
        self.calls += 1
        if isinstance(item, Exception):
            raise item
        return list(item)

    async def build_issues(self, deployment: DeploymentRecord, stop=None) -> list[str]:
        self.inspected.append(deployment.identifier)
        return list(self.build_log_issues)


def record(status: str, n: int = 1, *, age: str = "1m") -> DeploymentRecord:
    return DeploymentRecord(
        identifier=f"app-{n}.example.app",
        url=f"https://app-{n}.example.app",
        status=DeploymentStatus(status),
        age=age,
        environment="Production",
    )


def lister_error(msg: str = "lister exploded") -> TransportError:
    return TransportError(msg)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_lister() -> Callable[..., FakeLister]:
    return FakeLister


@pytest.fixture
def make_record() -> Callable[..., DeploymentRecord]:
    return record


@pytest.fixture
def make_config(tmp_path: Path, local_server_base_url: str) -> Callable[..., MonitorConfig]:
    """Config pointing at the local server and a temporary storage root, with no real waits."""

    def _make(endpoints: list[dict[str, Any]] | None = None, **overrides: Any) -> MonitorConfig:
        eps = endpoints if endpoints is not None else [
            {"name": "home", "path": "/ok", "expected_status": [200]},
            {"name": "login", "path": "/login", "expected_status": [200, 401]},
        ]
        cfg = MonitorConfig(
            health=HealthConfig(
                base_url=local_server_base_url,
                timeout_seconds=2.0,
                endpoints=[EndpointConfig(**e) for e in eps],
            ),
            poller=PollerConfig(
                base_interval_seconds=0.05,
                max_interval_seconds=0.1,
                max_wait_seconds=5.0,
                fallback_wait_seconds=0.05,
                propagation_delay_seconds=0.0,
            ),
            alerting=AlertingConfig(
                console=ChannelConfig(enabled=False),
                file=FileChannelConfig(enabled=True, path="notifications.log"),
            ),
            supervisor=SupervisorConfig(interval_seconds=0.01, max_consecutive_failures=3),
            storage=StorageConfig(root=str(tmp_path / "monitor")),
        )
        if overrides:
            cfg = cfg.model_copy(update=overrides)
        return cfg

    return _make
