"""Configuration management for the deployment monitor."""

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .models import Severity


DEFAULT_CONFIG_PATH = Path(__file__).with_name("config.yaml")

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


class EndpointConfig(BaseModel):
    """One HTTP contract probed by the health checker."""
    name: str = Field(default="", description="Display name, defaults to METHOD path")
    path: str = Field(description="Path appended to the base URL")
    method: str = Field(default="GET", description="HTTP method")
    expected_status: list[int] = Field(default_factory=lambda: [200], description="Accepted status codes")
    optional: bool = Field(default=False, description="Failures are informational only")
    body: Optional[dict[str, Any]] = Field(default=None, description="Fixed JSON body for mutating methods")
    description: str = Field(default="", description="What the endpoint is")

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return str(value or "GET").strip().upper()

    @field_validator("path")
    @classmethod
    def _leading_slash(cls, value: str) -> str:
        s = str(value or "").strip()
        return s if s.startswith("/") else "/" + s

    @field_validator("expected_status", mode="before")
    @classmethod
    def _status_list(cls, value: Any) -> Any:
        if isinstance(value, int):
            return [value]
        return value

    @model_validator(mode="after")
    def _fill_name(self) -> "EndpointConfig":
        if not self.name:
            self.name = f"{self.method} {self.path}"
        if self.body is not None and self.method not in MUTATING_METHODS:
            raise ValueError(f"Endpoint {self.name!r}: body is only allowed for {sorted(MUTATING_METHODS)}")
        if not self.expected_status:
            raise ValueError(f"Endpoint {self.name!r}: expected_status must not be empty")
        return self


class ListerConfig(BaseModel):
    """External deployment lister (platform CLI)."""
    binary: str = Field(default="vercel", description="Executable of the deployment CLI")
    project: str = Field(default="oil-painting-app", description="Project whose deployments are listed")
    scope: Optional[str] = Field(default=None, description="Team/scope passed as --scope")
    output_format: str = Field(default="table", description="Listing format: table|compact")
    limit: int = Field(default=10, description="Deployments requested per listing")
    timeout_seconds: float = Field(default=30.0, description="Timeout per lister invocation")
    require_auth: bool = Field(default=True, description="Probe `whoami` before polling")

    @field_validator("output_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        s = str(value or "").strip().lower()
        if s not in {"table", "compact"}:
            raise ValueError(f"Unknown lister output_format {value!r}; expected table|compact")
        return s


class PollerConfig(BaseModel):
    """Deployment status polling with backoff."""
    base_interval_seconds: float = Field(default=10.0, description="First sleep between polls")
    backoff_multiplier: float = Field(default=1.2, description="Interval growth after each non-terminal poll")
    max_interval_seconds: float = Field(default=60.0, description="Upper bound for one sleep")
    max_wait_seconds: float = Field(default=600.0, description="Wall-clock budget for one poll run")
    max_consecutive_failures: int = Field(default=5, description="Lister failures before aborting")
    fallback_wait_seconds: float = Field(default=180.0, description="Fixed wait when no lister is available")
    propagation_delay_seconds: float = Field(default=15.0, description="Pause before the first post-push poll")

    @model_validator(mode="after")
    def _check_backoff(self) -> "PollerConfig":
        if self.base_interval_seconds <= 0:
            raise ValueError("poller.base_interval_seconds must be > 0")
        if self.backoff_multiplier < 1.0:
            raise ValueError("poller.backoff_multiplier must be >= 1.0")
        if self.max_interval_seconds < self.base_interval_seconds:
            raise ValueError("poller.max_interval_seconds must be >= base_interval_seconds")
        if self.max_wait_seconds <= 0:
            raise ValueError("poller.max_wait_seconds must be > 0")
        if self.max_consecutive_failures < 1:
            raise ValueError("poller.max_consecutive_failures must be >= 1")
        return self


class HealthConfig(BaseModel):
    """Endpoint health checks."""
    base_url: str = Field(
        default="https://oil-painting-app-thetangstrs-projects.vercel.app",
        description="Production base URL the endpoints are resolved against",
    )
    timeout_seconds: float = Field(default=15.0, description="Per-request timeout")
    concurrency: int = Field(default=5, description="Probes in flight at once")
    fast_ms: float = Field(default=500.0, description="Below this a probe is fast")
    acceptable_ms: float = Field(default=2000.0, description="Below this a probe is acceptable")
    user_agent: str = Field(default="deploy-monitor/1.0", description="User-Agent header")
    endpoints: list[EndpointConfig] = Field(default_factory=list, description="Endpoints to probe")

    @model_validator(mode="after")
    def _check_thresholds(self) -> "HealthConfig":
        if self.fast_ms >= self.acceptable_ms:
            raise ValueError("health.fast_ms must be lower than health.acceptable_ms")
        if self.concurrency < 1:
            raise ValueError("health.concurrency must be >= 1")
        return self


class ThresholdConfig(BaseModel):
    """Severity classification thresholds."""
    max_failure_rate_percent: float = Field(default=25.0, description="Deployment failure rate ceiling")
    min_success_rate_percent: float = Field(default=80.0, description="Minimum healthy endpoint share")
    max_average_latency_ms: float = Field(default=5000.0, description="Average latency ceiling")
    api_failure_alert_percent: float = Field(default=20.0, description="Failing endpoint share that alerts")
    deployment_window: int = Field(default=10, description="Most-recent deployments kept per run")
    pattern_size: int = Field(default=5, description="Most-recent deployments in the status pattern")
    consecutive_failure_alert: int = Field(default=3, description="Errors in the pattern that page")
    recommendation_failure_rate_percent: float = Field(default=20.0, description="Failure rate that triggers build advice")


class ChannelConfig(BaseModel):
    enabled: bool = Field(default=True)
    timeout_seconds: float = Field(default=15.0)


class WebhookChannelConfig(ChannelConfig):
    enabled: bool = Field(default=False)
    url: Optional[str] = Field(default=None, description="Slack/Discord compatible webhook URL")
    username: str = Field(default="Deploy Monitor")


class TelegramChannelConfig(ChannelConfig):
    enabled: bool = Field(default=False)
    bot_token: Optional[str] = Field(default=None)
    chat_id: Optional[str] = Field(default=None)


class FileChannelConfig(ChannelConfig):
    path: str = Field(default="deployment-notifications.log", description="Relative to storage.root")


class AlertingConfig(BaseModel):
    """Alert dispatch."""
    min_severity: Severity = Field(default=Severity.MEDIUM, description="Lowest severity that notifies")
    console: ChannelConfig = Field(default_factory=ChannelConfig)
    file: FileChannelConfig = Field(default_factory=FileChannelConfig)
    webhook: WebhookChannelConfig = Field(default_factory=WebhookChannelConfig)
    telegram: TelegramChannelConfig = Field(default_factory=TelegramChannelConfig)

    @field_validator("min_severity", mode="before")
    @classmethod
    def _parse_severity(cls, value: Any) -> Severity:
        return Severity.parse(value)


class SupervisorConfig(BaseModel):
    """Continuous monitoring loop."""
    interval_seconds: float = Field(default=60.0, description="Sleep between cycles")
    max_consecutive_failures: int = Field(default=5, description="Failed cycles before halting")
    branch: str = Field(default="main", description="Branch recorded on supervisor sessions")


class StorageConfig(BaseModel):
    """Where sessions, reports and logs are written."""
    root: str = Field(default=".deploy-monitor", description="Base directory")
    sessions_dir: str = Field(default="sessions", description="Session documents, relative to root")
    reports_dir: str = Field(default="reports", description="Exported reports, relative to root")
    log_file: str = Field(default="deployment-monitoring.log", description="Monitoring log, relative to root")
    retention_days: float = Field(default=7.0, description="Age after which `clean` removes documents")

    def path(self, relative: str) -> Path:
        p = Path(relative)
        return p if p.is_absolute() else Path(self.root) / p

    @property
    def sessions_path(self) -> Path:
        return self.path(self.sessions_dir)

    @property
    def reports_path(self) -> Path:
        return self.path(self.reports_dir)

    @property
    def log_path(self) -> Path:
        return self.path(self.log_file)


class MonitorConfig(BaseModel):
    """Main configuration for the deployment monitor."""
    log_level: str = Field(default="INFO", description="Logging level")
    deployment_branches: list[str] = Field(
        default_factory=lambda: ["main", "master", "production", "deploy*"],
        description="Branches that get enhanced monitoring (trailing * = prefix)",
    )
    lister: ListerConfig = Field(default_factory=ListerConfig)
    poller: PollerConfig = Field(default_factory=PollerConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    thresholds: ThresholdConfig = Field(default_factory=ThresholdConfig)
    alerting: AlertingConfig = Field(default_factory=AlertingConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    def is_deployment_branch(self, branch: str) -> bool:
        b = str(branch or "").strip()
        for pattern in self.deployment_branches:
            if pattern.endswith("*"):
                if b.startswith(pattern[:-1]):
                    return True
            elif b == pattern:
                return True
        return False


def _set_path(data: dict[str, Any], dotted: str, value: Any) -> None:
    cur = data
    parts = dotted.split(".")
    for part in parts[:-1]:
        nxt = cur.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            cur[part] = nxt
        cur = nxt
    cur[parts[-1]] = value


ENV_OVERRIDES = {
    "DEPLOY_MONITOR_BASE_URL": "health.base_url",
    "DEPLOY_MONITOR_PROJECT": "lister.project",
    "LOG_LEVEL": "log_level",
    "MONITOR_SEVERITY_THRESHOLD": "alerting.min_severity",
    "TELEGRAM_BOT_TOKEN": "alerting.telegram.bot_token",
    "TELEGRAM_CHAT_ID": "alerting.telegram.chat_id",
}


def load_config(config_path: Optional[str | Path] = None) -> MonitorConfig:
    """Load configuration from a YAML file, then apply environment overrides."""
    if config_path is None:
        config_path = os.getenv("DEPLOY_MONITOR_CONFIG") or DEFAULT_CONFIG_PATH
    path = Path(config_path)

    config_data: dict[str, Any] = {}
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}
        if not isinstance(config_data, dict):
            raise ValueError("Config YAML must be a mapping")

    for env_name, dotted in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            _set_path(config_data, dotted, value)

    webhook_url = os.getenv("DEPLOYMENT_WEBHOOK_URL") or os.getenv("MONITOR_SLACK_WEBHOOK")
    if webhook_url:
        _set_path(config_data, "alerting.webhook.url", webhook_url)
        _set_path(config_data, "alerting.webhook.enabled", True)

    cfg = MonitorConfig(**config_data)
    if not cfg.health.endpoints:
        raise ValueError(f"{path}: health.endpoints must list at least one endpoint")
    return cfg
