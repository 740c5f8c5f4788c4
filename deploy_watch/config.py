"""Configuration for the health checker, rollback coordinator and monitor."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from deploy_watch.errors import ConfigError
from deploy_watch.models import Environment


PLACEHOLDER_URLS = frozenset(
    {
        "https://dev.example.com",
        "https://staging.example.com",
        "https://qa.example.com",
        "https://preprod.example.com",
        "https://prod.example.com",
    }
)

# Environment variable -> environment whose endpoint it configures.
TARGET_URL_ENV = {
    "DEV_URL": Environment.DEVELOPMENT,
    "STAGING_URL": Environment.STAGING,
    "QA_URL": Environment.QA,
    "PREPROD_URL": Environment.PRE_PRODUCTION,
    "PROD_URL": Environment.PRODUCTION,
}


class AlertThresholds(BaseModel):
    """Alerting boundaries evaluated once per monitoring cycle."""
    availability: float = Field(default=0.95, ge=0.0, le=1.0, description="Alert below this success ratio")
    response_time_ms: float = Field(default=3000.0, gt=0, description="Alert above this mean response time")
    error_rate: float = Field(default=0.05, ge=0.0, le=1.0, description="Alert above this error ratio")


class MonitorTarget(BaseModel):
    environment: Environment
    url: str


class NotificationConfig(BaseModel):
    slack_webhook_url: Optional[str] = Field(default=None, description="Slack incoming webhook")
    teams_webhook_url: Optional[str] = Field(default=None, description="Microsoft Teams incoming webhook")
    generic_webhook_url: Optional[str] = Field(default=None, description="Plain JSON webhook receiver")
    timeout_seconds: float = Field(default=15.0, gt=0)


class GitHubConfig(BaseModel):
    token: Optional[str] = Field(default=None, description="Token allowed to dispatch workflows")
    repository: Optional[str] = Field(default=None, description="owner/name")
    workflow: str = Field(default="manual-rollback.yml", description="Workflow file dispatched on rollback")
    default_ref: str = Field(default="main")
    api_url: str = Field(default="https://api.github.com")

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.repository)


class DeployWatchConfig(BaseModel):
    """Main configuration."""

    log_level: str = Field(default="INFO")

    # Probing
    probe_timeout_seconds: float = Field(default=10.0, gt=0, description="Monitor/rollback probe timeout")
    health_timeout_seconds: float = Field(default=30.0, gt=0, description="Health checker probe timeout")
    availability_samples: int = Field(default=5, ge=1)
    availability_interval_seconds: float = Field(default=2.0, ge=0)
    performance_threshold_ms: float = Field(default=2000.0, gt=0)

    # Monitoring
    check_interval_seconds: float = Field(default=60.0, ge=0)
    retention_days: float = Field(default=30.0, gt=0)
    analysis_window_minutes: float = Field(default=60.0, gt=0)
    alert_thresholds: AlertThresholds = Field(default_factory=AlertThresholds)
    targets: list[MonitorTarget] = Field(default_factory=list)

    # Rollback
    verification_attempts: int = Field(default=10, ge=1)
    verification_interval_seconds: float = Field(default=10.0, ge=0)
    max_history_depth: int = Field(default=10, ge=1, description="Deployment records kept per environment")
    backup_files: list[str] = Field(
        default_factory=lambda: ["staticwebapp.config.json", "deployment-config.json"]
    )
    environments_dir: str = Field(default="environments")
    auto_rollback_enabled: bool = Field(default=False)
    auto_rollback_error_rate: float = Field(default=0.10, ge=0.0, le=1.0)
    auto_rollback_response_time_ms: float = Field(default=5000.0, gt=0)

    # State and output files
    deployment_history_path: str = Field(default="deployment-history.json")
    rollback_history_path: str = Field(default="rollback-history.json")
    metrics_path: str = Field(default="monitoring-metrics.json")
    dashboard_json_path: str = Field(default="monitoring-dashboard.json")
    dashboard_html_path: str = Field(default="monitoring-dashboard.html")
    reports_dir: str = Field(default=".")

    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)

    def environment_config_path(self, environment: Environment) -> Path:
        return Path(self.environments_dir) / f"{environment.value}.json"


def _env_float(name: str) -> float | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return float(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _env_bool(name: str) -> bool | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip().lower() in ("true", "1", "yes", "on")


def _env_str(name: str) -> str | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    s = raw.strip()
    return s or None


def is_configured_url(url: str | None) -> bool:
    s = (url or "").strip().rstrip("/")
    return bool(s) and s not in PLACEHOLDER_URLS


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    notifications = dict(data.get("notifications") or {})
    for env_name, key in (
        ("SLACK_WEBHOOK_URL", "slack_webhook_url"),
        ("TEAMS_WEBHOOK_URL", "teams_webhook_url"),
        ("ALERT_WEBHOOK_URL", "generic_webhook_url"),
    ):
        value = _env_str(env_name)
        if value is not None:
            notifications[key] = value
    data["notifications"] = notifications

    github = dict(data.get("github") or {})
    for env_name, key in (
        ("GITHUB_TOKEN", "token"),
        ("GITHUB_REPOSITORY", "repository"),
        ("ROLLBACK_WORKFLOW", "workflow"),
    ):
        value = _env_str(env_name)
        if value is not None:
            github[key] = value
    data["github"] = github

    thresholds = dict(data.get("alert_thresholds") or {})
    for env_name, key in (
        ("ALERT_RESPONSE_TIME", "response_time_ms"),
        ("ALERT_ERROR_RATE", "error_rate"),
        ("ALERT_AVAILABILITY", "availability"),
    ):
        value = _env_float(env_name)
        if value is not None:
            thresholds[key] = value
    data["alert_thresholds"] = thresholds

    # Pipelines set MONITOR_INTERVAL in milliseconds.
    interval_ms = _env_float("MONITOR_INTERVAL")
    if interval_ms is not None:
        data["check_interval_seconds"] = interval_ms / 1000.0

    auto_rollback = _env_bool("AUTO_ROLLBACK_ENABLED")
    if auto_rollback is not None:
        data["auto_rollback_enabled"] = auto_rollback

    log_level = _env_str("LOG_LEVEL")
    if log_level is not None:
        data["log_level"] = log_level

    targets = {str(t.get("environment")): t for t in (data.get("targets") or []) if isinstance(t, dict)}
    for env_name, environment in TARGET_URL_ENV.items():
        url = _env_str(env_name)
        if url is not None:
            targets[environment.value] = {"environment": environment.value, "url": url}
    data["targets"] = [t for t in targets.values() if is_configured_url(t.get("url"))]
    return data


def load_config(config_path: Optional[str] = None) -> DeployWatchConfig:
    """Load configuration from an optional YAML file, then environment variables."""
    if config_path is None:
        config_path = os.getenv("DEPLOY_WATCH_CONFIG", "config/deploy-watch.yaml")

    config_data: dict[str, Any] = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config YAML must be a mapping: {config_path}")
        config_data = loaded

    try:
        return DeployWatchConfig(**_apply_env_overrides(config_data))
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
