"""Thin command line entry points: health check, rollback and monitor."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import re
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional, Sequence

import httpx
import structlog

from deploy_watch.config import TARGET_URL_ENV, DeployWatchConfig, is_configured_url, load_config
from deploy_watch.errors import ConfigError, PersistenceError, RollbackError
from deploy_watch.health_checker import HealthChecker, format_report
from deploy_watch.history_store import DeploymentHistoryStore, RollbackHistoryStore
from deploy_watch.log_config import configure_logging
from deploy_watch.models import Environment, HealthReport, OverallHealth, RollbackRecord, RollbackStatus, format_ts
from deploy_watch.monitor import MonitoringLoop
from deploy_watch.notifications import (
    NotificationDispatcher,
    SlackWebhookChannel,
    TeamsWebhookChannel,
    WebhookChannel,
)
from deploy_watch.platform import GitHubWorkflowConfig, GitHubWorkflowTrigger, NoopRedeployTrigger, RedeployTrigger
from deploy_watch.rollback import RollbackCoordinator
from deploy_watch.sampler import MetricSampler
from deploy_watch.state_files import write_json_atomic


logger = structlog.get_logger(__name__)

ENVIRONMENT_CHOICES = [e.value for e in Environment]


def _common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", default=None, help="Path to YAML config (default: $DEPLOY_WATCH_CONFIG)")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")


def _load(args: argparse.Namespace) -> DeployWatchConfig:
    cfg = load_config(args.config)
    configure_logging(args.log_level or cfg.log_level)
    return cfg


def build_notifier(client: httpx.AsyncClient, cfg: DeployWatchConfig) -> NotificationDispatcher:
    channels: list[WebhookChannel] = []
    n = cfg.notifications
    if n.slack_webhook_url:
        channels.append(SlackWebhookChannel(n.slack_webhook_url))
    if n.teams_webhook_url:
        channels.append(TeamsWebhookChannel(n.teams_webhook_url))
    if n.generic_webhook_url:
        channels.append(WebhookChannel(n.generic_webhook_url))
    return NotificationDispatcher(client, channels, timeout_seconds=n.timeout_seconds)


def build_redeploy_trigger(client: httpx.AsyncClient, cfg: DeployWatchConfig) -> RedeployTrigger:
    gh = cfg.github
    if not gh.enabled:
        return NoopRedeployTrigger()
    return GitHubWorkflowTrigger(
        client,
        GitHubWorkflowConfig(
            token=str(gh.token),
            repository=str(gh.repository),
            workflow=gh.workflow,
            default_ref=gh.default_ref,
            api_url=gh.api_url,
        ),
    )


def report_filename(report: HealthReport) -> str:
    stamp = re.sub(r"[:.]", "-", format_ts(report.timestamp))
    env = re.sub(r"[^A-Za-z0-9_-]+", "-", report.environment) or "unknown"
    return f"health-check-{env}-{stamp}.json"


# ----------------------------------------------------------------------
# deploy-watch-health <url> [environment]
# ----------------------------------------------------------------------


async def _run_health(cfg: DeployWatchConfig, url: str, environment: str) -> HealthReport:
    async with httpx.AsyncClient() as client:
        sampler = MetricSampler(client, timeout_seconds=cfg.health_timeout_seconds)
        checker = HealthChecker(
            sampler,
            availability_samples=cfg.availability_samples,
            availability_interval_seconds=cfg.availability_interval_seconds,
            performance_threshold_ms=cfg.performance_threshold_ms,
        )
        return await checker.run_health_checks(url, environment)


def health_main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Post-deployment health checks for a web app URL")
    parser.add_argument("url", help="Base URL to check, e.g. https://myapp.azurestaticapps.net")
    parser.add_argument("environment", nargs="?", default="development", help="Environment name")
    _common_args(parser)
    args = parser.parse_args(argv)

    try:
        cfg = _load(args)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    report = asyncio.run(_run_health(cfg, args.url, args.environment))
    print(format_report(report))

    path = Path(cfg.reports_dir) / report_filename(report)
    try:
        write_json_atomic(path, report.to_dict())
    except PersistenceError as exc:
        logger.error("Failed to save health report", path=str(path), error=str(exc))
    else:
        print(f"Report saved to: {path}")

    return 0 if report.overall == OverallHealth.HEALTHY else 1


# ----------------------------------------------------------------------
# deploy-watch-rollback record|rollback|auto-check
# ----------------------------------------------------------------------


def _print_rollback(record: RollbackRecord) -> None:
    print(f"Rollback {record.id}: {record.status.value.upper()}")
    print(f"  Environment: {record.environment.value}")
    print(f"  From: {record.from_ref.version}  To: {record.to_ref.version}")
    print(f"  Reason: {record.reason}")
    for step in record.steps:
        suffix = f" ({step.error})" if step.error else ""
        print(f"  [{step.status.value}] {step.name}: {step.description}{suffix}")
    for warning in record.warnings:
        print(f"  Warning: {warning}")
    if record.duration_ms is not None:
        print(f"  Duration: {record.duration_ms:.0f}ms")
    if record.error:
        print(f"  Error: {record.error}")


async def _run_rollback_command(cfg: DeployWatchConfig, args: argparse.Namespace) -> int:
    store = DeploymentHistoryStore(Path(cfg.deployment_history_path), max_depth=cfg.max_history_depth)
    store.load()

    url = getattr(args, "url", None)
    if args.command == "record":
        if not url:
            url = next((t.url for t in cfg.targets if t.environment.value == args.environment), None)
        if not is_configured_url(url):
            print(f"No URL given and none configured for {args.environment}", file=sys.stderr)
            return 2

    rollback_history = RollbackHistoryStore(Path(cfg.rollback_history_path))
    rollback_history.load()

    async with httpx.AsyncClient() as client:
        coordinator = RollbackCoordinator(
            store,
            rollback_history,
            MetricSampler(client, timeout_seconds=cfg.probe_timeout_seconds),
            build_notifier(client, cfg),
            redeploy_trigger=build_redeploy_trigger(client, cfg),
            backup_files=cfg.backup_files,
            environments_dir=cfg.environments_dir,
            verification_attempts=cfg.verification_attempts,
            verification_interval_seconds=cfg.verification_interval_seconds,
        )

        if args.command == "record":
            deployment = await coordinator.record_deployment(args.environment, args.version, str(url))
            print(f"Recorded deployment: {deployment.environment.value} {deployment.version} ({deployment.id})")
            return 0 if store.last_save_error is None else 1

        if args.command == "rollback":
            try:
                record = await coordinator.initiate_rollback(
                    args.environment, args.version, reason="Manual rollback via CLI"
                )
            except RollbackError as exc:
                print(f"Rollback not started: {exc}", file=sys.stderr)
                return 1
            _print_rollback(record)
            return 0 if record.status == RollbackStatus.COMPLETED else 1

        try:
            decision = await coordinator.check_auto_rollback_triggers(
                args.environment,
                args.url,
                enabled=cfg.auto_rollback_enabled,
                metrics_path=Path(cfg.metrics_path),
                analysis_window=timedelta(minutes=cfg.analysis_window_minutes),
                error_rate_threshold=cfg.auto_rollback_error_rate,
                response_time_threshold_ms=cfg.auto_rollback_response_time_ms,
            )
        except RollbackError as exc:
            print(f"Auto-rollback triggered but could not start: {exc}", file=sys.stderr)
            return 1

    if not decision.enabled:
        print("Auto-rollback is disabled")
        return 0
    if not decision.triggered:
        print(f"No auto-rollback needed for {decision.environment.value} (error rate {decision.error_rate * 100:.1f}%)")
        return 0
    print(f"Auto-rollback triggered: {decision.reason}")
    if decision.rollback is None:
        print("Auto-rollback did not produce a rollback record", file=sys.stderr)
        return 1
    _print_rollback(decision.rollback)
    return 0 if decision.rollback.status == RollbackStatus.COMPLETED else 1


def rollback_main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Deployment history and rollback")
    _common_args(parser)
    sub = parser.add_subparsers(dest="command", required=True)

    p_record = sub.add_parser("record", help="Record a new deployment")
    p_record.add_argument("environment", choices=ENVIRONMENT_CHOICES)
    p_record.add_argument("version")
    p_record.add_argument("url", nargs="?", default=None)

    p_rollback = sub.add_parser("rollback", help="Roll back to the previous or a specific version")
    p_rollback.add_argument("environment", choices=ENVIRONMENT_CHOICES)
    p_rollback.add_argument("version", nargs="?", default=None)

    p_auto = sub.add_parser("auto-check", help="Roll back automatically if health triggers fire")
    p_auto.add_argument("environment", choices=ENVIRONMENT_CHOICES)
    p_auto.add_argument("url")

    args = parser.parse_args(argv)
    try:
        cfg = _load(args)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    return asyncio.run(_run_rollback_command(cfg, args))


# ----------------------------------------------------------------------
# deploy-watch-monitor
# ----------------------------------------------------------------------


async def _run_monitor(cfg: DeployWatchConfig, *, once: bool) -> None:
    async with httpx.AsyncClient() as client:
        loop = MonitoringLoop(
            MetricSampler(client, timeout_seconds=cfg.probe_timeout_seconds),
            build_notifier(client, cfg),
            metrics_path=Path(cfg.metrics_path),
            thresholds=cfg.alert_thresholds,
            interval_seconds=cfg.check_interval_seconds,
            retention=timedelta(days=cfg.retention_days),
            analysis_window=timedelta(minutes=cfg.analysis_window_minutes),
            dashboard_json_path=Path(cfg.dashboard_json_path),
            dashboard_html_path=Path(cfg.dashboard_html_path),
        )
        await loop.start_monitoring(cfg.targets, once=once)


def monitor_main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Continuous deployment monitoring")
    parser.add_argument("--once", action="store_true", help="Run one monitoring cycle and exit")
    parser.add_argument("--print-config", action="store_true", help="Print the effective configuration and exit")
    _common_args(parser)
    args = parser.parse_args(argv)

    try:
        cfg = _load(args)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    if args.print_config:
        dumped = cfg.model_dump(mode="json")
        # Never echo secrets.
        dumped["github"]["token"] = "***" if cfg.github.token else None
        for key, value in dumped["notifications"].items():
            if key.endswith("_url") and value:
                dumped["notifications"][key] = "***"
        print(json.dumps(dumped, indent=2))
        return 0

    if not cfg.targets:
        print(
            "No monitoring targets configured. Set "
            + ", ".join(TARGET_URL_ENV)
            + " or add targets to "
            + os.getenv("DEPLOY_WATCH_CONFIG", "config/deploy-watch.yaml"),
            file=sys.stderr,
        )
        return 1

    asyncio.run(_run_monitor(cfg, once=bool(args.once)))
    return 0


if __name__ == "__main__":
    raise SystemExit(monitor_main())
