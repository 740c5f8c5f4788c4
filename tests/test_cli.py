from __future__ import annotations

import json
from pathlib import Path

import pytest

from deploy_watch.cli import monitor_main, report_filename, rollback_main
from deploy_watch.models import Environment, HealthReport, OverallHealth, parse_ts
from deploy_watch.rollback import AutoRollbackDecision, RollbackCoordinator


@pytest.fixture
def config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for name in (
        "DEV_URL",
        "STAGING_URL",
        "QA_URL",
        "PREPROD_URL",
        "PROD_URL",
        "AUTO_ROLLBACK_ENABLED",
        "GITHUB_SHA",
        "GITHUB_TOKEN",
        "GITHUB_REPOSITORY",
        "SLACK_WEBHOOK_URL",
        "TEAMS_WEBHOOK_URL",
        "ALERT_WEBHOOK_URL",
        "DEPLOY_WATCH_CONFIG",
    ):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "deploy-watch.yaml"
    path.write_text(
        f"deployment_history_path: {tmp_path / 'deployment-history.json'}\n"
        f"rollback_history_path: {tmp_path / 'rollback-history.json'}\n"
        f"metrics_path: {tmp_path / 'monitoring-metrics.json'}\n"
        "verification_attempts: 1\n"
        "verification_interval_seconds: 0\n",
        encoding="utf-8",
    )
    return path


def test_record_command_persists(config_file: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    args = ["--config", str(config_file), "--log-level", "WARNING"]
    assert rollback_main([*args, "record", "production", "v1.2.3", "https://shop.test"]) == 0
    assert rollback_main([*args, "record", "production", "v1.2.4", "https://shop.test"]) == 0
    assert "Recorded deployment: production v1.2.4" in capsys.readouterr().out

    history = json.loads((tmp_path / "deployment-history.json").read_text(encoding="utf-8"))
    assert [r["version"] for r in history["production"]] == ["v1.2.4", "v1.2.3"]
    assert [r["status"] for r in history["production"]] == ["active", "inactive"]


def test_record_without_url_needs_a_configured_target(config_file: Path) -> None:
    args = ["--config", str(config_file), "--log-level", "WARNING"]
    assert rollback_main([*args, "record", "staging", "v1"]) == 2


def test_rollback_without_target_exits_non_zero(config_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
    args = ["--config", str(config_file), "--log-level", "WARNING"]
    assert rollback_main([*args, "record", "qa", "v1", "https://qa.shop.test"]) == 0
    assert rollback_main([*args, "rollback", "qa"]) == 1
    assert "No previous deployment available for rollback in qa" in capsys.readouterr().err


def test_unknown_environment_is_rejected(config_file: Path) -> None:
    with pytest.raises(SystemExit) as ei:
        rollback_main(["--config", str(config_file), "rollback", "moon"])
    assert ei.value.code == 2


def test_auto_check_disabled(config_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
    args = ["--config", str(config_file), "--log-level", "WARNING"]
    assert rollback_main([*args, "auto-check", "production", "https://shop.test"]) == 0
    assert "Auto-rollback is disabled" in capsys.readouterr().out


def test_monitor_without_targets_exits_1(config_file: Path) -> None:
    assert monitor_main(["--config", str(config_file), "--log-level", "WARNING"]) == 1


def test_monitor_print_config_hides_secrets(
    config_file: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("GITHUB_TOKEN", "very-secret")
    monkeypatch.setenv("SLACK_WEBHOOK_URL", "https://hooks.slack.test/T000/B000/secret")
    assert monitor_main(["--config", str(config_file), "--print-config", "--log-level", "WARNING"]) == 0
    out = capsys.readouterr().out
    assert "very-secret" not in out
    assert "B000" not in out
    assert json.loads(out)["verification_attempts"] == 1


def test_report_filename_is_filesystem_safe() -> None:
    report = HealthReport(
        url="https://shop.test",
        environment="pre-production",
        overall=OverallHealth.HEALTHY,
        checks=[],
        timestamp=parse_ts("2026-10-18T09:15:30.123456+00:00"),
        duration_ms=12.0,
    )
    assert report_filename(report) == "health-check-pre-production-2026-10-18T09-15-30-123456+00-00.json"


def test_auto_check_without_a_rollback_record_exits_1(
    config_file: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    async def triggered_without_record(self, environment, url, **kwargs) -> AutoRollbackDecision:
        return AutoRollbackDecision(
            environment=Environment(environment),
            url=url,
            enabled=True,
            triggered=True,
            reasons=["health check returned HTTP 503"],
        )

    monkeypatch.setattr(RollbackCoordinator, "check_auto_rollback_triggers", triggered_without_record)
    args = ["--config", str(config_file), "--log-level", "WARNING"]
    assert rollback_main([*args, "auto-check", "production", "https://shop.test"]) == 1
    captured = capsys.readouterr()
    assert "Auto-rollback triggered: health check returned HTTP 503" in captured.out
    assert "did not produce a rollback record" in captured.err
