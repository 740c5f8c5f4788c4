"""Read-only dashboard snapshot derived from the monitoring state."""

from __future__ import annotations

import html
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import structlog

from deploy_watch.errors import PersistenceError
from deploy_watch.metrics import (
    MetricsState,
    compute_availability,
    mean_response_time_ms,
    window_samples,
)
from deploy_watch.models import format_ts, utcnow
from deploy_watch.state_files import write_json_atomic


logger = structlog.get_logger(__name__)

RECENT_SAMPLES = 10
RECENT_ALERTS = 10
ROLLING_WINDOW = timedelta(hours=24)


def _pct(ratio: float | None) -> str | None:
    return None if ratio is None else f"{ratio * 100:.2f}%"


def _ms(value: float | None) -> str | None:
    return None if value is None else f"{value:.0f}ms"


def build_dashboard(
    state: MetricsState,
    environments: list[tuple[str, str]],
    *,
    started_at: datetime,
    now: datetime | None = None,
) -> dict[str, Any]:
    """``environments`` is the ordered ``(environment, url)`` list being monitored."""
    now = now or utcnow()
    runtime_hours = max(0.0, (now - started_at).total_seconds() / 3600.0)

    env_summary: dict[str, Any] = {}
    performance: dict[str, Any] = {}
    for env, url in environments:
        samples = state.samples_for(env)
        recent = samples[-RECENT_SAMPLES:]
        if recent:
            _total, _ok, ratio = compute_availability(recent)
            last = recent[-1]
            env_summary[env] = {
                "url": url,
                "availability": _pct(ratio),
                "avgResponseTime": _ms(mean_response_time_ms(recent)),
                "lastCheck": format_ts(last.timestamp),
                "status": "healthy" if last.success else "unhealthy",
            }

        rolling = window_samples(samples, since=now - ROLLING_WINDOW)
        if rolling:
            total, _ok, ratio = compute_availability(rolling)
            performance[env] = {
                "availability24h": _pct(ratio),
                "avgResponseTime24h": _ms(mean_response_time_ms(rolling)),
                "dataPoints": total,
            }

    alerts = [
        {
            "timestamp": format_ts(a.timestamp),
            "type": a.type.value,
            "title": a.title,
            "severity": a.severity.value,
        }
        for a in state.alerts[-RECENT_ALERTS:]
    ]

    return {
        "timestamp": format_ts(now),
        "uptime": {"runtime": f"{runtime_hours:.2f} hours", "started": format_ts(started_at)},
        "environments": env_summary,
        "alerts": alerts,
        "performance": performance,
    }


_STYLE = """
body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; margin: 0; padding: 20px; background: #f5f5f5; }
.container { max-width: 1200px; margin: 0 auto; }
.header, .card { background: white; padding: 20px; border-radius: 8px; margin-bottom: 20px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); }
.grid { display: grid; grid-template-columns: repeat(auto-fit, minmax(300px, 1fr)); gap: 20px; }
.status-healthy { color: #28a745; }
.status-unhealthy { color: #dc3545; }
.metric { display: flex; justify-content: space-between; margin: 10px 0; }
.alert { padding: 10px; margin: 5px 0; border-radius: 4px; }
.alert-critical { background: #f8d7da; border-left: 4px solid #dc3545; }
.alert-error { background: #fde2cc; border-left: 4px solid #fd7e14; }
.alert-warning { background: #fff3cd; border-left: 4px solid #ffc107; }
.alert-info { background: #d1ecf1; border-left: 4px solid #17a2b8; }
""".strip()


def _metric(label: str, value: Any) -> str:
    shown = "n/a" if value is None else value
    return f'<div class="metric"><span>{html.escape(label)}:</span><strong>{html.escape(str(shown))}</strong></div>'


def render_dashboard_html(dashboard: dict[str, Any], *, refresh_seconds: int = 60) -> str:
    e = html.escape
    cards: list[str] = []
    for env, info in dashboard.get("environments", {}).items():
        status = str(info.get("status") or "unhealthy")
        perf = dashboard.get("performance", {}).get(env, {})
        cards.append(
            "\n".join(
                [
                    '<div class="card">',
                    f"<h3>{e(env.upper())}</h3>",
                    f'<div class="metric"><span>Status:</span><strong class="status-{e(status)}">{e(status.upper())}</strong></div>',
                    _metric("Availability (last 10)", info.get("availability")),
                    _metric("Avg Response Time (last 10)", info.get("avgResponseTime")),
                    _metric("Availability (24h)", perf.get("availability24h")),
                    _metric("Avg Response Time (24h)", perf.get("avgResponseTime24h")),
                    _metric("Last Check", info.get("lastCheck")),
                    f'<div class="metric"><span>URL:</span><a href="{e(str(info.get("url") or ""))}">{e(str(info.get("url") or ""))}</a></div>',
                    "</div>",
                ]
            )
        )

    alerts = dashboard.get("alerts") or []
    if alerts:
        alert_rows = "\n".join(
            f'<div class="alert alert-{e(a["severity"])}"><strong>{e(a["title"])}</strong>'
            f' <small>({e(a["timestamp"])})</small></div>'
            for a in alerts
        )
    else:
        alert_rows = "<p>No recent alerts</p>"

    uptime = dashboard.get("uptime", {})
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<meta http-equiv="refresh" content="{int(refresh_seconds)}">
<title>Deployment Monitoring Dashboard</title>
<style>
{_STYLE}
</style>
</head>
<body>
<div class="container">
<div class="header">
<h1>Deployment Monitoring Dashboard</h1>
<p>Last updated: {e(str(dashboard.get("timestamp", "")))}</p>
<p>Uptime: {e(str(uptime.get("runtime", "")))} (started {e(str(uptime.get("started", "")))})</p>
</div>
<div class="grid">
{chr(10).join(cards)}
</div>
<div class="card">
<h3>Recent Alerts</h3>
{alert_rows}
</div>
</div>
</body>
</html>
"""


def write_dashboard(dashboard: dict[str, Any], *, json_path: Path, html_path: Path) -> bool:
    try:
        write_json_atomic(json_path, dashboard)
        html_path.parent.mkdir(parents=True, exist_ok=True)
        html_path.write_text(render_dashboard_html(dashboard), encoding="utf-8")
    except (PersistenceError, OSError) as exc:
        logger.error("Failed to write dashboard", json_path=str(json_path), html_path=str(html_path), error=str(exc))
        return False
    logger.info("Dashboard generated", json_path=str(json_path), html_path=str(html_path))
    return True
