from __future__ import annotations

import json
import socket
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer

import httpx
import pytest

from deploy_watch.errors import ExternalCallError
from deploy_watch.models import Alert, AlertType, DeploymentRecord, Environment
from deploy_watch.notifications import (
    NotificationDispatcher,
    SlackWebhookChannel,
    TeamsWebhookChannel,
    WebhookChannel,
    notification_from_alert,
)
from deploy_watch.platform import GitHubWorkflowConfig, GitHubWorkflowTrigger, build_workflow_dispatch_payload


class _HookHandler(BaseHTTPRequestHandler):
    received: list[tuple[str, dict, dict[str, str]]] = []

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def do_POST(self) -> None:  # noqa: N802
        length = int(self.headers.get("Content-Length") or 0)
        body = json.loads(self.rfile.read(length).decode("utf-8") or "{}")
        type(self).received.append((self.path, body, {k.lower(): v for k, v in self.headers.items()}))

        status = 500 if self.path.startswith("/reject") else 204 if "/dispatches" in self.path else 200
        if "/dispatches" in self.path and "missing" in self.path:
            status = 404
        payload = b"nope" if status >= 400 else b"ok"
        self.send_response(status)
        if status != 204:
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)
        else:
            self.end_headers()


@pytest.fixture(scope="module")
def hook_base_url() -> str:
    httpd = HTTPServer(("127.0.0.1", 0), _HookHandler)
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()

    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


@pytest.fixture(autouse=True)
def _reset_received() -> None:
    _HookHandler.received.clear()


def _alert() -> Alert:
    return Alert.create(
        AlertType.PERFORMANCE,
        "High response time in staging",
        "Average response time: 4000ms (threshold: 3000ms)",
        environment="staging",
        timestamp=datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc),
    )


def _target(metadata: dict | None = None) -> DeploymentRecord:
    return DeploymentRecord(
        id="dep-1",
        timestamp=datetime(2026, 10, 1, tzinfo=timezone.utc),
        environment=Environment.PRODUCTION,
        version="v2.0.5",
        url="https://prod.app",
        metadata=metadata or {},
    )


def test_generic_payload_shape() -> None:
    payload = WebhookChannel("http://x").build_payload(notification_from_alert(_alert()))
    assert payload["title"] == "High response time in staging"
    assert payload["severity"] == "warning"
    assert payload["color"] == "#ffc107"
    assert payload["type"] == "performance"
    assert payload["timestamp"] == "2026-10-18T12:00:00+00:00"
    assert {"name": "Environment", "value": "staging"} in payload["fields"]


def test_slack_and_teams_payloads() -> None:
    notification = notification_from_alert(_alert())
    slack = SlackWebhookChannel("http://x").build_payload(notification)
    attachment = slack["attachments"][0]
    assert attachment["color"] == "#ffc107"
    assert attachment["text"].startswith("Average response time")
    assert {"title": "Severity", "value": "WARNING", "short": True} in attachment["fields"]

    teams = TeamsWebhookChannel("http://x").build_payload(notification)
    assert teams["@type"] == "MessageCard"
    assert teams["themeColor"] == "FFC107"
    assert {"name": "Type", "value": "performance"} in teams["sections"][0]["facts"]


def test_system_alert_without_environment() -> None:
    alert = Alert.create(AlertType.SYSTEM, "Monitoring System Error", "boom")
    n = notification_from_alert(alert)
    assert n.severity == "critical"
    assert n.color == "#dc3545"
    assert [k for k, _v in n.fields] == ["Severity", "Type", "Time"]


@pytest.mark.asyncio
async def test_dispatch_reaches_every_channel(hook_base_url: str) -> None:
    async with httpx.AsyncClient() as client:
        dispatcher = NotificationDispatcher(
            client,
            [SlackWebhookChannel(f"{hook_base_url}/slack"), WebhookChannel(f"{hook_base_url}/generic")],
            timeout_seconds=5.0,
        )
        ok = await dispatcher.send_alert(_alert())

    assert ok is True
    paths = [p for p, _b, _h in _HookHandler.received]
    assert paths == ["/slack", "/generic"]
    assert "staging" in json.dumps(_HookHandler.received[1][1])


@pytest.mark.asyncio
async def test_dispatch_failures_are_swallowed(hook_base_url: str) -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        dead_port = s.getsockname()[1]

    async with httpx.AsyncClient() as client:
        dispatcher = NotificationDispatcher(
            client,
            [
                WebhookChannel(f"{hook_base_url}/reject"),
                WebhookChannel(f"http://127.0.0.1:{dead_port}/hook"),
                WebhookChannel(f"{hook_base_url}/generic"),
            ],
            timeout_seconds=2.0,
        )
        ok = await dispatcher.send_alert(_alert())

    assert ok is False
    # A failing channel does not stop delivery to the others.
    assert [p for p, _b, _h in _HookHandler.received] == ["/reject", "/generic"]


@pytest.mark.asyncio
async def test_no_channels_is_not_an_error() -> None:
    async with httpx.AsyncClient() as client:
        assert await NotificationDispatcher(client, []).send_alert(_alert()) is False


def test_workflow_dispatch_payload_uses_recorded_ref() -> None:
    payload = build_workflow_dispatch_payload(
        Environment.PRODUCTION, _target({"gitRef": "refs/tags/v2.0.5"}), default_ref="main"
    )
    assert payload == {
        "ref": "refs/tags/v2.0.5",
        "inputs": {"environment": "production", "version": "v2.0.5", "rollback": "true"},
    }
    assert build_workflow_dispatch_payload(Environment.PRODUCTION, _target(), default_ref="main")["ref"] == "main"


@pytest.mark.asyncio
async def test_github_trigger_posts_dispatch(hook_base_url: str) -> None:
    cfg = GitHubWorkflowConfig(token="t0ken", repository="acme/shop", api_url=hook_base_url, timeout_seconds=5.0)
    async with httpx.AsyncClient() as client:
        await GitHubWorkflowTrigger(client, cfg).trigger(Environment.PRODUCTION, _target())

    path, body, headers = _HookHandler.received[0]
    assert path == "/repos/acme/shop/actions/workflows/manual-rollback.yml/dispatches"
    assert body["inputs"]["rollback"] == "true"
    assert headers["authorization"] == "Bearer t0ken"


@pytest.mark.asyncio
async def test_github_trigger_rejection_raises(hook_base_url: str) -> None:
    cfg = GitHubWorkflowConfig(token="t", repository="acme/missing", api_url=hook_base_url, timeout_seconds=5.0)
    async with httpx.AsyncClient() as client:
        with pytest.raises(ExternalCallError) as ei:
            await GitHubWorkflowTrigger(client, cfg).trigger(Environment.PRODUCTION, _target())
    assert "HTTP 404" in str(ei.value)
