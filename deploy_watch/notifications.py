from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

import httpx
import structlog

from deploy_watch.models import Alert, format_ts, utcnow


logger = structlog.get_logger(__name__)

SEVERITY_COLORS = {
    "critical": "#dc3545",
    "error": "#fd7e14",
    "warning": "#ffc107",
    "info": "#17a2b8",
    "success": "#28a745",
}
DEFAULT_COLOR = "#6c757d"


@dataclass
class Notification:
    title: str
    message: str
    severity: str
    kind: str
    timestamp: datetime = field(default_factory=utcnow)
    fields: list[tuple[str, str]] = field(default_factory=list)

    @property
    def color(self) -> str:
        return SEVERITY_COLORS.get(self.severity, DEFAULT_COLOR)


def notification_from_alert(alert: Alert) -> Notification:
    fields = [("Severity", alert.severity.value.upper()), ("Type", alert.type.value)]
    if alert.environment:
        fields.append(("Environment", alert.environment))
    fields.append(("Time", format_ts(alert.timestamp)))
    return Notification(
        title=alert.title,
        message=alert.message,
        severity=alert.severity.value,
        kind=alert.type.value,
        timestamp=alert.timestamp,
        fields=fields,
    )


class WebhookChannel:
    name = "webhook"

    def __init__(self, url: str) -> None:
        self.url = url

    def build_payload(self, notification: Notification) -> dict:
        return {
            "title": notification.title,
            "message": notification.message,
            "severity": notification.severity,
            "color": notification.color,
            "type": notification.kind,
            "timestamp": format_ts(notification.timestamp),
            "fields": [{"name": k, "value": v} for k, v in notification.fields],
        }


class SlackWebhookChannel(WebhookChannel):
    name = "slack"

    def build_payload(self, notification: Notification) -> dict:
        return {
            "username": "Deploy Watch",
            "icon_emoji": ":warning:",
            "attachments": [
                {
                    "color": notification.color,
                    "title": notification.title,
                    "text": notification.message,
                    "fields": [
                        {"title": k, "value": v, "short": k != "Time"} for k, v in notification.fields
                    ],
                    "footer": "Deploy Watch",
                    "ts": int(notification.timestamp.timestamp()),
                }
            ],
        }


class TeamsWebhookChannel(WebhookChannel):
    name = "teams"

    def build_payload(self, notification: Notification) -> dict:
        return {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "themeColor": notification.color.lstrip("#").upper(),
            "summary": notification.title,
            "sections": [
                {
                    "activityTitle": "Deploy Watch",
                    "activitySubtitle": notification.title,
                    "facts": [{"name": k, "value": v} for k, v in notification.fields],
                    "markdown": True,
                    "text": notification.message,
                }
            ],
        }


class NotificationDispatcher:
    """Best-effort fan-out to every configured webhook. Never raises."""

    def __init__(self, client: httpx.AsyncClient, channels: list[WebhookChannel], *, timeout_seconds: float = 15.0) -> None:
        self.client = client
        self.channels = list(channels)
        self.timeout_seconds = float(timeout_seconds)

    async def _post(self, channel: WebhookChannel, notification: Notification) -> bool:
        try:
            resp = await self.client.post(
                channel.url,
                json=channel.build_payload(notification),
                timeout=self.timeout_seconds,
            )
        except Exception as exc:
            logger.error(
                "Notification delivery failed",
                channel=channel.name,
                title=notification.title,
                error=f"{type(exc).__name__}: {exc}",
            )
            return False
        if not 200 <= resp.status_code < 300:
            logger.error(
                "Notification rejected",
                channel=channel.name,
                title=notification.title,
                status_code=resp.status_code,
                body=resp.text[:300],
            )
            return False
        logger.info("Notification sent", channel=channel.name, title=notification.title)
        return True

    async def send(self, notification: Notification) -> bool:
        if not self.channels:
            logger.debug("No notification channels configured", title=notification.title)
            return False
        ok_all = True
        for channel in self.channels:
            ok = await self._post(channel, notification)
            ok_all = ok_all and ok
        return ok_all

    async def send_alert(self, alert: Alert) -> bool:
        return await self.send(notification_from_alert(alert))
