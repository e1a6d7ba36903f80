"""
Alert notification channels.

The dispatcher listens for published ``alert`` events and forwards each one to
every enabled channel. Alerts held back by the manager's cooldown are never
published, so they are never forwarded either.

Channels:
- WebhookChannel: POSTs ``{"event", "alert", "timestamp"}`` JSON to any URL
- SlackChannel: POSTs a formatted message to a Slack incoming-webhook URL

A failing channel is logged and counted; it never affects the others or the
alert itself.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from pipewatch import __version__
from pipewatch.middleware.metrics import notifications_total
from pipewatch.services import events
from pipewatch.services.events import EventBus
from pipewatch.services.scheduler import Scheduler
from pipewatch.timeutil import utcnow

logger = logging.getLogger(__name__)

SLACK_COLORS = {
    "low": "#17a2b8",
    "medium": "#ffc107",
    "high": "#dc3545",
    "critical": "#6f42c1",
}


class NotificationChannel:
    name = "channel"

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        enabled: bool = True,
    ) -> None:
        self.client = client
        self.url = url
        self.headers = headers or {}
        self.enabled = enabled

    def build_payload(self, alert: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    async def send(self, alert: dict[str, Any]) -> bool:
        """Deliver one alert; returns False when disabled or delivery failed."""
        if not self.enabled or not self.url:
            return False
        try:
            response = await self.client.post(self.url, json=self.build_payload(alert), headers=self.headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            notifications_total.labels(channel=self.name, outcome="failed").inc()
            logger.warning("Failed to send alert %s via %s: %s", alert.get("id"), self.name, exc)
            return False

        notifications_total.labels(channel=self.name, outcome="sent").inc()
        logger.debug("Alert %s sent via %s", alert.get("id"), self.name)
        return True


class WebhookChannel(NotificationChannel):
    name = "webhook"

    def build_payload(self, alert: dict[str, Any]) -> dict[str, Any]:
        return {"event": events.ALERT, "alert": alert, "timestamp": utcnow().isoformat()}


class SlackChannel(NotificationChannel):
    name = "slack"

    def build_payload(self, alert: dict[str, Any]) -> dict[str, Any]:
        severity = str(alert.get("severity") or "medium")
        fields = [
            {"title": "Severity", "value": severity.upper(), "short": True},
            {"title": "Occurrences", "value": str(alert.get("occurrences") or 1), "short": True},
        ]
        if alert.get("run_id"):
            fields.append({"title": "Run", "value": alert["run_id"], "short": False})
        return {
            "text": f"[{severity.upper()}] {alert.get('type')}: {alert.get('message') or 'No message'}",
            "attachments": [{
                "color": SLACK_COLORS.get(severity, "#6c757d"),
                "fields": fields,
                "footer": f"pipewatch alert {alert.get('id')}",
                "ts": alert.get("timestamp"),
            }],
        }


class NotificationDispatcher:
    def __init__(
        self,
        bus: EventBus,
        scheduler: Scheduler | None = None,
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.bus = bus
        self.scheduler = scheduler
        self.client = httpx.AsyncClient(
            headers={"User-Agent": f"pipewatch/{__version__}"},
            timeout=timeout,
            transport=transport,
        )
        self._channels: dict[str, NotificationChannel] = {}

    @property
    def channels(self) -> list[str]:
        return sorted(self._channels)

    def add_channel(self, channel: NotificationChannel) -> NotificationChannel:
        self._channels[channel.name] = channel
        return channel

    def remove_channel(self, name: str) -> None:
        self._channels.pop(name, None)

    def attach(self) -> None:
        self.bus.subscribe(self.handle_event)

    def detach(self) -> None:
        self.bus.unsubscribe(self.handle_event)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def handle_event(self, event_type: str, data: dict[str, Any]) -> None:
        if event_type != events.ALERT or not self._channels:
            return
        if self.scheduler is not None:
            self.scheduler.spawn("notify", self.send_to_all(data))
        else:
            await self.send_to_all(data)

    async def send_to_all(self, alert: dict[str, Any], channel_names: list[str] | None = None) -> int:
        """Send to the named (default: all) enabled channels; returns how many succeeded."""
        names = channel_names if channel_names is not None else list(self._channels)
        targets = [self._channels[n] for n in names if n in self._channels and self._channels[n].enabled]
        if not targets:
            return 0
        results = await asyncio.gather(*(c.send(alert) for c in targets))
        return sum(1 for ok in results if ok)
