"""
Alert Manager: raises alerts from pipeline and webhook lifecycle events.

Rules
-----
pipeline_completed:
    pipeline_timeout (high)     status == timeout
    pipeline_failure (high)     any other unsuccessful run
    slow_pipeline (medium)      duration over the pipeline threshold
    high_error_rate (medium)    error rate over the error-rate threshold
pipeline_updated (terminal stage):
    stage_failure (high)        stage failed
    slow_build (medium)         build_process over the build threshold
    site_down (critical)        site_validation failed
    slow_site (medium)          site response time over the site threshold
webhook_received / webhook_updated:
    webhook_auth_failure (high)
    webhook_timeout (medium)
    webhook_error (high)        response status >= 400

Alerts are deduplicated by signature while active or acknowledged: a repeat
bumps ``occurrences`` and is only re-published once the cooldown has passed.
"""

import logging
from datetime import datetime, timedelta
from typing import Any

from pipewatch.exceptions import AlertNotFound
from pipewatch.middleware.metrics import active_alerts, alerts_total
from pipewatch.schemas.records import Alert
from pipewatch.services import events
from pipewatch.services.events import EventBus
from pipewatch.services.id_generator import generate_alert_id
from pipewatch.services.store import RecordKind, Store
from pipewatch.timeutil import utcnow

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("active", "acknowledged")


class AlertManager:
    def __init__(
        self,
        store: Store,
        bus: EventBus,
        *,
        error_rate_threshold: float = 10.0,
        pipeline_duration_ms: int = 600000,
        build_time_ms: int = 600000,
        site_response_ms: int = 3000,
        cooldown_seconds: int = 300,
    ):
        self.store = store
        self.bus = bus
        self.error_rate_threshold = error_rate_threshold
        self.pipeline_duration_ms = pipeline_duration_ms
        self.build_time_ms = build_time_ms
        self.site_response_ms = site_response_ms
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self._open: dict[str, str] = {}
        self._notified: dict[str, datetime] = {}

    async def initialize(self) -> None:
        """Rebuild the open-signature index from persisted alerts."""
        self._open.clear()
        for status in OPEN_STATUSES:
            for alert in await self.store.list(RecordKind.ALERT, status=status, limit=1000):
                self._open.setdefault(alert.signature, alert.id)
                self._notified.setdefault(alert.signature, alert.last_seen)
        active_alerts.set(len(self._open))
        logger.info("Alert manager loaded %d open alerts", len(self._open))

    def attach(self) -> None:
        self.bus.subscribe(self.handle_event)

    def detach(self) -> None:
        self.bus.unsubscribe(self.handle_event)

    # ── Rules ────────────────────────────────────────────────────────────────

    async def handle_event(self, event_type: str, data: dict[str, Any]) -> None:
        if event_type == events.PIPELINE_COMPLETED:
            await self._check_completed_run(data)
        elif event_type == events.PIPELINE_UPDATED and data.get("stage"):
            await self._check_stage(data)
        elif event_type in (events.WEBHOOK_RECEIVED, events.WEBHOOK_UPDATED):
            await self._check_webhook(event_type, data)

    async def _check_completed_run(self, data: dict[str, Any]) -> None:
        run_id = data.get("run_id")
        subject = f"{data.get('trigger_type')}/{data.get('trigger_source')}"
        duration = data.get("duration_ms") or 0
        error_rate = (data.get("metrics") or {}).get("error_rate") or 0.0

        if data.get("status") == "timeout":
            await self.raise_alert(
                "pipeline_timeout", "high", f"Pipeline run {run_id} timed out",
                subject=subject, run_id=run_id, data={"duration_ms": duration},
            )
        elif not data.get("success"):
            await self.raise_alert(
                "pipeline_failure", "high",
                f"Pipeline run {run_id} failed with {data.get('error_count', 0)} errors",
                subject=subject, run_id=run_id, data={"error_count": data.get("error_count", 0)},
            )

        if duration > self.pipeline_duration_ms:
            await self.raise_alert(
                "slow_pipeline", "medium",
                f"Pipeline run {run_id} took {duration / 1000:.0f}s "
                f"(threshold {self.pipeline_duration_ms / 1000:.0f}s)",
                subject=subject, run_id=run_id,
                data={"duration_ms": duration, "threshold_ms": self.pipeline_duration_ms},
            )

        if error_rate > self.error_rate_threshold:
            await self.raise_alert(
                "high_error_rate", "medium",
                f"Pipeline run {run_id} error rate {error_rate:.1f}% exceeds {self.error_rate_threshold:.1f}%",
                subject=subject, run_id=run_id,
                data={"error_rate": error_rate, "threshold": self.error_rate_threshold},
            )

    async def _check_stage(self, data: dict[str, Any]) -> None:
        stage = data["stage"]
        status = stage.get("status")
        if status not in ("completed", "failed"):
            return
        run_id = data.get("run_id")
        name = stage.get("name")

        if status == "failed":
            await self.raise_alert(
                "stage_failure", "high", f"Stage {name} failed in run {run_id}",
                subject=name, run_id=run_id, data={"stage": name},
            )

        build_time = (stage.get("data") or {}).get("build_time_ms") or 0
        if name == "build_process" and build_time > self.build_time_ms:
            await self.raise_alert(
                "slow_build", "medium",
                f"Build took {build_time / 1000:.0f}s in run {run_id} "
                f"(threshold {self.build_time_ms / 1000:.0f}s)",
                subject=name, run_id=run_id,
                data={"build_time_ms": build_time, "threshold_ms": self.build_time_ms},
            )

        if name == "site_validation":
            await self._check_site(run_id, status, stage.get("data") or {})

    async def _check_site(self, run_id: str | None, status: str, data: dict[str, Any]) -> None:
        url = data.get("url") or "site"
        response_time = data.get("response_time_ms") or 0
        if status == "failed":
            await self.raise_alert(
                "site_down", "critical", f"Site {url} is not accessible: {data.get('error') or 'unknown error'}",
                subject=url, run_id=run_id,
                data={"url": url, "status": data.get("status"), "error": data.get("error")},
            )
        elif response_time > self.site_response_ms:
            await self.raise_alert(
                "slow_site", "medium",
                f"Site {url} answered in {response_time}ms (threshold {self.site_response_ms}ms)",
                subject=url, run_id=run_id,
                data={"url": url, "response_time_ms": response_time, "threshold_ms": self.site_response_ms},
            )

    async def _check_webhook(self, event_type: str, data: dict[str, Any]) -> None:
        source = data.get("source")
        run_id = data.get("run_id")
        details = {"webhook_id": data.get("webhook_id"), "source": source, "destination": data.get("destination")}

        if event_type == events.WEBHOOK_RECEIVED:
            if data.get("authentication_success") is False:
                await self.raise_alert(
                    "webhook_auth_failure", "high", f"Webhook from {source} failed authentication",
                    subject=source, run_id=run_id, data=details,
                )
            return

        status = data.get("status") or 0
        category = data.get("error_category")
        if category == "timeout":
            await self.raise_alert(
                "webhook_timeout", "medium", f"Webhook {source} → {data.get('destination')} timed out",
                subject=f"{source}->{data.get('destination')}", run_id=run_id, data=details,
            )
        elif status >= 400 and category != "authentication":
            await self.raise_alert(
                "webhook_error", "high",
                f"Webhook {source} → {data.get('destination')} returned HTTP {status}",
                subject=f"{source}->{data.get('destination')}", run_id=run_id,
                data={**details, "status": status, "error_category": category},
            )

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def raise_alert(
        self,
        alert_type: str,
        severity: str,
        message: str,
        *,
        subject: str | None = None,
        run_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> Alert:
        now = utcnow()
        signature = f"{alert_type}:{subject or ''}"
        existing_id = self._open.get(signature)
        alert = await self.store.get(RecordKind.ALERT, existing_id) if existing_id else None

        if alert is not None and alert.status in OPEN_STATUSES:
            alert.occurrences += 1
            alert.last_seen = now
            alert.message = message
            alert.run_id = run_id or alert.run_id
            alert.data = {**alert.data, **(data or {})}
        else:
            alert = Alert(
                id=generate_alert_id(),
                type=alert_type,
                severity=severity,
                message=message,
                run_id=run_id,
                data=data or {},
                signature=signature,
                timestamp=now,
                last_seen=now,
            )
            self._open[signature] = alert.id
            self._notified.pop(signature, None)

        await self.store.save(RecordKind.ALERT, alert)
        active_alerts.set(len(self._open))

        last = self._notified.get(signature)
        if last is not None and now - last < self.cooldown:
            logger.debug("Alert %s suppressed by cooldown (%d occurrences)", signature, alert.occurrences)
            return alert

        self._notified[signature] = now
        alerts_total.labels(type=alert_type, severity=severity).inc()
        logger.warning("Alert [%s] %s: %s", severity, alert_type, message)
        await self.bus.publish(events.ALERT, alert.model_dump(mode="json"))
        return alert

    async def get_alert(self, alert_id: str) -> Alert:
        alert = await self.store.get(RecordKind.ALERT, alert_id)
        if alert is None:
            raise AlertNotFound(alert_id)
        return alert

    async def acknowledge(self, alert_id: str) -> Alert:
        alert = await self.get_alert(alert_id)
        if alert.status != "active":
            return alert
        alert.status = "acknowledged"
        alert.acknowledged_at = utcnow()
        await self.store.save(RecordKind.ALERT, alert)
        logger.info("Alert %s acknowledged", alert_id)
        return alert

    async def resolve(self, alert_id: str) -> Alert:
        alert = await self.get_alert(alert_id)
        if alert.status == "resolved":
            return alert
        alert.status = "resolved"
        alert.resolved_at = utcnow()
        await self.store.save(RecordKind.ALERT, alert)
        if self._open.get(alert.signature) == alert.id:
            del self._open[alert.signature]
            self._notified.pop(alert.signature, None)
        active_alerts.set(len(self._open))
        logger.info("Alert %s resolved", alert_id)
        return alert

    async def list_alerts(self, status: str | None = None, limit: int = 50) -> list[Alert]:
        return await self.store.list(RecordKind.ALERT, status=status, limit=limit)
