"""
Monitoring system wiring.

Builds every component from Settings and owns their start/stop order. Used by
the API lifespan and by the headless worker.
"""

import logging
from typing import Any

import httpx

from pipewatch.config import Settings
from pipewatch.services.alert_manager import AlertManager
from pipewatch.services.ci_client import CIClient
from pipewatch.services.ci_poller import CIPoller
from pipewatch.services.engine import PipelineEngine
from pipewatch.services.events import EventBus
from pipewatch.services.live_hub import LiveHub
from pipewatch.services.notifications import NotificationDispatcher, SlackChannel, WebhookChannel
from pipewatch.services.performance_analyzer import PerformanceAnalyzer
from pipewatch.services.scheduler import Scheduler
from pipewatch.services.site_monitor import SiteMonitor
from pipewatch.services.store import RecordKind, Store
from pipewatch.services.trigger_detector import GitRunner, TriggerDetector
from pipewatch.services.webhook_pipeline import WebhookPipeline
from pipewatch.services.webhook_validator import WebhookValidator
from pipewatch.timeutil import utcnow

logger = logging.getLogger(__name__)


class MonitoringSystem:
    def __init__(
        self,
        config: Settings,
        *,
        ci_transport: httpx.AsyncBaseTransport | None = None,
        site_transport: httpx.AsyncBaseTransport | None = None,
        notification_transport: httpx.AsyncBaseTransport | None = None,
        git_runner: GitRunner | None = None,
    ):
        self.config = config
        self.bus = EventBus()
        self.scheduler = Scheduler()
        self.store = Store(config.database_url)
        self.engine = PipelineEngine(
            self.store,
            self.bus,
            monitoring_timeout_ms=config.monitoring_timeout_ms,
            max_records=config.storage_max_records,
            cleanup_interval_seconds=config.cleanup_interval_seconds,
            max_active_runs=config.max_active_runs,
        )
        self.detector = TriggerDetector(
            self.engine,
            repo_path=config.repo_path,
            marker_files=config.marker_file_list,
            marker_window_seconds=config.marker_window_seconds,
            git_runner=git_runner,
        )
        self.validator = WebhookValidator(
            self.store,
            webhook_secret=config.webhook_secret,
            retry_attempts=config.retry_attempts,
            timeout_ms=config.webhook_timeout_ms,
        )

        self.ci_client: CIClient | None = None
        if config.ci_owner and config.ci_repo:
            self.ci_client = CIClient(
                config.ci_token,
                config.ci_owner,
                config.ci_repo,
                base_url=config.ci_api_url,
                timeout=config.ci_request_timeout_seconds,
                transport=ci_transport,
            )

        self.site_monitor: SiteMonitor | None = None
        if config.site_url:
            self.site_monitor = SiteMonitor(
                config.site_url,
                timeout=config.site_check_timeout_seconds,
                slow_threshold_ms=config.alert_site_response_ms,
                transport=site_transport,
            )

        self.analyzer = PerformanceAnalyzer(
            thresholds={"job_duration": config.job_duration_threshold_ms},
        )
        self.pipeline = WebhookPipeline(
            self.store,
            self.engine,
            self.validator,
            self.detector,
            self.scheduler,
            self.bus,
            ci_client=self.ci_client,
            ci_workflow=config.ci_workflow,
            ci_ref=config.ci_ref,
            webhook_timeout_ms=config.webhook_timeout_ms,
        )
        self.ci_poller: CIPoller | None = None
        if self.ci_client is not None:
            self.ci_poller = CIPoller(
                self.ci_client,
                self.engine,
                self.detector,
                self.analyzer,
                self.scheduler,
                poll_interval=config.ci_poll_interval,
                workflow_poll_interval=config.workflow_poll_interval,
                max_wait_seconds=config.workflow_max_wait_seconds,
                job_duration_threshold_ms=config.job_duration_threshold_ms,
                site_monitor=self.site_monitor,
            )
        self.alerts = AlertManager(
            self.store,
            self.bus,
            error_rate_threshold=config.alert_error_rate,
            pipeline_duration_ms=config.alert_pipeline_duration_ms,
            build_time_ms=config.alert_build_time_ms,
            site_response_ms=config.alert_site_response_ms,
            cooldown_seconds=config.alert_cooldown_seconds,
        )
        self.notifier = NotificationDispatcher(
            self.bus,
            self.scheduler,
            timeout=config.notification_timeout_seconds,
            transport=notification_transport,
        )
        if config.alert_webhook_url:
            self.notifier.add_channel(WebhookChannel(self.notifier.client, config.alert_webhook_url))
        if config.slack_webhook_url:
            self.notifier.add_channel(SlackChannel(self.notifier.client, config.slack_webhook_url))
        self.hub = LiveHub(self.engine, self.bus, self.status)
        self.started_at = None

    async def start(self) -> None:
        await self.store.initialize()
        await self.engine.initialize()
        await self.alerts.initialize()
        self.alerts.attach()
        self.notifier.attach()
        self.hub.attach()
        self.pipeline.register_listeners()

        self.scheduler.every("maintenance", self.config.maintenance_interval, self.engine.run_maintenance)
        await self.detector.start(
            self.scheduler,
            git_interval=self.config.git_poll_interval,
            marker_interval=self.config.marker_poll_interval,
            enable_git=self.config.enable_git_monitor,
            enable_markers=self.config.enable_marker_monitor,
        )
        if self.ci_poller is not None and self.config.enable_ci_monitor:
            await self.ci_poller.start()

        self.started_at = utcnow()
        logger.info("Monitoring system started (jobs: %s)", ", ".join(sorted(self.scheduler.jobs)))

    async def stop(self) -> None:
        await self.scheduler.cancel_all()
        await self.hub.close_all()
        self.hub.detach()
        self.alerts.detach()
        self.notifier.detach()
        await self.notifier.aclose()
        if self.site_monitor is not None:
            await self.site_monitor.aclose()
        if self.ci_client is not None:
            await self.ci_client.aclose()
        await self.store.close()
        self.started_at = None
        logger.info("Monitoring system stopped")

    async def status(self) -> dict[str, Any]:
        recent = await self.engine.get_recent_pipeline_runs(limit=20)
        finished = [r for r in recent if r.is_terminal]
        successful = sum(1 for r in finished if r.success)
        open_alerts = await self.store.count(RecordKind.ALERT, status="active")
        now = utcnow()

        return {
            "status": "running" if self.started_at else "stopped",
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "uptime_seconds": round((now - self.started_at).total_seconds(), 1) if self.started_at else 0,
            "active_runs": len(self.engine.get_active_pipeline_runs()),
            "recent_runs": len(recent),
            "recent_success_rate": round(successful / len(finished) * 100, 2) if finished else None,
            "monitors": {
                "git": "trigger-git" in self.scheduler.jobs,
                "markers": "trigger-markers" in self.scheduler.jobs,
                "ci": "ci-poll" in self.scheduler.jobs,
                "webhooks": self.detector.registered_sources,
                "site": self.site_monitor.url if self.site_monitor else None,
            },
            "open_alerts": open_alerts,
            "notification_channels": self.notifier.channels,
            "live_clients": self.hub.client_count,
            "timestamp": now.isoformat(),
        }
