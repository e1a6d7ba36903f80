"""
CI Poller: discovers new workflow runs on the CI provider and follows each
one to completion.

Every new workflow run becomes a ``git`` pipeline run (through the
TriggerDetector) and is monitored in the background:

    ci_workflow → build_process → deploy → site_validation → performance_analysis

site_validation runs only when a SiteMonitor is configured and the deploy
jobs succeeded; an unreachable site fails the run.

A single failed poll is logged and retried on the next tick. A workflow that is
still active after ``max_wait_seconds`` fails its run with status ``timeout``.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from pipewatch.exceptions import CIApiError, RunAlreadyTerminal, WorkflowMonitoringTimeout
from pipewatch.middleware.metrics import ci_poll_errors_total
from pipewatch.middleware.request_context import bind_run_id
from pipewatch.schemas.records import PerformanceMetrics
from pipewatch.services.build_logs import analyze_build_log, classify_job
from pipewatch.services.ci_client import CIClient
from pipewatch.services.engine import PipelineEngine
from pipewatch.services.performance_analyzer import PerformanceAnalyzer
from pipewatch.services.scheduler import Scheduler
from pipewatch.services.site_monitor import SiteCheck, SiteMonitor
from pipewatch.services.trigger_detector import TriggerDetector
from pipewatch.timeutil import elapsed_ms, parse_timestamp

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"queued", "in_progress", "waiting", "requested", "pending"})
MAX_LOG_JOBS = 3


@dataclass
class JobAnalysis:
    id: Any
    name: str
    status: str | None
    conclusion: str | None
    category: str
    duration_ms: int
    step_count: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "conclusion": self.conclusion,
            "category": self.category,
            "duration_ms": self.duration_ms,
            "step_count": self.step_count,
        }


@dataclass
class CIAnalysis:
    total_jobs: int = 0
    successful_jobs: int = 0
    failed_jobs: int = 0
    build_time_ms: int = 0
    deploy_time_ms: int = 0
    build_success: bool = True
    deploy_success: bool = True
    has_deploy: bool = False
    jobs: list[JobAnalysis] = field(default_factory=list)
    bottlenecks: list[dict[str, Any]] = field(default_factory=list)
    log_analysis: dict[str, dict] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total_jobs": self.total_jobs,
            "successful_jobs": self.successful_jobs,
            "failed_jobs": self.failed_jobs,
            "build_time_ms": self.build_time_ms,
            "deploy_time_ms": self.deploy_time_ms,
            "build_success": self.build_success,
            "deploy_success": self.deploy_success,
            "jobs": [j.to_dict() for j in self.jobs],
            "bottlenecks": list(self.bottlenecks),
            "log_analysis": dict(self.log_analysis),
        }


def analyze_jobs(jobs: list[dict[str, Any]], job_threshold_ms: int = 300000) -> CIAnalysis:
    """Summarize job outcomes, build/deploy time and slow jobs for one workflow run."""
    analysis = CIAnalysis(total_jobs=len(jobs))
    for job in jobs:
        name = job.get("name") or f"job-{job.get('id')}"
        category = classify_job(name)
        duration = elapsed_ms(parse_timestamp(job.get("started_at")), parse_timestamp(job.get("completed_at")))
        duration = max(0, duration or 0)
        succeeded = job.get("conclusion") == "success"

        if succeeded:
            analysis.successful_jobs += 1
        else:
            analysis.failed_jobs += 1

        if category == "build":
            analysis.build_time_ms += duration
            analysis.build_success = analysis.build_success and succeeded
        elif category == "deploy":
            analysis.has_deploy = True
            analysis.deploy_time_ms += duration
            analysis.deploy_success = analysis.deploy_success and succeeded

        if duration > job_threshold_ms:
            analysis.bottlenecks.append({
                "type": "slow_job",
                "job": name,
                "duration_ms": duration,
                "threshold_ms": job_threshold_ms,
            })

        analysis.jobs.append(JobAnalysis(
            id=job.get("id"),
            name=name,
            status=job.get("status"),
            conclusion=job.get("conclusion"),
            category=category,
            duration_ms=duration,
            step_count=len(job.get("steps") or []),
        ))
    return analysis


class CIPoller:
    def __init__(
        self,
        client: CIClient,
        engine: PipelineEngine,
        detector: TriggerDetector,
        analyzer: PerformanceAnalyzer,
        scheduler: Scheduler,
        *,
        poll_interval: float = 60.0,
        workflow_poll_interval: float = 30.0,
        max_wait_seconds: float = 1800.0,
        job_duration_threshold_ms: int = 300000,
        fetch_logs: bool = True,
        site_monitor: SiteMonitor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.engine = engine
        self.detector = detector
        self.analyzer = analyzer
        self.scheduler = scheduler
        self.poll_interval = poll_interval
        self.workflow_poll_interval = workflow_poll_interval
        self.max_wait_seconds = max_wait_seconds
        self.job_duration_threshold_ms = job_duration_threshold_ms
        self.fetch_logs = fetch_logs
        self.site_monitor = site_monitor
        self._clock = clock
        self._initialized = False
        self._last_seen: datetime | None = None
        self._monitoring: dict[Any, str] = {}

    @property
    def monitoring(self) -> dict[Any, str]:
        """Workflow run id → pipeline run id for workflows being followed."""
        return dict(self._monitoring)

    async def initialize(self) -> None:
        """Baseline on the newest existing workflow run so history is not replayed."""
        try:
            runs = await self.client.list_workflow_runs(per_page=1)
        except CIApiError as exc:
            ci_poll_errors_total.labels(operation="initialize").inc()
            logger.warning("CI baseline unavailable: %s", exc)
            return
        self._set_baseline(runs)
        self._initialized = True
        logger.info("CI poller baseline at %s", self._last_seen.isoformat() if self._last_seen else "none")

    def _set_baseline(self, runs: list[dict[str, Any]]) -> None:
        for run in runs:
            created = parse_timestamp(run.get("created_at"))
            if created and (self._last_seen is None or created > self._last_seen):
                self._last_seen = created

    async def check_for_new_runs(self) -> list[str]:
        try:
            runs = await self.client.list_workflow_runs(per_page=10)
        except CIApiError as exc:
            ci_poll_errors_total.labels(operation="list_runs").inc()
            logger.warning("CI poll failed: %s", exc)
            return []

        if not self._initialized:
            self._set_baseline(runs)
            self._initialized = True
            return []

        fresh = []
        for run in runs:
            created = parse_timestamp(run.get("created_at"))
            if created is None or run.get("id") in self._monitoring:
                continue
            if self._last_seen is None or created > self._last_seen:
                fresh.append((created, run))
        fresh.sort(key=lambda item: item[0])

        run_ids = []
        for created, workflow_run in fresh:
            run_id = await self.detector.detect_trigger("git", "ci", {
                "workflow_run_id": workflow_run.get("id"),
                "workflow_name": workflow_run.get("name"),
                "event": workflow_run.get("event"),
                "branch": workflow_run.get("head_branch"),
                "commit_sha": workflow_run.get("head_sha"),
                "actor": (workflow_run.get("actor") or {}).get("login"),
                "html_url": workflow_run.get("html_url"),
            }, timestamp=created)
            self._monitoring[workflow_run.get("id")] = run_id
            self._last_seen = created
            self.scheduler.spawn(
                f"ci-monitor-{workflow_run.get('id')}", self.monitor_workflow(run_id, workflow_run)
            )
            run_ids.append(run_id)

        if run_ids:
            logger.info("Discovered %d new workflow runs", len(run_ids))
        return run_ids

    # ── Monitoring ───────────────────────────────────────────────────────────

    async def wait_for_completion(self, run_id: str, workflow_run_id: Any) -> dict[str, Any]:
        """Poll the workflow run until it leaves the active statuses."""
        started = self._clock()
        while True:
            try:
                workflow_run = await self.client.get_workflow_run(workflow_run_id)
            except CIApiError as exc:
                ci_poll_errors_total.labels(operation="get_run").inc()
                logger.warning("Polling workflow %s failed: %s", workflow_run_id, exc)
            else:
                await self.engine.update_pipeline_stage(run_id, "ci_workflow", "running", {
                    "workflow_status": workflow_run.get("status"),
                    "conclusion": workflow_run.get("conclusion"),
                    "updated_at": workflow_run.get("updated_at"),
                })
                if workflow_run.get("status") not in ACTIVE_STATUSES:
                    return workflow_run

            waited = self._clock() - started
            if waited >= self.max_wait_seconds:
                raise WorkflowMonitoringTimeout(workflow_run_id, int(waited * 1000))
            await self.scheduler.sleep(self.workflow_poll_interval)

    async def monitor_workflow(self, run_id: str, workflow_run: dict[str, Any]) -> CIAnalysis | None:
        workflow_run_id = workflow_run.get("id")
        with bind_run_id(run_id):
            try:
                return await self._follow(run_id, workflow_run)
            except WorkflowMonitoringTimeout as exc:
                logger.error("Run %s: %s", run_id, exc)
                await self.engine.update_pipeline_stage(run_id, "ci_workflow", "failed", {"timeout_ms": exc.elapsed_ms})
                await self.engine.add_error(run_id, "ci_workflow", "timeout", str(exc), {
                    "workflow_run_id": workflow_run_id,
                })
                await self.engine.complete_pipeline_run(run_id, False, status="timeout")
                return None
            except RunAlreadyTerminal as exc:
                logger.warning("Stopped monitoring workflow %s: %s", workflow_run_id, exc)
                return None
            finally:
                self._monitoring.pop(workflow_run_id, None)

    async def _follow(self, run_id: str, workflow_run: dict[str, Any]) -> CIAnalysis:
        workflow_run_id = workflow_run.get("id")
        await self.engine.update_pipeline_stage(run_id, "ci_workflow", "running", {
            "workflow_run_id": workflow_run_id,
            "workflow_name": workflow_run.get("name"),
            "workflow_status": workflow_run.get("status"),
        })

        final = workflow_run
        if workflow_run.get("status") in ACTIVE_STATUSES:
            final = await self.wait_for_completion(run_id, workflow_run_id)

        conclusion = final.get("conclusion")
        success = conclusion == "success"
        await self.engine.update_pipeline_stage(run_id, "ci_workflow", "completed" if success else "failed", {
            "workflow_status": final.get("status"),
            "conclusion": conclusion,
            "updated_at": final.get("updated_at"),
        })

        try:
            jobs = await self.client.list_jobs(workflow_run_id)
        except CIApiError as exc:
            ci_poll_errors_total.labels(operation="list_jobs").inc()
            logger.warning("Could not list jobs for workflow %s: %s", workflow_run_id, exc)
            await self.engine.add_error(run_id, "build_process", "ci_api", str(exc), {
                "workflow_run_id": workflow_run_id,
                "status_code": exc.status_code,
            })
            jobs = []

        analysis = analyze_jobs(jobs, self.job_duration_threshold_ms)
        if self.fetch_logs:
            analysis.log_analysis = await self._analyze_logs(analysis)

        await self.engine.update_pipeline_stage(run_id, "build_process", "running")
        await self.engine.update_pipeline_stage(
            run_id,
            "build_process",
            "completed" if analysis.build_success else "failed",
            {
                "build_time_ms": analysis.build_time_ms,
                "total_jobs": analysis.total_jobs,
                "successful_jobs": analysis.successful_jobs,
                "failed_jobs": analysis.failed_jobs,
                "bottlenecks": analysis.bottlenecks,
            },
        )
        if analysis.has_deploy:
            await self.engine.update_pipeline_stage(run_id, "deploy", "running")
            await self.engine.update_pipeline_stage(
                run_id,
                "deploy",
                "completed" if analysis.deploy_success else "failed",
                {"deployment_time_ms": analysis.deploy_time_ms},
            )

        site = None
        if self.site_monitor is not None and analysis.has_deploy and analysis.deploy_success:
            site = await self._validate_site(run_id)

        performance = self.analyzer.analyze_workflow_performance(final, jobs, analysis.to_dict())
        await self.engine.update_pipeline_stage(run_id, "performance_analysis", "completed", {
            "score": performance.score,
            "bottleneck_count": len(performance.bottlenecks),
        })

        if not success:
            await self.engine.add_error(
                run_id, "ci_workflow", "workflow_failed", f"Workflow concluded with {conclusion}", {
                    "workflow_run_id": workflow_run_id,
                    "failed_jobs": [j.name for j in analysis.jobs if j.conclusion != "success"],
                },
            )

        metrics = PerformanceMetrics(
            build_time_ms=analysis.build_time_ms,
            deployment_time_ms=analysis.deploy_time_ms,
            site_response_time_ms=site.response_time_ms if site else 0,
        )
        site_ok = site is None or site.available
        run = await self.engine.complete_pipeline_run(run_id, success and site_ok, metrics)
        await self.engine.save_metrics_snapshot(run_id, run.metrics, {
            "ci": analysis.to_dict(),
            "performance": performance.to_dict(),
            "site": site.to_dict() if site else None,
        })
        return analysis

    async def _validate_site(self, run_id: str) -> SiteCheck:
        await self.engine.update_pipeline_stage(run_id, "site_validation", "running", {"url": self.site_monitor.url})
        site = await self.site_monitor.check()
        await self.engine.update_pipeline_stage(
            run_id, "site_validation", "completed" if site.available else "failed", site.to_dict()
        )
        if not site.available:
            await self.engine.add_error(
                run_id, "site_validation", "site_unavailable", f"Site {site.url} unavailable: {site.error}",
                {"status": site.status, "response_time_ms": site.response_time_ms},
            )
        return site

    async def _analyze_logs(self, analysis: CIAnalysis) -> dict[str, dict]:
        results: dict[str, dict] = {}
        candidates = [j for j in analysis.jobs if j.category != "other"][:MAX_LOG_JOBS]
        for job in candidates:
            try:
                text = await self.client.get_job_logs(job.id)
            except CIApiError as exc:
                ci_poll_errors_total.labels(operation="job_logs").inc()
                logger.debug("Logs unavailable for job %s: %s", job.id, exc)
                continue
            results[job.name] = analyze_build_log(text).to_dict()
        return results

    async def start(self, scheduler: Scheduler | None = None) -> None:
        await self.initialize()
        (scheduler or self.scheduler).every("ci-poll", self.poll_interval, self.check_for_new_runs)
