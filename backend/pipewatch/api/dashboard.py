"""
Dashboard API: run history, reports, aggregated metrics, alerts and
real-time snapshots for the monitoring dashboard.

GET  /api/status
GET  /api/pipeline-runs?limit&offset&status
GET  /api/pipeline-runs/{run_id}
GET  /api/pipeline-runs/{run_id}/report
GET  /api/metrics?timeRange=24h
GET  /api/alerts?status&limit
POST /api/alerts/{alert_id}/acknowledge
POST /api/alerts/{alert_id}/resolve
GET  /api/realtime/pipeline-status
GET  /api/realtime/webhook-flows
GET  /api/realtime/performance
"""

import logging
import re
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query

from pipewatch.api.deps import (
    get_alert_manager,
    get_analyzer,
    get_engine,
    get_store,
    get_system,
    get_webhook_pipeline,
)
from pipewatch.schemas.records import Alert, PipelineRun
from pipewatch.schemas.schemas import (
    MetricsSummary,
    PipelineRunList,
    PipelineRunSummary,
    RunCounts,
    WebhookSummary,
)
from pipewatch.services.alert_manager import AlertManager
from pipewatch.services.engine import PipelineEngine
from pipewatch.services.performance_analyzer import PerformanceAnalyzer
from pipewatch.services.store import RecordKind, Store
from pipewatch.services.webhook_pipeline import WebhookPipeline
from pipewatch.startup import MonitoringSystem
from pipewatch.timeutil import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["dashboard"])

_TIME_RANGE = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
METRICS_SCAN_LIMIT = 1000
MAX_TIME_RANGE_SECONDS = 3650 * 86400


def parse_time_range(value: str) -> timedelta:
    """Parse ``<n><unit>`` with unit in s/m/h/d; raises ValueError otherwise."""
    match = _TIME_RANGE.match(value)
    if not match:
        raise ValueError(f"Invalid time range: {value!r}")
    amount, unit = match.groups()
    seconds = int(amount) * _UNIT_SECONDS[unit]
    if seconds > MAX_TIME_RANGE_SECONDS:
        raise ValueError(f"Time range too large: {value!r} (max 3650d)")
    return timedelta(seconds=seconds)


def _average(values: list[float]) -> float | None:
    return round(sum(values) / len(values), 2) if values else None


# ---------------------------------------------------------------------------
# Status / runs
# ---------------------------------------------------------------------------

@router.get("/status")
async def get_status(system: MonitoringSystem = Depends(get_system)) -> dict:
    return await system.status()


@router.get("/pipeline-runs", response_model=PipelineRunList)
async def list_pipeline_runs(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    status: str | None = Query(None, pattern="^(running|completed|failed|timeout)$"),
    store: Store = Depends(get_store),
) -> PipelineRunList:
    runs = await store.list(RecordKind.PIPELINE_RUN, status=status, limit=limit, offset=offset)
    total = await store.count(RecordKind.PIPELINE_RUN, status=status)
    return PipelineRunList(
        total=total,
        limit=limit,
        offset=offset,
        items=[PipelineRunSummary.from_run(r) for r in runs],
    )


@router.get("/pipeline-runs/{run_id}", response_model=PipelineRun)
async def get_pipeline_run(run_id: str, engine: PipelineEngine = Depends(get_engine)) -> PipelineRun:
    return await engine.get_pipeline_run(run_id)


@router.get("/pipeline-runs/{run_id}/report")
async def get_pipeline_report(run_id: str, engine: PipelineEngine = Depends(get_engine)) -> dict:
    report = await engine.generate_report(run_id)
    return report.to_dict()


# ---------------------------------------------------------------------------
# Aggregated metrics
# ---------------------------------------------------------------------------

@router.get("/metrics", response_model=MetricsSummary)
async def get_metrics(
    time_range: str = Query("24h", alias="timeRange"),
    store: Store = Depends(get_store),
    pipeline: WebhookPipeline = Depends(get_webhook_pipeline),
) -> MetricsSummary:
    try:
        window = parse_time_range(time_range)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    since = utcnow() - window
    runs = await store.list(RecordKind.PIPELINE_RUN, since=since, limit=METRICS_SCAN_LIMIT)

    counts = RunCounts(total=len(runs))
    by_trigger: dict[str, int] = {}
    durations, builds, deploys, latencies = [], [], [], []
    for run in runs:
        setattr(counts, run.status, getattr(counts, run.status) + 1)
        by_trigger[run.trigger.type] = by_trigger.get(run.trigger.type, 0) + 1
        if run.duration_ms is not None:
            durations.append(run.duration_ms)
        if run.metrics.build_time_ms:
            builds.append(run.metrics.build_time_ms)
        if run.metrics.deployment_time_ms:
            deploys.append(run.metrics.deployment_time_ms)
        if run.metrics.webhook_latency_ms:
            latencies.append(run.metrics.webhook_latency_ms)

    finished = counts.completed + counts.failed + counts.timeout
    webhooks = await pipeline.get_webhook_statistics()
    return MetricsSummary(
        time_range=time_range,
        since=since,
        runs=counts,
        success_rate=round(counts.completed / finished * 100, 2) if finished else None,
        average_duration_ms=_average(durations),
        average_build_time_ms=_average(builds),
        average_deployment_time_ms=_average(deploys),
        average_webhook_latency_ms=_average(latencies),
        by_trigger=by_trigger,
        webhooks=webhooks.to_dict(),
    )


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

@router.get("/alerts", response_model=list[Alert])
async def list_alerts(
    status: str | None = Query(None, pattern="^(active|acknowledged|resolved)$"),
    limit: int = Query(50, ge=1, le=200),
    alerts: AlertManager = Depends(get_alert_manager),
) -> list[Alert]:
    return await alerts.list_alerts(status=status, limit=limit)


@router.post("/alerts/{alert_id}/acknowledge", response_model=Alert)
async def acknowledge_alert(alert_id: str, alerts: AlertManager = Depends(get_alert_manager)) -> Alert:
    return await alerts.acknowledge(alert_id)


@router.post("/alerts/{alert_id}/resolve", response_model=Alert)
async def resolve_alert(alert_id: str, alerts: AlertManager = Depends(get_alert_manager)) -> Alert:
    return await alerts.resolve(alert_id)


# ---------------------------------------------------------------------------
# Real-time snapshots
# ---------------------------------------------------------------------------

@router.get("/realtime/pipeline-status")
async def realtime_pipeline_status(engine: PipelineEngine = Depends(get_engine)) -> dict:
    active = engine.get_active_pipeline_runs()
    return {
        "active_runs": [a.to_dict() for a in active],
        "count": len(active),
        "timestamp": utcnow().isoformat(),
    }


@router.get("/realtime/webhook-flows")
async def realtime_webhook_flows(
    limit: int = Query(50, ge=1, le=200),
    store: Store = Depends(get_store),
    pipeline: WebhookPipeline = Depends(get_webhook_pipeline),
) -> dict:
    records = await store.list(RecordKind.WEBHOOK, limit=limit)
    flows = [
        WebhookSummary(
            id=r.id,
            run_id=r.run_id,
            source=r.source,
            destination=r.destination,
            direction=r.direction,
            status=r.response.status if r.response else None,
            error_category=r.error_category,
            processing_time_ms=r.timing.processing_time_ms,
            retries=len(r.retries),
            timestamp=r.natural_timestamp,
        ).model_dump(mode="json")
        for r in records
    ]
    stats = await pipeline.get_webhook_statistics()
    return {"flows": flows, "statistics": stats.to_dict(), "timestamp": utcnow().isoformat()}


@router.get("/realtime/performance")
async def realtime_performance(analyzer: PerformanceAnalyzer = Depends(get_analyzer)) -> dict:
    recent = list(analyzer.history.values())[-5:]
    return {
        "trends": analyzer.get_performance_trends(),
        "common_bottlenecks": analyzer.identify_common_bottlenecks(),
        "recent": [
            {
                "workflow_run_id": a.workflow_run_id,
                "workflow_name": a.workflow_name,
                "score": a.score,
                "total_ms": a.total_ms,
                "bottlenecks": len(a.bottlenecks),
            }
            for a in reversed(recent)
        ],
        "timestamp": utcnow().isoformat(),
    }
