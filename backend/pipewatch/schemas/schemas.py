"""
Pydantic schemas for API request/response models.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from pipewatch.schemas.records import PipelineRun


# ── Pipeline runs ──

class PipelineRunSummary(BaseModel):
    id: str
    status: str
    success: bool
    trigger_type: str
    trigger_source: str
    start_time: datetime
    end_time: datetime | None = None
    duration_ms: int | None = None
    current_stage: str | None = None
    stage_count: int = 0
    error_count: int = 0

    @classmethod
    def from_run(cls, run: PipelineRun) -> "PipelineRunSummary":
        return cls(
            id=run.id,
            status=run.status,
            success=run.success,
            trigger_type=run.trigger.type,
            trigger_source=run.trigger.source,
            start_time=run.start_time,
            end_time=run.end_time,
            duration_ms=run.duration_ms,
            current_stage=run.stages[-1].name if run.stages else None,
            stage_count=len(run.stages),
            error_count=len(run.errors),
        )


class PipelineRunList(BaseModel):
    total: int
    limit: int
    offset: int
    items: list[PipelineRunSummary]


# ── Metrics ──

class RunCounts(BaseModel):
    total: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    timeout: int = 0


class MetricsSummary(BaseModel):
    time_range: str
    since: datetime
    runs: RunCounts
    success_rate: float | None = None
    average_duration_ms: float | None = None
    average_build_time_ms: float | None = None
    average_deployment_time_ms: float | None = None
    average_webhook_latency_ms: float | None = None
    by_trigger: dict[str, int] = Field(default_factory=dict)
    webhooks: dict[str, Any] = Field(default_factory=dict)


# ── Webhooks ──

class WebhookAccepted(BaseModel):
    webhook_id: str
    run_id: str | None = None
    status: str = "accepted"


class WebhookRejected(BaseModel):
    detail: str
    webhook_id: str
    run_id: str | None = None
    error_category: str | None = None


class WebhookSummary(BaseModel):
    id: str
    run_id: str
    source: str
    destination: str
    direction: str
    status: int | None = None
    error_category: str | None = None
    processing_time_ms: int | None = None
    retries: int = 0
    timestamp: datetime


# ── Health ──

class HealthResponse(BaseModel):
    status: str
    environment: str
    version: str
    components: dict[str, Any]
    timestamp: datetime
