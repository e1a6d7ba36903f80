"""
Persisted domain records: pipeline runs, webhook records, metrics, alerts, config.

Every record is a pydantic model so the Store can round-trip it through JSON.
Durations are integer milliseconds; timestamps are aware UTC datetimes.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from pipewatch.timeutil import parse_timestamp, utcnow

TriggerType = Literal["manual", "git", "webhook", "scheduled"]
RunStatus = Literal["running", "completed", "failed", "timeout"]
StageStatus = Literal["pending", "running", "completed", "failed"]
AlertStatus = Literal["active", "acknowledged", "resolved"]
Severity = Literal["low", "medium", "high", "critical"]

TERMINAL_RUN_STATUSES = frozenset({"completed", "failed", "timeout"})
TERMINAL_STAGE_STATUSES = frozenset({"completed", "failed"})


def _aware(value):
    if value is None:
        return None
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError(f"not a valid timestamp: {value!r}")
    return parsed


# ── Pipeline runs ────────────────────────────────────────────────────────────

class TriggerEvent(BaseModel):
    type: TriggerType
    source: str = Field(min_length=1)
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, v):
        return _aware(v)


class ErrorRecord(BaseModel):
    id: str
    stage: str
    type: str
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class PipelineStage(BaseModel):
    name: str
    status: StageStatus = "pending"
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    errors: list[ErrorRecord] = Field(default_factory=list)


class PerformanceMetrics(BaseModel):
    webhook_latency_ms: int = 0
    build_time_ms: int = 0
    deployment_time_ms: int = 0
    site_response_time_ms: int = 0
    total_pipeline_time_ms: int = 0
    error_rate: float = 0.0
    success_rate: float = 0.0
    throughput: float = 0.0


class PipelineRun(BaseModel):
    id: str
    trigger: TriggerEvent
    status: RunStatus = "running"
    success: bool = False
    start_time: datetime
    end_time: datetime | None = None
    duration_ms: int | None = None
    stages: list[PipelineStage] = Field(default_factory=list)
    errors: list[ErrorRecord] = Field(default_factory=list)
    metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def get_stage(self, name: str) -> PipelineStage | None:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None


# ── Webhooks ─────────────────────────────────────────────────────────────────

class WebhookTiming(BaseModel):
    sent: datetime | None = None
    received: datetime | None = None
    processed: datetime | None = None
    processing_time_ms: int | None = None


class WebhookAuthentication(BaseModel):
    method: str = "none"
    success: bool = False
    errors: list[str] = Field(default_factory=list)


class WebhookValidation(BaseModel):
    valid: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class WebhookResponse(BaseModel):
    status: int
    body: Any = None
    headers: dict[str, str] = Field(default_factory=dict)
    timestamp: datetime


class RetryAttempt(BaseModel):
    attempt: int
    timestamp: datetime
    reason: str
    category: str
    delay_ms: int
    success: bool | None = None
    result_timestamp: datetime | None = None


class WebhookRecord(BaseModel):
    id: str
    run_id: str = "unknown"
    source: str
    destination: str
    direction: Literal["inbound", "outbound"] = "inbound"
    payload: Any = None
    headers: dict[str, Any] = Field(default_factory=dict)
    response: WebhookResponse | None = None
    timing: WebhookTiming = Field(default_factory=WebhookTiming)
    authentication: WebhookAuthentication = Field(default_factory=WebhookAuthentication)
    validation: WebhookValidation = Field(default_factory=WebhookValidation)
    retries: list[RetryAttempt] = Field(default_factory=list)
    processed: bool = False
    error_category: str | None = None

    @property
    def natural_timestamp(self) -> datetime:
        return self.timing.sent or self.timing.received or utcnow()


# ── Derived metrics / alerts / config ────────────────────────────────────────

class MetricsSnapshot(BaseModel):
    run_id: str
    timestamp: datetime
    metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    analysis: dict[str, Any] | None = None


class Alert(BaseModel):
    id: str
    type: str
    severity: Severity
    status: AlertStatus = "active"
    message: str
    run_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    signature: str
    occurrences: int = 1
    timestamp: datetime
    last_seen: datetime
    acknowledged_at: datetime | None = None
    resolved_at: datetime | None = None


class StoredConfig(BaseModel):
    id: str = "monitoring"
    values: dict[str, Any] = Field(default_factory=dict)
    last_cleanup: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)
