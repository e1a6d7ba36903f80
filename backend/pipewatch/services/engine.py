"""
Pipeline Engine: run lifecycle, stage transitions, error attachment and reports.

Every other component opens runs and advances stages through this class; none
of them write pipeline runs to the Store directly.

State machine:
    run:   running → completed | failed | timeout   (terminal runs are immutable)
    stage: pending → running → completed | failed

Writes to one run are serialized with a per-run lock and always re-read the
persisted record before merging, so concurrent monitors never lose updates.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from pipewatch.exceptions import InvalidTrigger, PipewatchError, RunAlreadyTerminal, RunNotFound
from pipewatch.middleware.metrics import (
    active_pipeline_runs,
    pipeline_duration_seconds,
    pipeline_runs_started_total,
    pipeline_runs_total,
    pipeline_stage_transitions_total,
)
from pipewatch.schemas.records import (
    TERMINAL_RUN_STATUSES,
    TERMINAL_STAGE_STATUSES,
    ErrorRecord,
    MetricsSnapshot,
    PerformanceMetrics,
    PipelineRun,
    PipelineStage,
    StoredConfig,
    TriggerEvent,
)
from pipewatch.services import events
from pipewatch.services.events import EventBus
from pipewatch.services.id_generator import generate_error_id, generate_run_id
from pipewatch.services.locks import KeyedLocks
from pipewatch.services.store import RecordKind, Store
from pipewatch.timeutil import elapsed_ms, utcnow

logger = logging.getLogger(__name__)

STAGE_STATUSES = frozenset({"pending", "running", "completed", "failed"})
_RUN_ID_ATTEMPTS = 5


@dataclass
class ActiveRunSummary:
    run_id: str
    trigger_type: str
    trigger_source: str
    start_time: datetime
    status: str = "running"
    stage_count: int = 0
    last_stage: str | None = None
    error_count: int = 0

    @classmethod
    def from_run(cls, run: PipelineRun) -> "ActiveRunSummary":
        return cls(
            run_id=run.id,
            trigger_type=run.trigger.type,
            trigger_source=run.trigger.source,
            start_time=run.start_time,
            status=run.status,
            stage_count=len(run.stages),
            last_stage=run.stages[-1].name if run.stages else None,
            error_count=len(run.errors),
        )

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "trigger_type": self.trigger_type,
            "trigger_source": self.trigger_source,
            "start_time": self.start_time.isoformat(),
            "status": self.status,
            "stage_count": self.stage_count,
            "last_stage": self.last_stage,
            "error_count": self.error_count,
        }


@dataclass
class StageSummary:
    name: str
    status: str
    start_time: datetime | None
    end_time: datetime | None
    duration_ms: int | None
    error_count: int


@dataclass
class PipelineReport:
    run_id: str
    status: str
    success: bool
    trigger_type: str
    trigger_source: str
    start_time: datetime
    end_time: datetime | None
    duration_ms: int | None
    stages: list[StageSummary] = field(default_factory=list)
    errors: list[ErrorRecord] = field(default_factory=list)
    webhook_count: int = 0
    metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    detailed_metrics: MetricsSnapshot | None = None
    generated_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "summary": {
                "status": self.status,
                "success": self.success,
                "duration_ms": self.duration_ms,
                "trigger_type": self.trigger_type,
                "trigger_source": self.trigger_source,
                "start_time": self.start_time.isoformat(),
                "end_time": self.end_time.isoformat() if self.end_time else None,
            },
            "stages": [
                {
                    "name": s.name,
                    "status": s.status,
                    "start_time": s.start_time.isoformat() if s.start_time else None,
                    "end_time": s.end_time.isoformat() if s.end_time else None,
                    "duration_ms": s.duration_ms,
                    "errors": s.error_count,
                }
                for s in self.stages
            ],
            "errors": [e.model_dump(mode="json") for e in self.errors],
            "webhooks": self.webhook_count,
            "metrics": self.metrics.model_dump(mode="json"),
            "detailed_metrics": (
                self.detailed_metrics.model_dump(mode="json") if self.detailed_metrics else None
            ),
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
        }


def _metrics_update(metrics: PerformanceMetrics | dict | None) -> dict[str, Any]:
    if metrics is None:
        return {}
    if isinstance(metrics, PerformanceMetrics):
        return metrics.model_dump(exclude_unset=True)
    known = PerformanceMetrics.model_fields
    unknown = set(metrics) - set(known)
    if unknown:
        logger.debug("Ignoring unknown metric fields: %s", sorted(unknown))
    return {k: v for k, v in metrics.items() if k in known}


class PipelineEngine:
    """Owns pipeline run state; the Store is the source of truth."""

    def __init__(
        self,
        store: Store,
        bus: EventBus | None = None,
        *,
        monitoring_timeout_ms: int = 2100000,
        max_records: int = 1000,
        cleanup_interval_seconds: int = 86400,
        max_active_runs: int = 500,
    ):
        self.store = store
        self.bus = bus or EventBus()
        self.monitoring_timeout_ms = monitoring_timeout_ms
        self.max_records = max_records
        self.cleanup_interval = timedelta(seconds=cleanup_interval_seconds)
        self.max_active_runs = max_active_runs
        self._active: OrderedDict[str, ActiveRunSummary] = OrderedDict()
        self._locks = KeyedLocks()

    async def initialize(self) -> None:
        """Rebuild the active-run index from persisted running runs."""
        running = await self.store.list(
            RecordKind.PIPELINE_RUN, status="running", limit=self.max_active_runs
        )
        self._active.clear()
        for run in reversed(running):
            self._track(run)
        logger.info("Engine initialized with %d active runs", len(self._active))

    # ── Active index ─────────────────────────────────────────────────────────

    def _track(self, run: PipelineRun) -> None:
        self._active[run.id] = ActiveRunSummary.from_run(run)
        self._active.move_to_end(run.id)
        while len(self._active) > self.max_active_runs:
            evicted, _ = self._active.popitem(last=False)
            logger.warning("Active run index full, dropped %s from index", evicted)
        active_pipeline_runs.set(len(self._active))

    def _untrack(self, run_id: str) -> None:
        self._active.pop(run_id, None)
        active_pipeline_runs.set(len(self._active))

    # ── Loading ──────────────────────────────────────────────────────────────

    async def get_pipeline_run(self, run_id: str) -> PipelineRun:
        run = await self.store.get(RecordKind.PIPELINE_RUN, run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    async def _load_mutable(self, run_id: str) -> PipelineRun:
        run = await self.get_pipeline_run(run_id)
        if run.is_terminal:
            raise RunAlreadyTerminal(run_id, run.status)
        return run

    async def _publish(self, event_type: str, run: PipelineRun, **extra) -> None:
        data = {
            "run_id": run.id,
            "status": run.status,
            "success": run.success,
            "trigger_type": run.trigger.type,
            "trigger_source": run.trigger.source,
            **extra,
        }
        await self.bus.publish(event_type, data)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    @staticmethod
    def _validate_trigger(trigger: TriggerEvent | dict) -> TriggerEvent:
        if isinstance(trigger, TriggerEvent):
            return trigger
        if not isinstance(trigger, dict):
            raise InvalidTrigger(f"Trigger must be a mapping, got {type(trigger).__name__}")
        try:
            return TriggerEvent.model_validate(trigger)
        except ValidationError as exc:
            errors = [
                f"{'.'.join(str(p) for p in err['loc']) or 'trigger'}: {err['msg']}"
                for err in exc.errors()
            ]
            raise InvalidTrigger(f"Invalid trigger event: {'; '.join(errors)}", errors=errors) from exc

    async def _mint_run_id(self) -> str:
        for _ in range(_RUN_ID_ATTEMPTS):
            run_id = generate_run_id()
            if await self.store.get(RecordKind.PIPELINE_RUN, run_id) is None:
                return run_id
            logger.warning("Run id collision on %s, minting another", run_id)
        raise PipewatchError("Could not mint a unique run id")

    async def create_pipeline_run(self, trigger: TriggerEvent | dict) -> str:
        """Validate the trigger, persist a new running run and return its id."""
        trigger = self._validate_trigger(trigger)
        run_id = await self._mint_run_id()
        run = PipelineRun(id=run_id, trigger=trigger, status="running", start_time=utcnow())

        await self.store.save(RecordKind.PIPELINE_RUN, run)
        self._track(run)
        pipeline_runs_started_total.labels(trigger_type=trigger.type).inc()
        logger.info("Pipeline run %s started (%s/%s)", run_id, trigger.type, trigger.source)

        await self._publish(events.PIPELINE_STARTED, run, start_time=run.start_time.isoformat())
        return run_id

    async def update_pipeline_stage(
        self,
        run_id: str,
        name: str,
        status: str,
        data: dict[str, Any] | None = None,
    ) -> PipelineStage:
        """Create or advance a named stage, merging ``data`` into what it already holds.

        A stage that already reached completed/failed keeps that status; later
        calls only merge data into it.
        """
        if status not in STAGE_STATUSES:
            raise ValueError(f"Unknown stage status: {status}")

        async with self._locks(run_id):
            run = await self._load_mutable(run_id)
            now = utcnow()

            stage = run.get_stage(name)
            if stage is None:
                stage = PipelineStage(name=name, status="pending", start_time=now)
                run.stages.append(stage)

            previous = stage.status
            if previous in TERMINAL_STAGE_STATUSES:
                if status != previous:
                    logger.debug(
                        "Stage %s on %s already %s, ignoring transition to %s",
                        name, run_id, previous, status,
                    )
            else:
                stage.status = status
                if status in TERMINAL_STAGE_STATUSES:
                    stage.end_time = max(now, stage.start_time)
                    stage.duration_ms = elapsed_ms(stage.start_time, stage.end_time)

            if data:
                stage.data.update(data)

            await self.store.save(RecordKind.PIPELINE_RUN, run)
            self._track(run)

        if stage.status != previous:
            pipeline_stage_transitions_total.labels(status=stage.status).inc()
        logger.debug("Run %s stage %s: %s -> %s", run_id, name, previous, stage.status)

        await self._publish(
            events.PIPELINE_UPDATED, run, stage=stage.model_dump(mode="json")
        )
        return stage

    async def add_error(
        self,
        run_id: str,
        stage: str,
        error_type: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> ErrorRecord:
        """Attach an ErrorRecord to the run. The run status is left unchanged."""
        async with self._locks(run_id):
            run = await self._load_mutable(run_id)
            error = ErrorRecord(
                id=generate_error_id(),
                stage=stage,
                type=error_type,
                message=message,
                context=context or {},
                timestamp=utcnow(),
            )
            run.errors.append(error)
            owning_stage = run.get_stage(stage)
            if owning_stage is not None:
                owning_stage.errors.append(error)

            await self.store.save(RecordKind.PIPELINE_RUN, run)
            self._track(run)

        logger.warning("Run %s error in %s [%s]: %s", run_id, stage, error_type, message)
        await self._publish(events.PIPELINE_UPDATED, run, error=error.model_dump(mode="json"))
        return error

    async def complete_pipeline_run(
        self,
        run_id: str,
        success: bool,
        metrics: PerformanceMetrics | dict | None = None,
        *,
        status: str | None = None,
    ) -> PipelineRun:
        """Move the run to a terminal status and derive its summary metrics."""
        status = status or ("completed" if success else "failed")
        if status not in TERMINAL_RUN_STATUSES:
            raise ValueError(f"Not a terminal run status: {status}")

        async with self._locks(run_id):
            run = await self._load_mutable(run_id)
            now = utcnow()

            run.status = status
            run.success = success
            run.end_time = max(now, run.start_time)
            run.duration_ms = elapsed_ms(run.start_time, run.end_time)

            merged = run.metrics.model_copy(update=_metrics_update(metrics))
            merged.total_pipeline_time_ms = run.duration_ms
            if run.stages:
                merged.error_rate = round(min(100.0, len(run.errors) / len(run.stages) * 100), 2)
            else:
                merged.error_rate = 100.0 if run.errors else 0.0
            merged.success_rate = round(100.0 - merged.error_rate, 2)
            run.metrics = merged

            await self.store.save(RecordKind.PIPELINE_RUN, run)
            self._untrack(run_id)

        pipeline_runs_total.labels(trigger_type=run.trigger.type, status=status).inc()
        pipeline_duration_seconds.observe(run.duration_ms / 1000)
        logger.info(
            "Pipeline run %s %s in %dms (success=%s)", run_id, status, run.duration_ms, success
        )

        await self._publish(
            events.PIPELINE_COMPLETED,
            run,
            duration_ms=run.duration_ms,
            metrics=run.metrics.model_dump(mode="json"),
            error_count=len(run.errors),
        )
        return run

    async def save_metrics_snapshot(
        self,
        run_id: str,
        metrics: PerformanceMetrics,
        analysis: dict[str, Any] | None = None,
    ) -> MetricsSnapshot:
        """Store refined metrics for a run under the metrics kind (allowed after completion)."""
        await self.get_pipeline_run(run_id)
        snapshot = MetricsSnapshot(run_id=run_id, timestamp=utcnow(), metrics=metrics, analysis=analysis)
        await self.store.save(RecordKind.METRICS, snapshot)
        return snapshot

    # ── Queries ──────────────────────────────────────────────────────────────

    async def generate_report(self, run_id: str) -> PipelineReport:
        run = await self.get_pipeline_run(run_id)
        webhook_count = await self.store.count(RecordKind.WEBHOOK, run_id=run_id)
        snapshot = await self.store.get(RecordKind.METRICS, run_id)

        return PipelineReport(
            run_id=run.id,
            status=run.status,
            success=run.success,
            trigger_type=run.trigger.type,
            trigger_source=run.trigger.source,
            start_time=run.start_time,
            end_time=run.end_time,
            duration_ms=run.duration_ms,
            stages=[
                StageSummary(
                    name=s.name,
                    status=s.status,
                    start_time=s.start_time,
                    end_time=s.end_time,
                    duration_ms=s.duration_ms,
                    error_count=len(s.errors),
                )
                for s in run.stages
            ],
            errors=list(run.errors),
            webhook_count=webhook_count,
            metrics=run.metrics,
            detailed_metrics=snapshot,
            generated_at=utcnow(),
        )

    def get_active_pipeline_runs(self) -> list[ActiveRunSummary]:
        return list(self._active.values())

    async def get_recent_pipeline_runs(self, limit: int = 10) -> list[PipelineRun]:
        return await self.store.list(RecordKind.PIPELINE_RUN, limit=limit)

    # ── Maintenance ──────────────────────────────────────────────────────────

    async def timeout_stale_runs(self, now: datetime | None = None) -> list[str]:
        """Fail runs that stayed running longer than the monitoring timeout."""
        now = now or utcnow()
        timed_out: list[str] = []
        for run in await self.store.list(RecordKind.PIPELINE_RUN, status="running"):
            age_ms = elapsed_ms(run.start_time, now)
            if age_ms <= self.monitoring_timeout_ms:
                continue
            try:
                await self.add_error(
                    run.id,
                    "pipeline",
                    "timeout",
                    f"Pipeline run exceeded {self.monitoring_timeout_ms}ms without completing",
                    {"age_ms": age_ms, "last_stage": run.stages[-1].name if run.stages else None},
                )
                await self.complete_pipeline_run(run.id, False, status="timeout")
            except RunAlreadyTerminal:
                continue
            timed_out.append(run.id)
        if timed_out:
            logger.warning("Timed out %d stale pipeline runs", len(timed_out))
        return timed_out

    async def run_cleanup(self, now: datetime | None = None) -> dict[str, int] | None:
        """Truncate the Store when the cleanup interval has elapsed since the last pass."""
        now = now or utcnow()
        config = await self.store.get(RecordKind.CONFIG, "monitoring") or StoredConfig()
        if config.last_cleanup and now - config.last_cleanup < self.cleanup_interval:
            return None

        removed = await self.store.cleanup(self.max_records)
        config.last_cleanup = now
        config.updated_at = now
        await self.store.save(RecordKind.CONFIG, config)
        return removed

    async def run_maintenance(self) -> None:
        await self.timeout_stale_runs()
        await self.run_cleanup()
