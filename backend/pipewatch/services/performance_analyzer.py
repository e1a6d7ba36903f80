"""
Performance Analyzer: timing, bottlenecks, score and trends for completed CI workflow runs.

Thresholds (milliseconds):
    workflow 600000 (high), queue 120000 (medium), job 300000 (medium)
    phases: setup 60000, build 300000, test 180000, deploy 120000 (medium)

The last ``history_size`` analyses are kept in an insertion-ordered map keyed by
workflow run id; the oldest entry is evicted first.
"""

import logging
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pipewatch.timeutil import elapsed_ms, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS = {
    "workflow_duration": 600000,
    "queue_time": 120000,
    "job_duration": 300000,
}

DEFAULT_PHASE_THRESHOLDS = {
    "setup": 60000,
    "build": 300000,
    "test": 180000,
    "deploy": 120000,
}

PHASE_KEYWORDS = {
    "setup": ("setup", "checkout"),
    "build": ("build", "hugo"),
    "test": ("test",),
    "deploy": ("deploy", "pages"),
}

_SEVERITY_RANK = {"critical": 0, "high": 1, "medium": 2, "low": 3}
_SEVERITY_PENALTY = {"critical": 20, "high": 15, "medium": 10, "low": 5}
_PRIORITY_RANK = {"high": 0, "medium": 1, "low": 2}

TREND_WINDOW = 5
TREND_TOLERANCE = 0.10


@dataclass
class Bottleneck:
    type: str
    severity: str
    duration_ms: int
    threshold_ms: int
    description: str
    stage: str | None = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "severity": self.severity,
            "duration_ms": self.duration_ms,
            "threshold_ms": self.threshold_ms,
            "description": self.description,
            "stage": self.stage,
        }


@dataclass
class WorkflowAnalysis:
    workflow_run_id: str
    workflow_name: str | None
    conclusion: str | None
    timestamp: datetime
    total_ms: int = 0
    queue_ms: int = 0
    execution_ms: int = 0
    phases: dict[str, int] = field(default_factory=dict)
    jobs: list[dict[str, Any]] = field(default_factory=list)
    bottlenecks: list[Bottleneck] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)
    deployment: dict[str, Any] = field(default_factory=dict)
    insights: dict[str, Any] = field(default_factory=dict)
    recommendations: list[dict[str, str]] = field(default_factory=list)
    score: int = 100

    def to_dict(self) -> dict:
        return {
            "workflow_run_id": self.workflow_run_id,
            "workflow_name": self.workflow_name,
            "conclusion": self.conclusion,
            "timestamp": self.timestamp.isoformat(),
            "timing": {
                "total_ms": self.total_ms,
                "queue_ms": self.queue_ms,
                "execution_ms": self.execution_ms,
            },
            "phases": dict(self.phases),
            "jobs": list(self.jobs),
            "bottlenecks": [b.to_dict() for b in self.bottlenecks],
            "metrics": dict(self.metrics),
            "deployment": dict(self.deployment),
            "insights": dict(self.insights),
            "recommendations": list(self.recommendations),
            "score": self.score,
        }


def _seconds(ms: int) -> str:
    return f"{ms / 1000:.0f}s"


def _phase_for(job_name: str) -> str | None:
    lowered = job_name.lower()
    for phase, keywords in PHASE_KEYWORDS.items():
        if any(k in lowered for k in keywords):
            return phase
    return None


class PerformanceAnalyzer:
    def __init__(
        self,
        *,
        history_size: int = 100,
        thresholds: dict[str, int] | None = None,
        phase_thresholds: dict[str, int] | None = None,
    ):
        self.history_size = history_size
        self.thresholds = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
        self.phase_thresholds = {**DEFAULT_PHASE_THRESHOLDS, **(phase_thresholds or {})}
        self.history: OrderedDict[str, WorkflowAnalysis] = OrderedDict()

    def analyze_workflow_performance(
        self,
        workflow_run: dict[str, Any],
        jobs: list[dict[str, Any]],
        build_analysis: dict[str, Any] | None = None,
    ) -> WorkflowAnalysis:
        created = parse_timestamp(workflow_run.get("created_at"))
        updated = parse_timestamp(workflow_run.get("updated_at"))
        started = parse_timestamp(workflow_run.get("run_started_at")) or created

        total_ms = max(0, elapsed_ms(created, updated) or 0)
        queue_ms = max(0, elapsed_ms(created, started) or 0)
        analysis = WorkflowAnalysis(
            workflow_run_id=str(workflow_run.get("id")),
            workflow_name=workflow_run.get("name"),
            conclusion=workflow_run.get("conclusion"),
            timestamp=created or utcnow(),
            total_ms=total_ms,
            queue_ms=queue_ms,
            execution_ms=max(0, total_ms - queue_ms),
        )

        analysis.jobs = [self._job_timing(job) for job in jobs]
        analysis.phases = self._phase_durations(analysis.jobs)
        analysis.bottlenecks = self._identify_bottlenecks(analysis)
        analysis.metrics = self._calculate_metrics(analysis, build_analysis)
        analysis.deployment = self._track_deployment(workflow_run, analysis.jobs)
        analysis.insights = self._generate_insights(analysis)
        analysis.score = self._calculate_score(analysis)
        analysis.recommendations = self._generate_recommendations(analysis)

        self._remember(analysis)
        logger.info(
            "Workflow %s analyzed: score=%d bottlenecks=%d",
            analysis.workflow_run_id, analysis.score, len(analysis.bottlenecks),
        )
        return analysis

    # ── Timing ───────────────────────────────────────────────────────────────

    @staticmethod
    def _job_timing(job: dict[str, Any]) -> dict[str, Any]:
        duration = elapsed_ms(parse_timestamp(job.get("started_at")), parse_timestamp(job.get("completed_at")))
        name = job.get("name") or f"job-{job.get('id')}"
        return {
            "id": job.get("id"),
            "name": name,
            "conclusion": job.get("conclusion"),
            "duration_ms": max(0, duration or 0),
            "step_count": len(job.get("steps") or []),
            "phase": _phase_for(name),
        }

    @staticmethod
    def _phase_durations(jobs: list[dict[str, Any]]) -> dict[str, int]:
        phases = {phase: 0 for phase in PHASE_KEYWORDS}
        for job in jobs:
            if job["phase"] is not None:
                phases[job["phase"]] += job["duration_ms"]
        return phases

    # ── Bottlenecks ──────────────────────────────────────────────────────────

    def _identify_bottlenecks(self, analysis: WorkflowAnalysis) -> list[Bottleneck]:
        found: list[Bottleneck] = []

        limit = self.thresholds["workflow_duration"]
        if analysis.total_ms > limit:
            found.append(Bottleneck(
                type="workflow_duration",
                severity="high",
                duration_ms=analysis.total_ms,
                threshold_ms=limit,
                description=f"Workflow took {_seconds(analysis.total_ms)}, exceeding {_seconds(limit)} threshold",
            ))

        limit = self.thresholds["queue_time"]
        if analysis.queue_ms > limit:
            found.append(Bottleneck(
                type="queue_time",
                severity="medium",
                duration_ms=analysis.queue_ms,
                threshold_ms=limit,
                description=f"Workflow queued for {_seconds(analysis.queue_ms)}, exceeding {_seconds(limit)} threshold",
            ))

        limit = self.thresholds["job_duration"]
        for job in analysis.jobs:
            if job["duration_ms"] > limit:
                found.append(Bottleneck(
                    type="job_duration",
                    severity="medium",
                    duration_ms=job["duration_ms"],
                    threshold_ms=limit,
                    description=f"Job '{job['name']}' took {_seconds(job['duration_ms'])}, exceeding {_seconds(limit)} threshold",
                    stage=job["name"],
                ))

        for phase, duration in analysis.phases.items():
            limit = self.phase_thresholds.get(phase)
            if limit is not None and duration > limit:
                found.append(Bottleneck(
                    type="phase_duration",
                    severity="medium",
                    duration_ms=duration,
                    threshold_ms=limit,
                    description=f"{phase.capitalize()} phase took {_seconds(duration)}, exceeding {_seconds(limit)} threshold",
                    stage=phase,
                ))

        found.sort(key=lambda b: (_SEVERITY_RANK.get(b.severity, 9), -b.duration_ms))
        return found

    # ── Metrics ──────────────────────────────────────────────────────────────

    @staticmethod
    def _calculate_metrics(analysis: WorkflowAnalysis, build_analysis: dict[str, Any] | None) -> dict[str, Any]:
        jobs = analysis.jobs
        total_jobs = len(jobs)
        successful = sum(1 for j in jobs if j["conclusion"] == "success")
        success_rate = successful / total_jobs if total_jobs else 1.0
        step_count = sum(j["step_count"] for j in jobs)
        cpu_time = sum(j["duration_ms"] for j in jobs)

        metrics = {
            "total_jobs": total_jobs,
            "successful_jobs": successful,
            "failed_jobs": total_jobs - successful,
            "success_rate": round(success_rate, 4),
            "error_rate": round(1 - success_rate, 4),
            "step_count": step_count,
            "parallelization": 1.0 if total_jobs <= 1 else min(1.0, total_jobs / 4),
            "resource_efficiency": round(min(1.0, cpu_time / analysis.total_ms), 4) if analysis.total_ms else 0.0,
            "time_per_step_ms": round(analysis.execution_ms / step_count, 2) if step_count else 0.0,
        }
        if build_analysis:
            metrics["build_time_ms"] = build_analysis.get("build_time_ms", 0)
            metrics["deploy_time_ms"] = build_analysis.get("deploy_time_ms", 0)
        return metrics

    @staticmethod
    def _track_deployment(workflow_run: dict[str, Any], jobs: list[dict[str, Any]]) -> dict[str, Any]:
        deploy_jobs = [j for j in jobs if j["phase"] == "deploy"]
        successful = [j for j in deploy_jobs if j["conclusion"] == "success"]
        return {
            "deploy_jobs": len(deploy_jobs),
            "successful_jobs": len(successful),
            "failed_jobs": len(deploy_jobs) - len(successful),
            "deployment_time_ms": sum(j["duration_ms"] for j in deploy_jobs),
            "deployment_success": (
                workflow_run.get("conclusion") == "success" and len(successful) == len(deploy_jobs)
            ),
        }

    # ── Insights / score / recommendations ───────────────────────────────────

    def _generate_insights(self, analysis: WorkflowAnalysis) -> dict[str, Any]:
        success_rate = analysis.metrics["success_rate"]
        strengths: list[str] = []
        weaknesses: list[str] = []

        if success_rate >= 0.95:
            strengths.append(f"High job success rate ({success_rate * 100:.0f}%)")
        if analysis.total_ms < self.thresholds["workflow_duration"] / 2:
            strengths.append("Fast workflow execution")
        if not analysis.bottlenecks:
            strengths.append("No performance bottlenecks detected")

        if success_rate < 0.9:
            weaknesses.append(f"Low job success rate ({success_rate * 100:.0f}%)")
        if any(b.severity == "high" for b in analysis.bottlenecks):
            weaknesses.append("Critical performance bottlenecks present")
        if analysis.queue_ms > self.thresholds["queue_time"]:
            weaknesses.append("Long queue time before execution")

        return {
            "strengths": strengths,
            "weaknesses": weaknesses,
            "summary": (
                f"Workflow completed in {analysis.total_ms / 1000:.1f}s "
                f"with {success_rate * 100:.0f}% job success rate"
            ),
        }

    def _calculate_score(self, analysis: WorkflowAnalysis) -> int:
        score = 100.0
        ratio = analysis.total_ms / self.thresholds["workflow_duration"]
        if ratio > 1:
            score -= min(30.0, (ratio - 1) * 20)
        for bottleneck in analysis.bottlenecks:
            score -= _SEVERITY_PENALTY.get(bottleneck.severity, 0)
        score -= (1 - analysis.metrics["success_rate"]) * 20
        return int(round(max(0.0, min(100.0, score))))

    @staticmethod
    def _generate_recommendations(analysis: WorkflowAnalysis) -> list[dict[str, str]]:
        recs: list[dict[str, str]] = []
        for b in analysis.bottlenecks:
            if b.type == "workflow_duration":
                recs.append({
                    "priority": "high",
                    "category": "performance",
                    "message": "Consider parallelizing jobs or caching dependencies to cut total workflow time",
                })
            elif b.type == "queue_time":
                recs.append({
                    "priority": "medium",
                    "category": "infrastructure",
                    "message": "Long queue times suggest runner capacity limits; consider self-hosted runners",
                })
            elif b.type == "job_duration":
                recs.append({
                    "priority": "medium",
                    "category": "optimization",
                    "message": f"Optimize job '{b.stage}' by caching dependencies or splitting it into parallel jobs",
                })
            elif b.type == "phase_duration":
                recs.append({
                    "priority": "medium",
                    "category": "optimization",
                    "message": f"Reduce {b.stage} phase time (currently {_seconds(b.duration_ms)})",
                })

        if analysis.metrics["parallelization"] < 0.5:
            recs.append({
                "priority": "low",
                "category": "architecture",
                "message": "Split the workflow into more independent jobs so they can run in parallel",
            })
        if analysis.metrics["success_rate"] < 0.95:
            recs.append({
                "priority": "high",
                "category": "reliability",
                "message": "Investigate failing jobs to improve workflow reliability",
            })

        recs.sort(key=lambda r: _PRIORITY_RANK.get(r["priority"], 9))
        return recs

    # ── History / trends ─────────────────────────────────────────────────────

    def _remember(self, analysis: WorkflowAnalysis) -> None:
        key = analysis.workflow_run_id
        self.history.pop(key, None)
        self.history[key] = analysis
        while len(self.history) > self.history_size:
            evicted, _ = self.history.popitem(last=False)
            logger.debug("Evicted workflow %s from performance history", evicted)

    def get_analysis(self, workflow_run_id: str | int) -> WorkflowAnalysis | None:
        return self.history.get(str(workflow_run_id))

    def get_performance_trends(self) -> dict[str, Any]:
        entries = list(self.history.values())
        if not entries:
            return {"runs_analyzed": 0, "trend": "insufficient_data"}

        def _avg(items, attr):
            values = [attr(a) for a in items]
            return sum(values) / len(values) if values else 0.0

        def _duration(a):
            return a.total_ms

        def _success(a):
            return a.metrics["success_rate"]

        recent = entries[-TREND_WINDOW:]
        previous = entries[-2 * TREND_WINDOW:-TREND_WINDOW]

        result = {
            "runs_analyzed": len(entries),
            "average_duration_ms": round(_avg(entries, _duration), 2),
            "average_success_rate": round(_avg(entries, _success), 4),
            "average_score": round(_avg(entries, lambda a: a.score), 2),
            "recent_average_duration_ms": round(_avg(recent, _duration), 2),
        }
        if not previous:
            result.update(duration_trend="insufficient_data", success_trend="insufficient_data",
                          trend="insufficient_data")
            return result

        # Lower duration is better; higher success rate is better.
        duration_trend = _trend(_avg(recent, _duration), _avg(previous, _duration), higher_is_better=False)
        success_trend = _trend(_avg(recent, _success), _avg(previous, _success), higher_is_better=True)
        if "degrading" in (duration_trend, success_trend):
            overall = "degrading"
        elif "improving" in (duration_trend, success_trend):
            overall = "improving"
        else:
            overall = "stable"

        result.update(duration_trend=duration_trend, success_trend=success_trend, trend=overall)
        return result

    def identify_common_bottlenecks(self, limit: int = 10) -> list[dict[str, Any]]:
        counts: Counter = Counter()
        for analysis in self.history.values():
            for b in {(b.type, b.stage) for b in analysis.bottlenecks}:
                counts[b] += 1
        total = len(self.history) or 1
        return [
            {"type": kind, "stage": stage, "occurrences": n, "frequency": round(n / total, 4)}
            for (kind, stage), n in counts.most_common(limit)
        ]


def _trend(recent: float, previous: float, *, higher_is_better: bool) -> str:
    if previous == 0:
        return "stable"
    change = (recent - previous) / previous
    if abs(change) <= TREND_TOLERANCE:
        return "stable"
    rising = change > 0
    return "improving" if rising == higher_is_better else "degrading"
