"""Tests for workflow performance analysis, bottlenecks and trends."""

from datetime import datetime, timedelta, timezone

from pipewatch.services.performance_analyzer import PerformanceAnalyzer

T0 = datetime(2025, 1, 1, 10, 0, 0, tzinfo=timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


def _workflow(run_id=1, total_s=480, queue_s=30, conclusion="success"):
    return {
        "id": run_id,
        "name": "Deploy site",
        "conclusion": conclusion,
        "created_at": _iso(T0),
        "run_started_at": _iso(T0 + timedelta(seconds=queue_s)),
        "updated_at": _iso(T0 + timedelta(seconds=total_s)),
    }


def _job(name, duration_s, conclusion="success", job_id=1, steps=3):
    start = T0 + timedelta(seconds=30)
    return {
        "id": job_id,
        "name": name,
        "conclusion": conclusion,
        "started_at": _iso(start),
        "completed_at": _iso(start + timedelta(seconds=duration_s)),
        "steps": [{"name": f"step {i}"} for i in range(steps)],
    }


class TestWorkflowAnalysis:
    def test_single_slow_job_is_one_bottleneck(self):
        analyzer = PerformanceAnalyzer()
        analysis = analyzer.analyze_workflow_performance(_workflow(), [_job("lint", 420)])

        assert analysis.total_ms == 480000
        assert analysis.queue_ms == 30000
        assert analysis.execution_ms == 450000
        assert len(analysis.bottlenecks) == 1
        bottleneck = analysis.bottlenecks[0]
        assert bottleneck.type == "job_duration"
        assert bottleneck.severity == "medium"
        assert bottleneck.stage == "lint"
        assert analysis.score == 90
        assert analysis.recommendations[0]["category"] == "optimization"

    def test_bottlenecks_sorted_by_severity_then_duration(self):
        analyzer = PerformanceAnalyzer()
        analysis = analyzer.analyze_workflow_performance(
            _workflow(total_s=900, queue_s=200),
            [_job("build site", 400), _job("deploy to pages", 150)],
        )

        kinds = [b.type for b in analysis.bottlenecks]
        assert kinds[0] == "workflow_duration"
        assert set(kinds) == {"workflow_duration", "queue_time", "job_duration", "phase_duration"}
        mediums = [b.duration_ms for b in analysis.bottlenecks[1:]]
        assert mediums == sorted(mediums, reverse=True)
        assert "Critical performance bottlenecks present" in analysis.insights["weaknesses"]

    def test_metrics_and_deployment(self):
        analyzer = PerformanceAnalyzer()
        analysis = analyzer.analyze_workflow_performance(
            _workflow(),
            [_job("build", 60), _job("deploy", 30, conclusion="failure")],
            {"build_time_ms": 60000, "deploy_time_ms": 30000},
        )

        assert analysis.metrics["total_jobs"] == 2
        assert analysis.metrics["success_rate"] == 0.5
        assert analysis.metrics["parallelization"] == 0.5
        assert analysis.metrics["step_count"] == 6
        assert analysis.metrics["build_time_ms"] == 60000
        assert analysis.deployment["deploy_jobs"] == 1
        assert analysis.deployment["deployment_success"] is False
        assert analysis.recommendations[0]["priority"] == "high"

    def test_no_jobs(self):
        analysis = PerformanceAnalyzer().analyze_workflow_performance(_workflow(total_s=60), [])
        assert analysis.metrics["success_rate"] == 1.0
        assert analysis.bottlenecks == []
        assert analysis.score == 100
        assert "No performance bottlenecks detected" in analysis.insights["strengths"]

    def test_custom_job_threshold(self):
        analyzer = PerformanceAnalyzer(thresholds={"job_duration": 60000})
        analysis = analyzer.analyze_workflow_performance(_workflow(), [_job("lint", 90)])
        assert [b.type for b in analysis.bottlenecks] == ["job_duration"]


class TestHistoryAndTrends:
    def test_history_is_bounded_oldest_first(self):
        analyzer = PerformanceAnalyzer(history_size=3)
        for run_id in range(1, 6):
            analyzer.analyze_workflow_performance(_workflow(run_id=run_id), [])

        assert list(analyzer.history) == ["3", "4", "5"]
        assert analyzer.get_analysis(1) is None
        assert analyzer.get_analysis(5).workflow_run_id == "5"

    def test_reanalysis_moves_entry_to_newest(self):
        analyzer = PerformanceAnalyzer(history_size=2)
        analyzer.analyze_workflow_performance(_workflow(run_id=1), [])
        analyzer.analyze_workflow_performance(_workflow(run_id=2), [])
        analyzer.analyze_workflow_performance(_workflow(run_id=1), [])
        analyzer.analyze_workflow_performance(_workflow(run_id=3), [])

        assert list(analyzer.history) == ["1", "3"]

    def test_trends_need_two_windows(self):
        analyzer = PerformanceAnalyzer()
        assert analyzer.get_performance_trends() == {"runs_analyzed": 0, "trend": "insufficient_data"}

        for run_id in range(3):
            analyzer.analyze_workflow_performance(_workflow(run_id=run_id), [])
        trends = analyzer.get_performance_trends()
        assert trends["runs_analyzed"] == 3
        assert trends["trend"] == "insufficient_data"
        assert trends["average_duration_ms"] == 480000

    def test_slower_recent_runs_are_degrading(self):
        analyzer = PerformanceAnalyzer()
        for run_id in range(5):
            analyzer.analyze_workflow_performance(_workflow(run_id=run_id, total_s=300), [])
        for run_id in range(5, 10):
            analyzer.analyze_workflow_performance(_workflow(run_id=run_id, total_s=480), [])

        trends = analyzer.get_performance_trends()
        assert trends["duration_trend"] == "degrading"
        assert trends["success_trend"] == "stable"
        assert trends["trend"] == "degrading"

    def test_faster_recent_runs_are_improving(self):
        analyzer = PerformanceAnalyzer()
        for run_id in range(5):
            analyzer.analyze_workflow_performance(_workflow(run_id=run_id, total_s=480), [])
        for run_id in range(5, 10):
            analyzer.analyze_workflow_performance(_workflow(run_id=run_id, total_s=300), [])

        assert analyzer.get_performance_trends()["trend"] == "improving"

    def test_common_bottlenecks(self):
        analyzer = PerformanceAnalyzer()
        for run_id in range(4):
            jobs = [_job("lint", 420)] if run_id % 2 == 0 else []
            analyzer.analyze_workflow_performance(_workflow(run_id=run_id), jobs)

        common = analyzer.identify_common_bottlenecks()
        assert common == [{"type": "job_duration", "stage": "lint", "occurrences": 2, "frequency": 0.5}]
