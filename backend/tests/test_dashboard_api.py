"""Tests for the dashboard, health and metrics endpoints."""

import pytest
from httpx import ASGITransport, AsyncClient

from pipewatch.main import create_app

GIT_TRIGGER = {"type": "git", "source": "commit", "timestamp": "2025-01-01T10:00:00Z"}


async def _finished_run(system, success=True, trigger=GIT_TRIGGER, **metrics):
    run_id = await system.engine.create_pipeline_run(trigger)
    await system.engine.update_pipeline_stage(run_id, "build_process", "completed")
    await system.engine.complete_pipeline_run(run_id, success, metrics or None)
    return run_id


@pytest.mark.asyncio
class TestRuns:
    async def test_list_and_filter(self, client, system):
        completed = await _finished_run(system, True)
        failed = await _finished_run(system, False)
        running = await system.engine.create_pipeline_run(GIT_TRIGGER)

        body = (await client.get("/api/pipeline-runs")).json()
        assert body["total"] == 3
        assert [item["id"] for item in body["items"]] == [running, failed, completed]
        assert body["items"][1]["current_stage"] == "build_process"

        only_failed = (await client.get("/api/pipeline-runs", params={"status": "failed"})).json()
        assert [item["id"] for item in only_failed["items"]] == [failed]

        page = (await client.get("/api/pipeline-runs", params={"limit": 1, "offset": 1})).json()
        assert [item["id"] for item in page["items"]] == [failed]

    async def test_query_validation(self, client):
        assert (await client.get("/api/pipeline-runs", params={"status": "exploded"})).status_code == 422
        assert (await client.get("/api/pipeline-runs", params={"limit": 101})).status_code == 422

    async def test_run_detail_and_report(self, client, system):
        run_id = await _finished_run(system, True)

        detail = (await client.get(f"/api/pipeline-runs/{run_id}")).json()
        assert detail["id"] == run_id
        assert detail["stages"][0]["name"] == "build_process"

        report = (await client.get(f"/api/pipeline-runs/{run_id}/report")).json()
        assert report["summary"]["status"] == "completed"

    async def test_unknown_run_is_404(self, client):
        response = await client.get("/api/pipeline-runs/run_20250101_100000_deadbeef")
        assert response.status_code == 404
        assert "not found" in response.json()["detail"]


@pytest.mark.asyncio
class TestMetricsAndStatus:
    async def test_metrics_summary(self, client, system):
        await _finished_run(system, True, build_time_ms=2000)
        await _finished_run(system, True, build_time_ms=4000)
        await _finished_run(system, False, trigger={**GIT_TRIGGER, "type": "manual"})

        body = (await client.get("/api/metrics", params={"timeRange": "1h"})).json()
        assert body["time_range"] == "1h"
        assert body["runs"]["total"] == 3
        assert body["runs"]["completed"] == 2
        assert body["runs"]["failed"] == 1
        assert body["success_rate"] == pytest.approx(66.67)
        assert body["average_build_time_ms"] == 3000
        assert body["by_trigger"] == {"git": 2, "manual": 1}
        assert body["webhooks"]["total"] == 0

    async def test_bad_time_range_is_400(self, client):
        response = await client.get("/api/metrics", params={"timeRange": "forever"})
        assert response.status_code == 400

    async def test_oversized_time_range_is_400(self, client):
        response = await client.get("/api/metrics", params={"timeRange": "999999999999d"})
        assert response.status_code == 400
        assert "too large" in response.json()["detail"]

        assert (await client.get("/api/metrics", params={"timeRange": "3650d"})).status_code == 200

    async def test_status(self, client, system):
        await system.engine.create_pipeline_run(GIT_TRIGGER)

        body = (await client.get("/api/status")).json()
        assert body["status"] == "running"
        assert body["active_runs"] == 1
        assert body["monitors"]["git"] is False
        assert "content-platform" in body["monitors"]["webhooks"]

    async def test_realtime_snapshots(self, client, system):
        await system.engine.create_pipeline_run(GIT_TRIGGER)

        status = (await client.get("/api/realtime/pipeline-status")).json()
        assert status["count"] == 1
        assert status["active_runs"][0]["trigger_type"] == "git"

        flows = (await client.get("/api/realtime/webhook-flows")).json()
        assert flows["flows"] == []
        assert flows["statistics"]["total"] == 0

        performance = (await client.get("/api/realtime/performance")).json()
        assert performance["trends"]["trend"] == "insufficient_data"
        assert performance["recent"] == []

    async def test_health(self, client):
        body = (await client.get("/api/health")).json()
        assert body["status"] == "healthy"
        assert body["environment"] == "test"
        assert body["components"]["database"]["status"] == "connected"
        assert body["components"]["monitors"]["maintenance"] is True

    async def test_prometheus_endpoint(self, client, system):
        await system.engine.create_pipeline_run(GIT_TRIGGER)

        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "pipeline_runs_started_total" in response.text

    async def test_routes_need_a_running_system(self, test_settings):
        app = create_app(test_settings)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            assert (await c.get("/api/status")).status_code == 503
            assert (await c.get("/api/health")).json()["components"]["monitoring"]["status"] == "stopped"


@pytest.mark.asyncio
class TestAlerts:
    async def test_failed_run_alert_lifecycle(self, client, system):
        await _finished_run(system, False)

        alerts = (await client.get("/api/alerts", params={"status": "active"})).json()
        [failure] = alerts
        assert failure["type"] == "pipeline_failure"
        assert failure["signature"] == "pipeline_failure:git/commit"

        acked = await client.post(f"/api/alerts/{failure['id']}/acknowledge")
        assert acked.json()["status"] == "acknowledged"

        resolved = await client.post(f"/api/alerts/{failure['id']}/resolve")
        assert resolved.json()["status"] == "resolved"

        remaining = (await client.get("/api/alerts", params={"status": "resolved"})).json()
        assert [a["id"] for a in remaining] == [failure["id"]]

    async def test_unknown_alert_is_404(self, client):
        response = await client.post("/api/alerts/alert_ffffffffffff/acknowledge")
        assert response.status_code == 404
