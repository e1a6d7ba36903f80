"""Tests for the SQLite-backed record Store."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from pipewatch.exceptions import StoreError
from pipewatch.schemas.records import (
    Alert,
    MetricsSnapshot,
    PerformanceMetrics,
    PipelineRun,
    RetryAttempt,
    StoredConfig,
    TriggerEvent,
    WebhookAuthentication,
    WebhookRecord,
    WebhookResponse,
    WebhookTiming,
)
from pipewatch.services.store import RecordKind, Store

T0 = datetime(2025, 1, 1, 10, 0, 0, tzinfo=timezone.utc)


def _run(run_id: str, start: datetime, status: str = "running", trigger_type: str = "git") -> PipelineRun:
    return PipelineRun(
        id=run_id,
        trigger=TriggerEvent(type=trigger_type, source="commit", timestamp=start),
        status=status,
        start_time=start,
    )


@pytest.mark.asyncio
class TestRoundTrip:
    async def test_pipeline_run(self, store):
        run = _run("run_20250101_100000_aaaaaaaa", T0)
        run.metrics = PerformanceMetrics(build_time_ms=1200, error_rate=12.5)
        await store.save(RecordKind.PIPELINE_RUN, run)
        assert await store.get(RecordKind.PIPELINE_RUN, run.id) == run

    async def test_webhook_record(self, store):
        record = WebhookRecord(
            id="webhook_0123456789ab",
            run_id="run_20250101_100000_aaaaaaaa",
            source="content-platform",
            destination="control-plane",
            payload={"event": "campaign.sent", "nested": [{"a": 1}]},
            headers={"content-type": "application/json"},
            response=WebhookResponse(status=500, body={"error": "boom"}, timestamp=T0),
            timing=WebhookTiming(sent=T0, received=T0, processed=T0 + timedelta(milliseconds=40),
                                 processing_time_ms=40),
            authentication=WebhookAuthentication(method="token", success=True),
            retries=[RetryAttempt(attempt=1, timestamp=T0, reason="HTTP 500", category="server_error",
                                  delay_ms=1000)],
            error_category="server_error",
        )
        await store.save(RecordKind.WEBHOOK, record)
        assert await store.get(RecordKind.WEBHOOK, record.id) == record

    async def test_metrics_alert_and_config(self, store):
        snapshot = MetricsSnapshot(
            run_id="run_20250101_100000_aaaaaaaa",
            timestamp=T0,
            metrics=PerformanceMetrics(deployment_time_ms=900),
            analysis={"score": 87},
        )
        alert = Alert(
            id="alert_0123456789ab",
            type="pipeline_failure",
            severity="high",
            message="failed",
            signature="pipeline_failure:git/commit",
            timestamp=T0,
            last_seen=T0,
        )
        config = StoredConfig(values={"retry_attempts": 3}, last_cleanup=T0, updated_at=T0)

        await store.save(RecordKind.METRICS, snapshot)
        await store.save(RecordKind.ALERT, alert)
        await store.save(RecordKind.CONFIG, config)

        assert await store.get(RecordKind.METRICS, snapshot.run_id) == snapshot
        assert await store.get(RecordKind.ALERT, alert.id) == alert
        assert await store.get(RecordKind.CONFIG, "monitoring") == config

    async def test_save_replaces_existing(self, store):
        run = _run("run_20250101_100000_aaaaaaaa", T0)
        await store.save(RecordKind.PIPELINE_RUN, run)
        run.status = "completed"
        run.success = True
        await store.save(RecordKind.PIPELINE_RUN, run)

        loaded = await store.get(RecordKind.PIPELINE_RUN, run.id)
        assert loaded.status == "completed"
        assert await store.count(RecordKind.PIPELINE_RUN) == 1

    async def test_get_missing_returns_none(self, store):
        assert await store.get(RecordKind.PIPELINE_RUN, "run_20250101_100000_ffffffff") is None

    async def test_save_rejects_wrong_model(self, store):
        with pytest.raises(TypeError):
            await store.save(RecordKind.ALERT, _run("run_20250101_100000_aaaaaaaa", T0))


@pytest.mark.asyncio
class TestQueries:
    async def test_list_newest_first_with_filters(self, store):
        for i, status in enumerate(["completed", "failed", "running"]):
            await store.save(
                RecordKind.PIPELINE_RUN,
                _run(f"run_20250101_10000{i}_aaaaaaaa", T0 + timedelta(seconds=i), status=status),
            )

        runs = await store.list(RecordKind.PIPELINE_RUN)
        assert [r.status for r in runs] == ["running", "failed", "completed"]

        failed = await store.list(RecordKind.PIPELINE_RUN, status="failed")
        assert [r.id for r in failed] == ["run_20250101_100001_aaaaaaaa"]

        page = await store.list(RecordKind.PIPELINE_RUN, limit=1, offset=1)
        assert [r.status for r in page] == ["failed"]

        recent = await store.list(RecordKind.PIPELINE_RUN, since=T0 + timedelta(seconds=1))
        assert len(recent) == 2
        assert await store.count(RecordKind.PIPELINE_RUN, since=T0 + timedelta(seconds=2)) == 1

    async def test_cleanup_keeps_newest_per_kind(self, store):
        for i in range(5):
            await store.save(
                RecordKind.PIPELINE_RUN,
                _run(f"run_20250101_10000{i}_aaaaaaaa", T0 + timedelta(seconds=i)),
            )
        await store.save(RecordKind.CONFIG, StoredConfig(updated_at=T0))

        removed = await store.cleanup(keep_count=2)

        assert removed[RecordKind.PIPELINE_RUN.value] == 3
        remaining = await store.list(RecordKind.PIPELINE_RUN)
        assert [r.id for r in remaining] == [
            "run_20250101_100004_aaaaaaaa",
            "run_20250101_100003_aaaaaaaa",
        ]
        assert await store.get(RecordKind.CONFIG, "monitoring") is not None

    async def test_ping(self, store):
        await store.ping()


@pytest.mark.asyncio
class TestFailures:
    async def test_unopenable_database_raises_store_error(self, tmp_path):
        directory = tmp_path / "store.db"
        directory.mkdir()
        broken = Store(f"sqlite+aiosqlite:///{directory}")
        try:
            with pytest.raises(StoreError):
                await broken.initialize()
            with pytest.raises(StoreError):
                await broken.ping()
        finally:
            await broken.close()

    async def test_io_failure_after_startup_raises_store_error(self, store):
        await store.save(RecordKind.PIPELINE_RUN, _run("run_20250101_100000_aaaaaaaa", T0))
        async with store.engine.begin() as conn:
            await conn.execute(text("DROP TABLE records"))

        with pytest.raises(StoreError):
            await store.get(RecordKind.PIPELINE_RUN, "run_20250101_100000_aaaaaaaa")
        with pytest.raises(StoreError):
            await store.save(RecordKind.PIPELINE_RUN, _run("run_20250101_100001_aaaaaaaa", T0))
        with pytest.raises(StoreError):
            await store.list(RecordKind.PIPELINE_RUN)
        with pytest.raises(StoreError):
            await store.count(RecordKind.PIPELINE_RUN)
        with pytest.raises(StoreError):
            await store.cleanup(keep_count=1)
