"""Tests for webhook interception, outbound delivery retries and timeouts."""

from datetime import timedelta

import pytest

from pipewatch.services import events
from pipewatch.services.store import RecordKind
from pipewatch.services.trigger_detector import TriggerDetector
from pipewatch.services.webhook_pipeline import DeliveryResponse, WebhookPipeline
from pipewatch.services.webhook_validator import WebhookValidator
from pipewatch.timeutil import utcnow

from conftest import WEBHOOK_SECRET

CAMPAIGN_PAYLOAD = {
    "event": "campaign.sent",
    "data": {"campaign": {"id": 42, "name": "Spring launch"}},
    "token": WEBHOOK_SECRET,
}


@pytest.fixture
def pipeline(store, engine, bus, scheduler) -> WebhookPipeline:
    validator = WebhookValidator(store, webhook_secret=WEBHOOK_SECRET, retry_attempts=3)
    detector = TriggerDetector(engine)
    p = WebhookPipeline(store, engine, validator, detector, scheduler, bus)
    p.register_listeners()
    return p


def _responses(*statuses):
    sent = []

    async def send():
        status = statuses[min(len(sent), len(statuses) - 1)]
        sent.append(status)
        return DeliveryResponse(status=status, body={"status": status})

    send.sent = sent
    return send


@pytest.mark.asyncio
class TestIntercept:
    async def test_accepted_webhook_completes_run(self, pipeline, engine, store):
        result = await pipeline.intercept(
            "content-platform", CAMPAIGN_PAYLOAD, {"Content-Type": "application/json"}
        )

        assert result.accepted
        assert result.status_code == 202
        record = result.record
        assert record.processed
        assert record.payload["token"] == "[REDACTED]"

        run = await engine.get_pipeline_run(record.run_id)
        assert run.status == "completed"
        assert run.trigger.type == "webhook"
        assert [s.name for s in run.stages] == ["trigger_detected", "webhook_received"]
        receipt = run.get_stage("webhook_received")
        assert receipt.status == "completed"
        assert receipt.data["campaign_id"] == 42
        assert receipt.data["webhook_id"] == record.id

    async def test_bad_token_fails_run(self, pipeline, engine):
        payload = {**CAMPAIGN_PAYLOAD, "token": "wrong"}
        result = await pipeline.intercept("content-platform", payload, {})

        assert result.status_code == 401
        assert result.category == "authentication"
        run = await engine.get_pipeline_run(result.record.run_id)
        assert run.status == "failed"
        assert run.errors[0].type == "authentication"
        assert result.record.retries == []

    async def test_contract_violation_is_422(self, pipeline, engine):
        result = await pipeline.intercept("content-platform", {"token": WEBHOOK_SECRET}, {})

        assert result.status_code == 422
        assert result.category == "payload_validation"
        run = await engine.get_pipeline_run(result.record.run_id)
        assert run.get_stage("webhook_received").status == "failed"

    async def test_unregistered_source_is_recorded_without_run(self, pipeline, store):
        result = await pipeline.intercept("somewhere-else", {"hello": "world"}, {})

        assert result.accepted
        assert result.record.run_id == "unknown"
        assert await store.count(RecordKind.PIPELINE_RUN) == 0

    async def test_publishes_webhook_events(self, pipeline, bus):
        await pipeline.intercept("content-platform", CAMPAIGN_PAYLOAD, {})

        received = [d for t, d in bus.published if t == events.WEBHOOK_RECEIVED]
        updated = [d for t, d in bus.published if t == events.WEBHOOK_UPDATED]
        assert len(received) == 1
        assert received[0]["authentication_success"] is True
        assert updated[-1]["status"] == 202


@pytest.mark.asyncio
class TestDelivery:
    async def test_server_errors_retry_with_backoff_then_give_up(self, pipeline, engine, store):
        run_id = await engine.create_pipeline_run(
            {"type": "webhook", "source": "content-platform", "timestamp": utcnow()}
        )
        outbound = await pipeline.open_outbound(run_id, "control-plane", "ci", {"ref": "main"})
        send = _responses(500)

        result = await pipeline.deliver(outbound.id, send)

        assert result.success is False
        assert result.sends == 3
        assert len(send.sent) == 3
        assert result.category == "server_error"
        assert result.decision.max_attempts_reached is True
        assert result.decision.should_retry is False

        record = await store.get(RecordKind.WEBHOOK, outbound.id)
        assert [r.delay_ms for r in record.retries] == [1000, 2000, 4000]
        assert [r.success for r in record.retries] == [False, False, None]
        assert len(pipeline.validator.locks) == 0

    async def test_recovers_after_transient_failure(self, pipeline, engine, store):
        run_id = await engine.create_pipeline_run(
            {"type": "webhook", "source": "content-platform", "timestamp": utcnow()}
        )
        outbound = await pipeline.open_outbound(run_id, "control-plane", "ci", {})

        result = await pipeline.deliver(outbound.id, _responses(503, 204))

        assert result.success
        assert result.sends == 2
        record = await store.get(RecordKind.WEBHOOK, outbound.id)
        assert record.retries[0].success is True
        assert record.response.status == 204

    async def test_auth_failure_not_retried(self, pipeline, engine, store):
        run_id = await engine.create_pipeline_run(
            {"type": "webhook", "source": "content-platform", "timestamp": utcnow()}
        )
        outbound = await pipeline.open_outbound(run_id, "control-plane", "ci", {})

        result = await pipeline.deliver(outbound.id, _responses(401))

        assert result.sends == 1
        assert result.category == "authentication"
        record = await store.get(RecordKind.WEBHOOK, outbound.id)
        assert record.retries == []


@pytest.mark.asyncio
class TestTimeoutsAndStatistics:
    async def test_unprocessed_webhook_times_out(self, pipeline, engine, store):
        run_id = await engine.create_pipeline_run(
            {"type": "webhook", "source": "content-platform", "timestamp": utcnow()}
        )
        outbound = await pipeline.open_outbound(run_id, "control-plane", "ci", {})
        outbound.timing.sent = utcnow() - timedelta(seconds=60)
        await store.save(RecordKind.WEBHOOK, outbound)

        assert await pipeline.monitor_timeout(outbound.id, timeout_ms=1000) is True

        record = await store.get(RecordKind.WEBHOOK, outbound.id)
        assert record.response.status == 408
        assert record.error_category == "timeout"

    async def test_processed_webhook_does_not_time_out(self, pipeline):
        result = await pipeline.intercept("content-platform", CAMPAIGN_PAYLOAD, {})
        assert await pipeline.monitor_timeout(result.record.id, timeout_ms=1) is False

    async def test_statistics(self, pipeline):
        await pipeline.intercept("content-platform", CAMPAIGN_PAYLOAD, {})
        await pipeline.intercept("content-platform", {**CAMPAIGN_PAYLOAD, "token": "bad"}, {})

        stats = (await pipeline.get_webhook_statistics()).to_dict()
        assert stats["total"] == 2
        assert stats["successful"] == 1
        assert stats["failed"] == 1
        assert stats["auth_failures"] == 1
        assert stats["by_source"] == {"content-platform": 2}
