"""
Webhook Pipeline: interception, correlation, timing, delivery retries and
statistics for inbound and outbound webhook traffic.

Inbound flow (``intercept``):
  1. validate the payload against the source contract and check auth material
  2. correlate: TriggerDetector opens a run and calls this pipeline's listener
  3. persist a sanitized WebhookRecord keyed to that run
  4. close the ``webhook_received`` stage; rejected webhooks fail the run
  5. accepted content-platform events are relayed to the CI workflow dispatch

Outbound flow (``deliver``): send, record the response, classify the failure,
track a retry attempt and wait the backoff through the Scheduler until the
send succeeds or the retry policy says stop.
"""

import logging
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pipewatch.exceptions import CIApiError, WebhookNotFound
from pipewatch.middleware.metrics import (
    webhook_processing_seconds,
    webhook_retries_total,
    webhooks_total,
)
from pipewatch.middleware.request_context import bind_run_id
from pipewatch.schemas.records import (
    WebhookAuthentication,
    WebhookRecord,
    WebhookResponse,
    WebhookTiming,
)
from pipewatch.services import events
from pipewatch.services.ci_client import CIClient
from pipewatch.services.engine import PipelineEngine
from pipewatch.services.events import EventBus
from pipewatch.services.id_generator import generate_webhook_id
from pipewatch.services.sanitize import sanitize, sanitize_headers, truncate_body
from pipewatch.services.scheduler import Scheduler
from pipewatch.services.store import RecordKind, Store
from pipewatch.services.trigger_detector import TriggerDetector
from pipewatch.services.webhook_sources import CONTRACTS, CONTROL_PLANE, get_contract
from pipewatch.services.webhook_validator import (
    RetryDecision,
    WebhookValidator,
    classify_status,
)
from pipewatch.timeutil import elapsed_ms, utcnow

logger = logging.getLogger(__name__)

# Stage data for the webhook currently being correlated, read by the listener
_receipt_data: ContextVar[dict[str, Any] | None] = ContextVar("webhook_receipt_data", default=None)


@dataclass
class DeliveryResponse:
    status: int
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)


SendFn = Callable[[], Awaitable[DeliveryResponse]]


@dataclass
class DeliveryResult:
    webhook_id: str
    success: bool
    status: int
    sends: int
    category: str | None = None
    decision: RetryDecision | None = None


@dataclass
class InterceptResult:
    record: WebhookRecord
    status_code: int
    category: str | None = None

    @property
    def accepted(self) -> bool:
        return self.category is None


@dataclass
class WebhookStatistics:
    total: int = 0
    successful: int = 0
    failed: int = 0
    pending: int = 0
    auth_failures: int = 0
    timeouts: int = 0
    retries: int = 0
    average_processing_time_ms: float = 0.0
    by_source: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "pending": self.pending,
            "auth_failures": self.auth_failures,
            "timeouts": self.timeouts,
            "retries": self.retries,
            "average_processing_time_ms": self.average_processing_time_ms,
            "by_source": dict(self.by_source),
        }


class WebhookPipeline:
    def __init__(
        self,
        store: Store,
        engine: PipelineEngine,
        validator: WebhookValidator,
        detector: TriggerDetector,
        scheduler: Scheduler,
        bus: EventBus | None = None,
        *,
        ci_client: CIClient | None = None,
        ci_workflow: str = "deploy-gh-pages.yml",
        ci_ref: str = "main",
        webhook_timeout_ms: int = 30000,
        timeout_poll_interval: float = 1.0,
    ):
        self.store = store
        self.engine = engine
        self.validator = validator
        self.detector = detector
        self.scheduler = scheduler
        self.bus = bus or engine.bus
        self.ci_client = ci_client
        self.ci_workflow = ci_workflow
        self.ci_ref = ci_ref
        self.webhook_timeout_ms = webhook_timeout_ms
        self.timeout_poll_interval = timeout_poll_interval

    def register_listeners(self) -> None:
        """Register a correlation listener with the TriggerDetector for every known source."""
        for source in CONTRACTS:
            self.detector.register_webhook_listener(source, self._on_webhook_run)

    async def _on_webhook_run(self, run_id: str, payload: Any, headers: dict[str, str]) -> None:
        await self.engine.update_pipeline_stage(
            run_id, "webhook_received", "running", dict(_receipt_data.get() or {})
        )

    # ── Inbound ──────────────────────────────────────────────────────────────

    async def intercept(
        self,
        source: str,
        payload: Any,
        headers: dict[str, str],
        raw_body: bytes | None = None,
    ) -> InterceptResult:
        received = utcnow()
        headers = {k.lower(): v for k, v in headers.items()}
        contract = get_contract(source)

        validation, stage_data = self.validator.validate_payload(
            source, payload, headers, raw_size=len(raw_body) if raw_body is not None else None
        )
        auth = self.validator.validate_authentication(source, payload, headers, raw_body)

        webhook_id = generate_webhook_id()
        run_id = await self._correlate(source, payload, headers, {"webhook_id": webhook_id, **stage_data})

        if not auth.success:
            category = "authentication"
        elif not validation.valid:
            category = "payload_validation"
        else:
            category = None

        record = WebhookRecord(
            id=webhook_id,
            run_id=run_id or "unknown",
            source=source,
            destination=contract.destination,
            direction="inbound",
            payload=sanitize(payload),
            headers=sanitize_headers(headers),
            timing=WebhookTiming(sent=received, received=received),
            authentication=auth,
            validation=validation,
            error_category=category,
        )
        await self.store.save(RecordKind.WEBHOOK, record)
        webhooks_total.labels(source=source, outcome="rejected" if category else "accepted").inc()
        await self.bus.publish(events.WEBHOOK_RECEIVED, self._event_data(record))

        if category == "authentication":
            status_code, message = 401, "; ".join(auth.errors)
        elif category == "payload_validation":
            status_code, message = 422, "; ".join(validation.errors)
        else:
            status_code, message = 202, "accepted"
        if category:
            logger.warning("Webhook %s from %s rejected (%s): %s", webhook_id, source, category, message)

        if run_id is not None:
            await self._close_receipt(run_id, record, category, message)

        record = await self.record_response(webhook_id, status_code, {"status": message})

        if run_id is not None and category is None:
            with bind_run_id(run_id):
                if contract.relays_to_ci and self.ci_client is not None:
                    self.scheduler.spawn("relay", self.relay_to_ci(run_id, record, payload))
                else:
                    await self.engine.complete_pipeline_run(
                        run_id, True, {"webhook_latency_ms": record.timing.processing_time_ms or 0}
                    )
        return InterceptResult(record=record, status_code=status_code, category=category)

    async def _correlate(
        self, source: str, payload: Any, headers: dict[str, str], stage_data: dict[str, Any]
    ) -> str | None:
        token = _receipt_data.set(stage_data)
        try:
            return await self.detector.process_webhook_trigger(source, payload, headers)
        finally:
            _receipt_data.reset(token)

    async def _close_receipt(
        self, run_id: str, record: WebhookRecord, category: str | None, message: str
    ) -> None:
        if category is None:
            await self.engine.update_pipeline_stage(run_id, "webhook_received", "completed", {
                "webhook_id": record.id,
                "warnings": record.validation.warnings,
            })
            return

        await self.engine.update_pipeline_stage(run_id, "webhook_received", "failed", {
            "webhook_id": record.id,
            "error_category": category,
        })
        await self.engine.add_error(run_id, "webhook_received", category, message, {
            "webhook_id": record.id,
            "source": record.source,
        })
        await self.engine.complete_pipeline_run(run_id, False)

    # ── Responses / timeouts ─────────────────────────────────────────────────

    async def _load(self, webhook_id: str) -> WebhookRecord:
        record = await self.store.get(RecordKind.WEBHOOK, webhook_id)
        if record is None:
            raise WebhookNotFound(webhook_id)
        return record

    async def record_response(
        self,
        webhook_id: str,
        status: int,
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> WebhookRecord:
        """Attach a response, stamp the processed time and derive processing time."""
        async with self.validator.locks(webhook_id):
            record = await self._load(webhook_id)
            now = utcnow()
            if record.direction == "outbound" or record.timing.received is None:
                record.timing.received = now
            record.timing.processed = max(now, record.timing.received)
            record.timing.processing_time_ms = elapsed_ms(record.timing.received, record.timing.processed)
            record.response = WebhookResponse(
                status=status,
                body=truncate_body(sanitize(body)),
                headers=sanitize_headers(headers or {}),
                timestamp=now,
            )
            record.processed = True
            category = classify_status(status)
            if category is not None or record.error_category is None:
                record.error_category = category
            await self.store.save(RecordKind.WEBHOOK, record)

        webhook_processing_seconds.observe(record.timing.processing_time_ms / 1000)
        await self.bus.publish(events.WEBHOOK_UPDATED, self._event_data(record))
        return record

    async def monitor_timeout(self, webhook_id: str, timeout_ms: int | None = None) -> bool:
        """Poll until the webhook is processed; past the timeout, record a 408.

        Returns True when the webhook timed out.
        """
        timeout_ms = timeout_ms or self.webhook_timeout_ms
        while True:
            record = await self._load(webhook_id)
            if record.processed:
                return False
            started = record.timing.received or record.timing.sent
            waited = elapsed_ms(started, utcnow()) if started else 0
            if waited > timeout_ms:
                break
            await self.scheduler.sleep(self.timeout_poll_interval)

        async with self.validator.locks(webhook_id):
            record = await self._load(webhook_id)
            if record.processed:
                return False
            now = utcnow()
            record.response = WebhookResponse(
                status=408, body={"error": f"No response within {timeout_ms}ms"}, timestamp=now
            )
            record.error_category = "timeout"
            await self.store.save(RecordKind.WEBHOOK, record)

        logger.warning("Webhook %s timed out after %dms", webhook_id, timeout_ms)
        await self.bus.publish(events.WEBHOOK_UPDATED, self._event_data(record))
        return True

    # ── Outbound ─────────────────────────────────────────────────────────────

    async def open_outbound(
        self, run_id: str, source: str, destination: str, payload: Any, headers: dict[str, str] | None = None
    ) -> WebhookRecord:
        record = WebhookRecord(
            id=generate_webhook_id(),
            run_id=run_id,
            source=source,
            destination=destination,
            direction="outbound",
            payload=sanitize(payload),
            headers=sanitize_headers(headers or {}),
            timing=WebhookTiming(sent=utcnow()),
            authentication=WebhookAuthentication(method="bearer", success=True),
        )
        await self.store.save(RecordKind.WEBHOOK, record)
        return record

    async def deliver(self, webhook_id: str, send: SendFn) -> DeliveryResult:
        """Send until success or until the retry policy stops, waiting backoff between sends."""
        sends = 0
        decision: RetryDecision | None = None
        while True:
            sends += 1
            response = await send()
            record = await self.record_response(webhook_id, response.status, response.body, response.headers)
            category = classify_status(response.status)

            if decision is not None:
                await self.validator.update_retry_result(webhook_id, decision.attempt_number, category is None)

            if category is None:
                webhooks_total.labels(source=record.source, outcome="delivered").inc()
                return DeliveryResult(webhook_id, True, response.status, sends, decision=decision)

            decision = await self.validator.track_retry_attempt(
                webhook_id, f"HTTP {response.status}", category
            )
            if decision.strategy.startswith("exponential_backoff"):
                webhook_retries_total.labels(category=category).inc()

            if not decision.should_retry:
                webhooks_total.labels(source=record.source, outcome="failed").inc()
                logger.error(
                    "Delivery %s gave up after %d sends (%s, HTTP %s)",
                    webhook_id, sends, category, response.status,
                )
                return DeliveryResult(webhook_id, False, response.status, sends, category, decision)

            logger.info(
                "Delivery %s failed with %s, retry %d in %dms",
                webhook_id, category, decision.attempt_number, decision.delay_ms,
            )
            await self.scheduler.sleep(decision.delay_ms / 1000)

    async def _send_dispatch(self, ref: str, inputs: dict[str, Any]) -> DeliveryResponse:
        try:
            response = await self.ci_client.dispatch_workflow(self.ci_workflow, ref, inputs)
        except CIApiError as exc:
            headers = dict(exc.response.headers) if exc.response is not None else {}
            return DeliveryResponse(status=exc.status_code, body=exc.body, headers=headers)
        return DeliveryResponse(status=response.status_code, body=response.text, headers=dict(response.headers))

    async def relay_to_ci(self, run_id: str, inbound: WebhookRecord, payload: Any) -> DeliveryResult:
        """Dispatch the CI workflow for an accepted content-platform event and close the run."""
        campaign = ((payload.get("data") or {}).get("campaign") or {}) if isinstance(payload, dict) else {}
        inputs = {
            "triggered_by": "content-platform-webhook",
            "timestamp": utcnow().isoformat(),
            "campaign_id": str(campaign.get("id") or "unknown"),
            "campaign_name": campaign.get("name") or "Unknown Campaign",
        }
        await self.engine.update_pipeline_stage(run_id, "ci_dispatch", "running", {
            "workflow": self.ci_workflow,
            "ref": self.ci_ref,
            "inputs": inputs,
        })

        outbound = await self.open_outbound(
            run_id, CONTROL_PLANE, "ci", {"ref": self.ci_ref, "inputs": inputs}
        )
        watchdog = self.scheduler.spawn("webhook-timeout", self.monitor_timeout(outbound.id))
        try:
            result = await self.deliver(outbound.id, lambda: self._send_dispatch(self.ci_ref, inputs))
        finally:
            watchdog.cancel()

        stage_data = {
            "webhook_id": outbound.id,
            "status": result.status,
            "sends": result.sends,
            "retries": result.decision.attempt_number if result.decision else 0,
        }
        latency = {"webhook_latency_ms": inbound.timing.processing_time_ms or 0}
        if result.success:
            await self.engine.update_pipeline_stage(run_id, "ci_dispatch", "completed", stage_data)
            await self.engine.complete_pipeline_run(run_id, True, latency)
        else:
            await self.engine.update_pipeline_stage(
                run_id, "ci_dispatch", "failed", {**stage_data, "error_category": result.category}
            )
            await self.engine.add_error(
                run_id,
                "ci_dispatch",
                result.category or "unknown",
                f"Workflow dispatch failed with HTTP {result.status} after {result.sends} attempts",
                {"webhook_id": outbound.id, "max_attempts_reached": bool(
                    result.decision and result.decision.max_attempts_reached
                )},
            )
            await self.engine.complete_pipeline_run(run_id, False, latency)
        return result

    # ── Statistics ───────────────────────────────────────────────────────────

    async def get_webhook_statistics(
        self, run_id: str | None = None, source: str | None = None
    ) -> WebhookStatistics:
        records = await self.store.list(RecordKind.WEBHOOK, run_id=run_id, record_type=source)
        stats = WebhookStatistics(total=len(records))
        processing_times: list[int] = []
        for record in records:
            stats.by_source[record.source] = stats.by_source.get(record.source, 0) + 1
            stats.retries += len(record.retries)
            if not record.authentication.success and record.authentication.method != "none":
                stats.auth_failures += 1
            if record.error_category == "timeout":
                stats.timeouts += 1
            if record.response is None:
                stats.pending += 1
            elif 200 <= record.response.status < 300:
                stats.successful += 1
            else:
                stats.failed += 1
            if record.timing.processing_time_ms is not None:
                processing_times.append(record.timing.processing_time_ms)
        if processing_times:
            stats.average_processing_time_ms = round(sum(processing_times) / len(processing_times), 2)
        return stats

    @staticmethod
    def _event_data(record: WebhookRecord) -> dict[str, Any]:
        return {
            "webhook_id": record.id,
            "run_id": record.run_id,
            "source": record.source,
            "destination": record.destination,
            "direction": record.direction,
            "status": record.response.status if record.response else None,
            "error_category": record.error_category,
            "authentication_success": record.authentication.success,
            "processing_time_ms": record.timing.processing_time_ms,
            "retries": len(record.retries),
        }
