"""
Webhook Validator: payload/auth/response validation, failure classification,
retry bookkeeping and error reports.

Failure categories and retry policy:

    401, 403      authentication       never retried
    400, 422      payload_validation   never retried
    429           rate_limit           60s base, doubling, capped at 5 minutes
    >= 500        server_error         1s base, doubling, capped at 5 minutes
    0             network              1s base
    408           timeout              1s base
    other non-2xx unknown              1s base

The attempt that reaches the configured ceiling reports max_attempts_reached
and no further attempt is recorded.
"""

import hashlib
import hmac
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pipewatch.exceptions import WebhookNotFound
from pipewatch.schemas.records import (
    RetryAttempt,
    WebhookAuthentication,
    WebhookRecord,
    WebhookValidation,
)
from pipewatch.services.locks import KeyedLocks
from pipewatch.services.store import RecordKind, Store
from pipewatch.services.webhook_sources import get_contract
from pipewatch.timeutil import elapsed_ms, utcnow

logger = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 1024 * 1024
BASE_DELAY_MS = 1000
RATE_LIMIT_BASE_DELAY_MS = 60000
MAX_DELAY_MS = 300000

CATEGORIES = (
    "authentication",
    "payload_validation",
    "network",
    "rate_limit",
    "server_error",
    "timeout",
    "unknown",
)
NON_RETRYABLE = frozenset({"authentication", "payload_validation"})

SEVERITY = {
    "authentication": "high",
    "payload_validation": "medium",
    "network": "medium",
    "rate_limit": "medium",
    "server_error": "high",
    "timeout": "medium",
    "unknown": "low",
}

SUGGESTED_ACTIONS = {
    "authentication": [
        "Verify the shared secret or token configured for this source",
        "Check that the signature header is forwarded unchanged",
    ],
    "payload_validation": [
        "Compare the payload against the source contract",
        "Check for required fields missing after upstream changes",
    ],
    "network": [
        "Check network connectivity and DNS resolution",
        "Verify the destination endpoint URL",
    ],
    "rate_limit": [
        "Implement request throttling or increase rate limit quotas",
        "Spread dispatches over a longer window",
    ],
    "server_error": [
        "Check the destination service status",
        "Retries are scheduled with exponential backoff",
    ],
    "timeout": [
        "Increase the webhook timeout or investigate slow processing at the destination",
    ],
    "unknown": [
        "Inspect the response body for details",
    ],
}

_SIGNATURE_RE = re.compile(r"^sha256=[a-f0-9]{64}$")


def classify_status(status: int) -> str | None:
    """Map an HTTP status to a failure category; None for 2xx."""
    if 200 <= status < 300:
        return None
    if status in (401, 403):
        return "authentication"
    if status in (400, 422):
        return "payload_validation"
    if status == 429:
        return "rate_limit"
    if status >= 500:
        return "server_error"
    if status == 0:
        return "network"
    if status == 408:
        return "timeout"
    return "unknown"


def compute_backoff(category: str, prior_attempts: int) -> int:
    base = RATE_LIMIT_BASE_DELAY_MS if category == "rate_limit" else BASE_DELAY_MS
    return min(base * (2 ** prior_attempts), MAX_DELAY_MS)


@dataclass
class RetryDecision:
    should_retry: bool
    delay_ms: int
    strategy: str
    attempt_number: int
    max_attempts_reached: bool

    def to_dict(self) -> dict:
        return {
            "should_retry": self.should_retry,
            "delay_ms": self.delay_ms,
            "strategy": self.strategy,
            "attempt_number": self.attempt_number,
            "max_attempts_reached": self.max_attempts_reached,
        }


@dataclass
class ErrorAnalysis:
    has_errors: bool = False
    primary_error: str | None = None
    category: str | None = None
    severity: str | None = None
    retry_recommended: bool = False
    suggested_actions: list[str] = field(default_factory=list)
    details: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "has_errors": self.has_errors,
            "primary_error": self.primary_error,
            "category": self.category,
            "severity": self.severity,
            "retry_recommended": self.retry_recommended,
            "suggested_actions": list(self.suggested_actions),
            "details": list(self.details),
        }


class WebhookValidator:
    def __init__(
        self,
        store: Store,
        *,
        webhook_secret: str = "",
        retry_attempts: int = 3,
        timeout_ms: int = 30000,
        max_payload_bytes: int = MAX_PAYLOAD_BYTES,
    ):
        self.store = store
        self.webhook_secret = webhook_secret
        self.retry_attempts = retry_attempts
        self.timeout_ms = timeout_ms
        self.max_payload_bytes = max_payload_bytes
        self.locks = KeyedLocks()

    # ── Validation ───────────────────────────────────────────────────────────

    def validate_payload(
        self,
        source: str,
        payload: Any,
        headers: dict[str, str] | None = None,
        raw_size: int | None = None,
    ) -> tuple[WebhookValidation, dict[str, Any]]:
        """Check ``payload`` against the source contract.

        Returns the validation outcome and the stage data the contract derived
        from a valid payload.
        """
        result = get_contract(source).check(payload, headers or {})
        warnings = list(result.warnings)

        size = raw_size if raw_size is not None else len(json.dumps(payload, default=str).encode())
        if size > self.max_payload_bytes:
            warnings.append(f"Payload size {size} bytes exceeds {self.max_payload_bytes} bytes")

        validation = WebhookValidation(valid=not result.errors, errors=list(result.errors), warnings=warnings)
        return validation, result.stage_data

    def validate_authentication(
        self,
        source: str,
        payload: Any,
        headers: dict[str, str],
        raw_body: bytes | None = None,
    ) -> WebhookAuthentication:
        contract = get_contract(source)
        method = contract.auth_method
        headers = {k.lower(): v for k, v in headers.items()}
        errors: list[str] = []

        if method == "token":
            token = headers.get("x-webhook-token")
            if not token and isinstance(payload, dict):
                token = payload.get("token")
            if not token or not isinstance(token, str):
                errors.append("Missing authentication token")
            elif self.webhook_secret and not hmac.compare_digest(token, self.webhook_secret):
                errors.append("Authentication token does not match the shared secret")

        elif method == "signature":
            signature = headers.get("x-hub-signature-256", "")
            if not signature:
                errors.append("Missing signature header")
            elif not _SIGNATURE_RE.match(signature):
                errors.append("Malformed signature header")
            elif self.webhook_secret:
                body = raw_body if raw_body is not None else json.dumps(payload, separators=(",", ":")).encode()
                expected = "sha256=" + hmac.new(self.webhook_secret.encode(), body, hashlib.sha256).hexdigest()
                if not hmac.compare_digest(signature, expected):
                    errors.append("Signature does not match payload")

        elif method == "bearer":
            auth_header = headers.get("authorization", "")
            scheme, _, credential = auth_header.partition(" ")
            if scheme.lower() != "bearer" or not credential.strip():
                errors.append("Missing bearer token")

        return WebhookAuthentication(method=method, success=not errors, errors=errors)

    def validate_response(
        self, status: int, headers: dict[str, str] | None = None, body: Any = None
    ) -> WebhookValidation:
        headers = {k.lower(): v for k, v in (headers or {}).items()}
        errors: list[str] = []
        warnings: list[str] = []

        if classify_status(status) is not None:
            errors.append(f"HTTP {status} response")
        if body not in (None, "") and "content-type" not in headers:
            warnings.append("Response is missing a content-type header")
        remaining = headers.get("x-ratelimit-remaining")
        if remaining is not None:
            try:
                if int(remaining) < 10:
                    warnings.append(f"Rate limit nearly exhausted: {remaining} requests remaining")
            except ValueError:
                warnings.append(f"Unparseable x-ratelimit-remaining header: {remaining}")

        return WebhookValidation(valid=not errors, errors=errors, warnings=warnings)

    # ── Classification ───────────────────────────────────────────────────────

    def detect_and_categorize_errors(
        self, record: WebhookRecord, now: datetime | None = None
    ) -> ErrorAnalysis:
        now = now or utcnow()
        details: list[dict[str, Any]] = []

        if not record.authentication.success and record.authentication.method != "none":
            details.append({
                "category": "authentication",
                "message": "; ".join(record.authentication.errors) or "Authentication failed",
            })
        if not record.validation.valid:
            details.append({
                "category": "payload_validation",
                "message": "; ".join(record.validation.errors),
            })
        if record.response is not None:
            category = classify_status(record.response.status)
            if category is not None:
                details.append({
                    "category": category,
                    "message": f"HTTP {record.response.status} response",
                    "status": record.response.status,
                })
        started = record.timing.received or record.timing.sent
        if record.timing.processed is None and started is not None:
            waited = elapsed_ms(started, now)
            if waited > self.timeout_ms:
                details.append({
                    "category": "timeout",
                    "message": f"No processing after {waited}ms (limit {self.timeout_ms}ms)",
                })

        if not details:
            return ErrorAnalysis()

        primary = details[0]
        category = primary["category"]
        return ErrorAnalysis(
            has_errors=True,
            primary_error=primary["message"],
            category=category,
            severity=SEVERITY[category],
            retry_recommended=category not in NON_RETRYABLE,
            suggested_actions=list(SUGGESTED_ACTIONS[category]),
            details=details,
        )

    # ── Retries ──────────────────────────────────────────────────────────────

    async def _load(self, webhook_id: str) -> WebhookRecord:
        record = await self.store.get(RecordKind.WEBHOOK, webhook_id)
        if record is None:
            raise WebhookNotFound(webhook_id)
        return record

    async def track_retry_attempt(self, webhook_id: str, reason: str, category: str) -> RetryDecision:
        """Record a retry attempt for a failed delivery and decide whether to retry again."""
        if category not in CATEGORIES:
            category = "unknown"

        async with self.locks(webhook_id):
            record = await self._load(webhook_id)
            prior = len(record.retries)

            if category in NON_RETRYABLE:
                logger.info("Webhook %s: %s failure is not retried", webhook_id, category)
                return RetryDecision(
                    should_retry=False,
                    delay_ms=0,
                    strategy=f"no_retry_{category}",
                    attempt_number=prior,
                    max_attempts_reached=prior >= self.retry_attempts,
                )
            if prior >= self.retry_attempts:
                return RetryDecision(
                    should_retry=False,
                    delay_ms=0,
                    strategy="max_attempts_reached",
                    attempt_number=prior,
                    max_attempts_reached=True,
                )

            attempt_number = prior + 1
            delay_ms = compute_backoff(category, prior)
            record.retries.append(RetryAttempt(
                attempt=attempt_number,
                timestamp=utcnow(),
                reason=reason,
                category=category,
                delay_ms=delay_ms,
            ))
            record.error_category = category
            await self.store.save(RecordKind.WEBHOOK, record)

        max_reached = attempt_number >= self.retry_attempts
        strategy = "exponential_backoff_rate_limit" if category == "rate_limit" else "exponential_backoff"
        if max_reached:
            logger.warning(
                "Webhook %s reached retry ceiling (%d) after %s", webhook_id, self.retry_attempts, reason
            )
        return RetryDecision(
            should_retry=not max_reached,
            delay_ms=delay_ms,
            strategy=strategy,
            attempt_number=attempt_number,
            max_attempts_reached=max_reached,
        )

    async def update_retry_result(self, webhook_id: str, attempt_number: int, success: bool) -> None:
        async with self.locks(webhook_id):
            record = await self._load(webhook_id)
            for attempt in record.retries:
                if attempt.attempt == attempt_number:
                    attempt.success = success
                    attempt.result_timestamp = utcnow()
                    break
            else:
                logger.debug("Webhook %s has no retry attempt %d", webhook_id, attempt_number)
                return
            await self.store.save(RecordKind.WEBHOOK, record)

    # ── Reporting ────────────────────────────────────────────────────────────

    async def generate_error_report(self, webhook_id: str) -> dict:
        record = await self._load(webhook_id)
        analysis = self.detect_and_categorize_errors(record)

        timeline: list[dict[str, Any]] = []
        for event in ("sent", "received", "processed"):
            ts = getattr(record.timing, event)
            if ts is not None:
                timeline.append({"event": event, "timestamp": ts})
        for attempt in record.retries:
            timeline.append({
                "event": "retry",
                "timestamp": attempt.timestamp,
                "attempt": attempt.attempt,
                "reason": attempt.reason,
                "delay_ms": attempt.delay_ms,
            })
        timeline.sort(key=lambda e: e["timestamp"])

        recommendations: list[str] = []
        if len(record.retries) > 2:
            recommendations.append(
                "Consider increasing timeout values or checking the destination's availability"
            )
        if analysis.category == "rate_limit":
            recommendations.append("Implement request throttling or increase rate limit quotas")
        elif analysis.category == "network":
            recommendations.append("Check network connectivity and DNS resolution")
        elif analysis.category is not None:
            recommendations.extend(
                a for a in SUGGESTED_ACTIONS[analysis.category] if a not in recommendations
            )

        return {
            "webhook_id": record.id,
            "run_id": record.run_id,
            "source": record.source,
            "destination": record.destination,
            "analysis": analysis.to_dict(),
            "timeline": [
                {**entry, "timestamp": entry["timestamp"].isoformat()} for entry in timeline
            ],
            "recommendations": recommendations,
            "metadata": {
                "retry_count": len(record.retries),
                "processing_time_ms": record.timing.processing_time_ms,
                "authentication_method": record.authentication.method,
                "response_status": record.response.status if record.response else None,
            },
            "generated_at": utcnow().isoformat(),
        }
