"""
Prometheus metrics middleware.

Collects HTTP request metrics (counter + histogram) and exposes application-level
counters/gauges for pipeline runs, webhook traffic, CI polling, site checks
and alerts.
"""

import re
import time

from prometheus_client import Counter, Histogram, Gauge
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

# ── HTTP metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Pipeline metrics ─────────────────────────────────────────────────────────

pipeline_runs_started_total = Counter(
    "pipeline_runs_started_total",
    "Pipeline runs opened",
    ["trigger_type"],
)

pipeline_runs_total = Counter(
    "pipeline_runs_total",
    "Pipeline runs reaching a terminal status",
    ["trigger_type", "status"],
)

pipeline_duration_seconds = Histogram(
    "pipeline_duration_seconds",
    "Pipeline run duration in seconds",
    buckets=(1.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1200.0, 1800.0),
)

pipeline_stage_transitions_total = Counter(
    "pipeline_stage_transitions_total",
    "Stage status transitions",
    ["status"],
)

active_pipeline_runs = Gauge(
    "active_pipeline_runs",
    "Pipeline runs currently tracked as running",
)

# ── Webhook metrics ──────────────────────────────────────────────────────────

webhooks_total = Counter(
    "webhooks_total",
    "Intercepted webhooks by source and outcome",
    ["source", "outcome"],
)

webhook_retries_total = Counter(
    "webhook_retries_total",
    "Webhook retry attempts by failure category",
    ["category"],
)

webhook_processing_seconds = Histogram(
    "webhook_processing_seconds",
    "Time between webhook receipt and processing",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# ── CI / alerts ──────────────────────────────────────────────────────────────

ci_poll_errors_total = Counter(
    "ci_poll_errors_total",
    "CI provider API errors during polling",
    ["operation"],
)

alerts_total = Counter(
    "alerts_total",
    "Alerts raised by type and severity",
    ["type", "severity"],
)

active_alerts = Gauge(
    "active_alerts",
    "Alerts currently active or acknowledged",
)

notifications_total = Counter(
    "alert_notifications_total",
    "Alert notifications sent by channel and outcome",
    ["channel", "outcome"],
)

site_response_seconds = Histogram(
    "site_response_seconds",
    "Post-deploy site response time in seconds",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 5.0, 10.0, 30.0),
)

_RUN_ID = re.compile(r"^run_\d{8}_\d{6}_[a-f0-9]{8}$")
_ALERT_ID = re.compile(r"^alert_[a-f0-9]{12}$")


def _normalize_path(path: str) -> str:
    """Collapse path parameters to reduce cardinality.

    e.g. /api/pipeline-runs/run_20250101_100000_1a2b3c4d → /api/pipeline-runs/{id}
    """
    parts = path.strip("/").split("/")
    normalized = []
    for part in parts:
        if _RUN_ID.match(part) or _ALERT_ID.match(part) or part.isdigit():
            normalized.append("{id}")
        else:
            normalized.append(part)
    return "/" + "/".join(normalized)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        http_requests_total.labels(
            method=method,
            path=path,
            status_code=response.status_code,
        ).inc()
        http_request_duration_seconds.labels(method=method, path=path).observe(duration)

        return response
