"""
Pipewatch exceptions.

Engine errors are always surfaced to the caller and never retried.
Store errors are fatal to the operation that raised them.
"""

from __future__ import annotations

from typing import Any


class PipewatchError(Exception):
    """Base exception for all pipewatch errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


class ConfigurationError(PipewatchError):
    """A required setting or secret is missing at startup."""


# ── Engine ───────────────────────────────────────────────────────────────────

class InvalidTrigger(PipewatchError):
    """Trigger event is missing required fields or is malformed."""

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class RunNotFound(PipewatchError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Pipeline run not found: {run_id}")
        self.run_id = run_id


class RunAlreadyTerminal(PipewatchError):
    """Mutation attempted against a run that already left the running state."""

    def __init__(self, run_id: str, status: str) -> None:
        super().__init__(f"Pipeline run {run_id} is already {status}")
        self.run_id = run_id
        self.status = status


# ── Store ────────────────────────────────────────────────────────────────────

class StoreError(PipewatchError):
    """Persistent storage failed; the operation was aborted."""


# ── Webhooks ─────────────────────────────────────────────────────────────────

class WebhookNotFound(PipewatchError):
    def __init__(self, webhook_id: str) -> None:
        super().__init__(f"Webhook record not found: {webhook_id}")
        self.webhook_id = webhook_id


# ── CI provider ──────────────────────────────────────────────────────────────

class CIApiError(PipewatchError):
    """CI provider request failed.

    status_code is 0 when no HTTP response was received.
    """

    def __init__(
        self, message: str, *, status_code: int = 0, body: str = "", response: Any = None
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.response = response


class WorkflowMonitoringTimeout(PipewatchError):
    def __init__(self, workflow_run_id: int | str, elapsed_ms: int) -> None:
        super().__init__(
            f"Workflow run {workflow_run_id} still not finished after {elapsed_ms}ms"
        )
        self.workflow_run_id = workflow_run_id
        self.elapsed_ms = elapsed_ms


# ── Trigger detection ────────────────────────────────────────────────────────

class GitCommandError(PipewatchError):
    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


# ── Alerts ───────────────────────────────────────────────────────────────────

class AlertNotFound(PipewatchError):
    def __init__(self, alert_id: str) -> None:
        super().__init__(f"Alert not found: {alert_id}")
        self.alert_id = alert_id
