"""
CI provider HTTP client (GitHub Actions REST API).

Handles:
- Bearer-token authentication
- Workflow run / job listing and detail lookups
- Job log retrieval
- Workflow dispatch
- Rate-limit header tracking

Retries are not done here: polling retries on its own interval and dispatch
retries go through WebhookPipeline's classified backoff.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from pipewatch import __version__
from pipewatch.exceptions import CIApiError
from pipewatch.timeutil import utcnow

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": "2022-11-28",
    "User-Agent": f"pipewatch/{__version__}",
}

RATE_LIMIT_THRESHOLD = 10


@dataclass
class RateLimitInfo:
    limit: int | None = None
    remaining: int | None = None
    reset_at: datetime | None = None
    used: int | None = None
    resource: str | None = None
    observed_at: datetime | None = None

    @classmethod
    def from_headers(cls, headers: httpx.Headers | dict[str, str]) -> RateLimitInfo | None:
        headers = {k.lower(): v for k, v in dict(headers).items()}
        if "x-ratelimit-remaining" not in headers:
            return None

        def _int(name: str) -> int | None:
            try:
                return int(headers[name])
            except (KeyError, ValueError):
                return None

        reset = _int("x-ratelimit-reset")
        return cls(
            limit=_int("x-ratelimit-limit"),
            remaining=_int("x-ratelimit-remaining"),
            reset_at=datetime.fromtimestamp(reset, tz=timezone.utc) if reset is not None else None,
            used=_int("x-ratelimit-used"),
            resource=headers.get("x-ratelimit-resource"),
            observed_at=utcnow(),
        )

    @property
    def is_limited(self) -> bool:
        return self.remaining is not None and self.remaining <= RATE_LIMIT_THRESHOLD

    def recommended_backoff_ms(self) -> int:
        """Delay to apply before the next call given how much quota is left."""
        if self.remaining is None:
            return 0
        if self.remaining <= 0:
            return 60000
        if self.remaining <= 5:
            return 30000
        if self.remaining <= RATE_LIMIT_THRESHOLD:
            return 10000
        return 0

    def to_dict(self) -> dict:
        return {
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
            "used": self.used,
            "resource": self.resource,
            "is_limited": self.is_limited,
            "recommended_backoff_ms": self.recommended_backoff_ms(),
        }


class CIClient:
    """Async client for one repository's Actions endpoints."""

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        *,
        base_url: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self.rate_limit: RateLimitInfo | None = None
        headers = DEFAULT_HEADERS.copy()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @property
    def repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> CIClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    # ── Endpoints ────────────────────────────────────────────────────────────

    async def list_workflow_runs(self, per_page: int = 10) -> list[dict[str, Any]]:
        data = await self._get_json(f"{self.repo_path}/actions/runs", params={"per_page": per_page})
        return data.get("workflow_runs", [])

    async def get_workflow_run(self, run_id: int | str) -> dict[str, Any]:
        return await self._get_json(f"{self.repo_path}/actions/runs/{run_id}")

    async def list_jobs(self, run_id: int | str, per_page: int = 100) -> list[dict[str, Any]]:
        data = await self._get_json(
            f"{self.repo_path}/actions/runs/{run_id}/jobs", params={"per_page": per_page}
        )
        return data.get("jobs", [])

    async def get_job_logs(self, job_id: int | str) -> str:
        response = await self._send("GET", f"{self.repo_path}/actions/jobs/{job_id}/logs", follow_redirects=True)
        return response.text

    async def dispatch_workflow(
        self, workflow: str, ref: str, inputs: dict[str, Any] | None = None
    ) -> httpx.Response:
        """Trigger a workflow_dispatch event. The provider answers 204 with no body."""
        response = await self._send(
            "POST",
            f"{self.repo_path}/actions/workflows/{workflow}/dispatches",
            json={"ref": ref, "inputs": inputs or {}},
        )
        logger.info("Dispatched workflow %s on %s (HTTP %s)", workflow, ref, response.status_code)
        return response

    # ── Internals ────────────────────────────────────────────────────────────

    async def _get_json(self, path: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        response = await self._send("GET", path, params=params)
        return response.json()

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise CIApiError(f"{method} {path} timed out: {exc}", status_code=0) from exc
        except httpx.HTTPError as exc:
            raise CIApiError(f"{method} {path} failed: {exc}", status_code=0) from exc

        info = RateLimitInfo.from_headers(response.headers)
        if info is not None:
            self.rate_limit = info
            if info.is_limited:
                logger.warning(
                    "CI rate limit low: %s/%s remaining (resource=%s)",
                    info.remaining, info.limit, info.resource,
                )

        if not response.is_success:
            body = response.text[:300]
            raise CIApiError(
                f"{method} {path} returned HTTP {response.status_code}: {body}",
                status_code=response.status_code,
                body=body,
                response=response,
            )
        return response
