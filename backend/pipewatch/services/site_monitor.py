"""
Site Monitor: post-deploy check of the published site.

One GET per check, timed from request start to the end of the body. A
transport error or an HTTP status >= 400 makes the site unavailable; a
response slower than ``slow_threshold_ms`` marks it slow.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from pipewatch import __version__
from pipewatch.middleware.metrics import site_response_seconds

logger = logging.getLogger(__name__)


@dataclass
class SiteCheck:
    url: str
    available: bool
    response_time_ms: int
    status: int | None = None
    content_length: int = 0
    slow: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "available": self.available,
            "status": self.status,
            "response_time_ms": self.response_time_ms,
            "content_length": self.content_length,
            "slow": self.slow,
            "error": self.error,
        }


class SiteMonitor:
    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30.0,
        slow_threshold_ms: int = 3000,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.url = url
        self.slow_threshold_ms = slow_threshold_ms
        self._clock = clock
        self._client = httpx.AsyncClient(
            headers={"User-Agent": f"pipewatch/{__version__}"},
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def check(self) -> SiteCheck:
        start = self._clock()
        try:
            response = await self._client.get(self.url, headers={"Cache-Control": "no-cache"})
        except httpx.HTTPError as exc:
            elapsed = round((self._clock() - start) * 1000)
            logger.warning("Site %s unreachable after %dms: %s", self.url, elapsed, exc)
            return SiteCheck(
                url=self.url,
                available=False,
                response_time_ms=elapsed,
                error=f"{type(exc).__name__}: {exc}",
            )

        elapsed = round((self._clock() - start) * 1000)
        site_response_seconds.observe(elapsed / 1000)
        available = response.status_code < 400
        result = SiteCheck(
            url=self.url,
            available=available,
            response_time_ms=elapsed,
            status=response.status_code,
            content_length=len(response.content),
            slow=elapsed > self.slow_threshold_ms,
            error=None if available else f"HTTP {response.status_code}",
        )
        if not available:
            logger.warning("Site %s returned HTTP %d", self.url, response.status_code)
        elif result.slow:
            logger.warning(
                "Site %s answered in %dms (threshold %dms)", self.url, elapsed, self.slow_threshold_ms
            )
        return result
