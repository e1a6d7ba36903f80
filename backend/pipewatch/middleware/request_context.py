"""
Request and run context.

Propagates or mints an X-Request-ID, keeps it in a ContextVar for log
correlation and logs one access line per request. Scrape and health checks
are not logged.

Background work on behalf of a pipeline run binds the run id with
``bind_run_id`` so every log line it emits carries it. Tasks spawned inside
the block inherit the binding.
"""

import logging
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

_request_id_var: ContextVar[str] = ContextVar("request_id", default="")
_run_id_var: ContextVar[str] = ContextVar("run_id", default="")

QUIET_PATHS = {"/metrics", "/api/health"}


def get_request_id() -> str:
    return _request_id_var.get()


def get_run_id() -> str:
    """The pipeline run the current task is working on, or ``""``."""
    return _run_id_var.get()


@contextmanager
def bind_run_id(run_id: str | None) -> Iterator[None]:
    if not run_id:
        yield
        return
    token = _run_id_var.set(run_id)
    try:
        yield
    finally:
        _run_id_var.reset(token)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid4().hex
        token = _request_id_var.set(request_id)

        start = time.perf_counter()
        try:
            response = await call_next(request)
            duration_ms = round((time.perf_counter() - start) * 1000, 2)

            response.headers["X-Request-ID"] = request_id
            if request.url.path not in QUIET_PATHS:
                logger.info(
                    "%s %s %s %.0fms",
                    request.method,
                    request.url.path,
                    response.status_code,
                    duration_ms,
                    extra={"duration_ms": duration_ms},
                )
            return response
        finally:
            _request_id_var.reset(token)
