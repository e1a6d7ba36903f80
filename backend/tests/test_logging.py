"""Tests for JSON log lines and request/run correlation."""

import asyncio
import json
import logging

import pytest

from pipewatch.middleware.logging_config import JSONFormatter, RunContextFilter, TEXT_FORMAT
from pipewatch.middleware.request_context import bind_run_id, get_run_id


class FormattingHandler(logging.Handler):
    """Format at emit time so context variables are read while still bound."""

    def __init__(self, formatter: logging.Formatter):
        super().__init__()
        self.setFormatter(formatter)
        self.addFilter(RunContextFilter())
        self.lines: list[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.lines.append(self.format(record))


def _record(message: str = "hello %s", args=("there",)) -> logging.LogRecord:
    return logging.LogRecord("pipewatch.test", logging.INFO, __file__, 1, message, args, None)


def test_json_line_carries_bound_run_id():
    formatter = JSONFormatter()
    with bind_run_id("run_20250101_100000_aaaaaaaa"):
        inside = json.loads(formatter.format(_record()))
    outside = json.loads(formatter.format(_record()))

    assert inside["message"] == "hello there"
    assert inside["level"] == "INFO"
    assert inside["run_id"] == "run_20250101_100000_aaaaaaaa"
    assert "run_id" not in outside
    assert outside["request_id"] == ""


def test_extra_run_id_overrides_binding():
    record = _record()
    record.run_id = "run_20250101_100000_bbbbbbbb"
    record.webhook_id = "webhook_aaaaaaaaaaaa"
    with bind_run_id("run_20250101_100000_aaaaaaaa"):
        entry = json.loads(JSONFormatter().format(record))

    assert entry["run_id"] == "run_20250101_100000_bbbbbbbb"
    assert entry["webhook_id"] == "webhook_aaaaaaaaaaaa"


def test_empty_binding_is_a_no_op():
    with bind_run_id(None):
        assert get_run_id() == ""
    with bind_run_id("run_a"):
        with bind_run_id("run_b"):
            assert get_run_id() == "run_b"
        assert get_run_id() == "run_a"
    assert get_run_id() == ""


def test_text_lines_tagged_with_run():
    handler = FormattingHandler(logging.Formatter(TEXT_FORMAT))
    logger = logging.getLogger("pipewatch.test.text")
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    try:
        logger.info("untagged")
        with bind_run_id("run_20250101_100000_aaaaaaaa"):
            logger.info("tagged")
    finally:
        logger.removeHandler(handler)

    assert handler.lines[0].endswith("pipewatch.test.text: untagged")
    assert handler.lines[1].endswith("pipewatch.test.text [run_20250101_100000_aaaaaaaa]: tagged")


@pytest.mark.asyncio
async def test_spawned_tasks_inherit_binding():
    async def current():
        return get_run_id()

    with bind_run_id("run_20250101_100000_aaaaaaaa"):
        task = asyncio.create_task(current())
    assert await task == "run_20250101_100000_aaaaaaaa"
    assert await asyncio.create_task(current()) == ""


@pytest.mark.asyncio
async def test_access_line_carries_request_id(client):
    handler = FormattingHandler(JSONFormatter())
    logger = logging.getLogger("pipewatch.middleware.request_context")
    previous = logger.level
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    try:
        response = await client.get("/api/pipeline-runs", headers={"X-Request-ID": "req-123"})
        quiet = await client.get("/api/health")
    finally:
        logger.removeHandler(handler)
        logger.setLevel(previous)

    assert response.headers["X-Request-ID"] == "req-123"
    assert quiet.headers["X-Request-ID"]
    assert len(handler.lines) == 1
    entry = json.loads(handler.lines[0])
    assert entry["request_id"] == "req-123"
    assert entry["message"].startswith("GET /api/pipeline-runs 200")
    assert "duration_ms" in entry
