"""
Logging configuration.

Plain text by default; JSON lines when ``log_json`` is enabled. JSON entries
carry timestamp, level, logger, message and request_id, the run_id bound to
the current task (or passed through ``extra``), plus webhook_id and
duration_ms when passed through ``extra``.

Text lines get a ``[run_id]`` tag while a run is bound.
"""

import json
import logging
from datetime import datetime, timezone

from pipewatch.middleware.request_context import get_request_id, get_run_id

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s%(run_tag)s: %(message)s"
_EXTRA_FIELDS = ("webhook_id", "duration_ms")


class RunContextFilter(logging.Filter):
    """Stamp the bound run id onto each record so text handlers can show it."""

    def filter(self, record: logging.LogRecord) -> bool:
        run_id = getattr(record, "run_id", None) or get_run_id()
        record.run_tag = f" [{run_id}]" if run_id else ""
        return True


class JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": get_request_id(),
        }

        run_id = getattr(record, "run_id", None) or get_run_id()
        if run_id:
            log_entry["run_id"] = run_id

        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                log_entry[name] = getattr(record, name)

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def configure_logging(log_level: str = "INFO", json_format: bool = False) -> None:
    """Install a single stream handler on the root logger."""
    handler = logging.StreamHandler()
    handler.addFilter(RunContextFilter())
    handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(TEXT_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
