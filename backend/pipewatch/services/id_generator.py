"""
Identifier minting for runs, webhooks, errors, stages and alerts.

Run ids embed a UTC timestamp so they sort chronologically:
``run_20250101_100000_1a2b3c4d``.
"""

import re
import secrets
from datetime import datetime, timezone

from pipewatch.timeutil import utcnow

_HEX_LENGTHS = {
    "run": 8,
    "webhook": 12,
    "error": 10,
    "stage": 8,
    "alert": 12,
}

_PATTERNS = {
    "run": re.compile(r"^run_\d{8}_\d{6}_[a-f0-9]{8}$"),
    "webhook": re.compile(r"^webhook_[a-f0-9]{12}$"),
    "error": re.compile(r"^error_[a-f0-9]{10}$"),
    "stage": re.compile(r"^stage_[a-f0-9]{8}$"),
    "alert": re.compile(r"^alert_[a-f0-9]{12}$"),
}


def _hex(length: int) -> str:
    return secrets.token_hex((length + 1) // 2)[:length]


def generate_run_id(now: datetime | None = None) -> str:
    now = (now or utcnow()).astimezone(timezone.utc)
    return f"run_{now:%Y%m%d_%H%M%S}_{_hex(_HEX_LENGTHS['run'])}"


def generate_webhook_id() -> str:
    return f"webhook_{_hex(_HEX_LENGTHS['webhook'])}"


def generate_error_id() -> str:
    return f"error_{_hex(_HEX_LENGTHS['error'])}"


def generate_stage_id() -> str:
    return f"stage_{_hex(_HEX_LENGTHS['stage'])}"


def generate_alert_id() -> str:
    return f"alert_{_hex(_HEX_LENGTHS['alert'])}"


def validate_id(value: str, kind: str) -> bool:
    pattern = _PATTERNS.get(kind)
    if pattern is None:
        raise ValueError(f"Unknown id kind: {kind}")
    return bool(value) and pattern.match(value) is not None


def extract_timestamp_from_run_id(run_id: str) -> datetime | None:
    """Recover the creation second embedded in a run id."""
    if not validate_id(run_id, "run"):
        return None
    _, date_part, time_part, _ = run_id.split("_")
    return datetime.strptime(date_part + time_part, "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
