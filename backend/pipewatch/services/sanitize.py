"""Redaction of secret-looking fields before payloads and headers are persisted."""

from typing import Any

REDACTED = "[REDACTED]"
SENSITIVE_TERMS = ("password", "token", "secret", "key", "auth", "signature")
MAX_BODY_CHARS = 1000


def is_sensitive(name: str) -> bool:
    lowered = name.lower()
    return any(term in lowered for term in SENSITIVE_TERMS)


def sanitize(value: Any) -> Any:
    """Return a copy of ``value`` with sensitive keys redacted at every depth."""
    if isinstance(value, dict):
        return {
            k: REDACTED if is_sensitive(str(k)) else sanitize(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize(v) for v in value]
    return value


def sanitize_headers(headers) -> dict[str, str]:
    return {str(k).lower(): (REDACTED if is_sensitive(str(k)) else str(v)) for k, v in dict(headers).items()}


def truncate_body(body: Any, limit: int = MAX_BODY_CHARS) -> Any:
    if isinstance(body, str) and len(body) > limit:
        return body[:limit] + "...[truncated]"
    return body
