"""Tests for secret redaction in stored payloads and headers."""

from pipewatch.services.sanitize import REDACTED, sanitize, sanitize_headers, truncate_body


def test_redacts_nested_dicts_and_lists():
    payload = {
        "event": "campaign.sent",
        "data": {
            "campaign": {"id": 7, "api_key": "k-123"},
            "recipients": [
                {"email": "a@example.com", "auth_token": "t-1"},
                {"email": "b@example.com", "meta": [{"Password": "hunter2"}]},
            ],
        },
        "Signature": "sha256=abc",
    }

    cleaned = sanitize(payload)

    assert cleaned["event"] == "campaign.sent"
    assert cleaned["Signature"] == REDACTED
    assert cleaned["data"]["campaign"] == {"id": 7, "api_key": REDACTED}
    assert cleaned["data"]["recipients"][0] == {"email": "a@example.com", "auth_token": REDACTED}
    assert cleaned["data"]["recipients"][1]["meta"] == [{"Password": REDACTED}]
    assert payload["data"]["campaign"]["api_key"] == "k-123"


def test_redacts_whole_subtree_under_sensitive_key():
    cleaned = sanitize({"secrets": {"ci": "abc", "site": ["x", "y"]}})
    assert cleaned == {"secrets": REDACTED}


def test_scalars_and_tuples():
    assert sanitize("plain") == "plain"
    assert sanitize(({"token": "t"}, 3)) == [{"token": REDACTED}, 3]


def test_headers_lowercased_and_redacted():
    headers = sanitize_headers({"Authorization": "Bearer x", "X-Webhook-Token": "s", "User-Agent": "ua"})
    assert headers == {"authorization": REDACTED, "x-webhook-token": REDACTED, "user-agent": "ua"}


def test_truncate_body():
    assert truncate_body("a" * 5, limit=10) == "aaaaa"
    assert truncate_body("a" * 12, limit=10) == "aaaaaaaaaa...[truncated]"
    assert truncate_body({"k": 1}, limit=1) == {"k": 1}
