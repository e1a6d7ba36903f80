"""Tests for identifier minting and validation."""

from datetime import datetime, timezone

import pytest

from pipewatch.services.id_generator import (
    extract_timestamp_from_run_id,
    generate_alert_id,
    generate_error_id,
    generate_run_id,
    generate_stage_id,
    generate_webhook_id,
    validate_id,
)


class TestIdFormats:
    def test_run_id_embeds_utc_timestamp(self):
        now = datetime(2025, 1, 1, 10, 0, 5, tzinfo=timezone.utc)
        run_id = generate_run_id(now)
        assert run_id.startswith("run_20250101_100005_")
        assert validate_id(run_id, "run")
        assert extract_timestamp_from_run_id(run_id) == now

    def test_each_kind_matches_its_pattern(self):
        assert validate_id(generate_webhook_id(), "webhook")
        assert validate_id(generate_error_id(), "error")
        assert validate_id(generate_stage_id(), "stage")
        assert validate_id(generate_alert_id(), "alert")

    def test_ids_are_unique(self):
        ids = {generate_run_id() for _ in range(500)}
        assert len(ids) == 500

    def test_rejects_malformed(self):
        assert not validate_id("run_2025_bad", "run")
        assert not validate_id("", "webhook")
        assert not validate_id("webhook_XYZ", "webhook")
        assert extract_timestamp_from_run_id("not-a-run") is None

    def test_unknown_kind_raises(self):
        with pytest.raises(ValueError):
            validate_id("x", "widget")
