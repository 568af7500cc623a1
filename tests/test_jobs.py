"""Tests for job payload validation."""

import json

import pytest

from pricewatch.worker.jobs import (
    CheckPricePayload,
    Job,
    SendDigestPayload,
    UnrecoverableJobError,
    parse_payload,
)


def test_check_price_payload_uses_camel_case_keys():
    payload = CheckPricePayload(product_id="12")
    data = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
    assert data["productId"] == "12"
    assert "triggeredAt" in data
    assert "url" not in data


def test_parse_payload_round_trips_stored_json():
    stored = SendDigestPayload(trigger_type="scheduled").to_json()
    payload = parse_payload("send-digest", json.loads(stored))
    assert isinstance(payload, SendDigestPayload)
    assert payload.trigger_type == "scheduled"


def test_check_price_requires_url_or_product_id():
    with pytest.raises(UnrecoverableJobError):
        parse_payload("check-price", {"triggeredAt": "2026-01-01T00:00:00"})


def test_unknown_kind_is_unrecoverable():
    with pytest.raises(UnrecoverableJobError):
        parse_payload("reindex-everything", {})


def test_invalid_trigger_type_is_unrecoverable():
    with pytest.raises(UnrecoverableJobError):
        parse_payload("send-digest", {"triggerType": "cron"})


def test_job_from_hash():
    job = Job.from_hash(
        "9",
        {
            "kind": "check-price",
            "data": '{"url": "https://shop.example.com"}',
            "state": "active",
            "attempts_made": "2",
            "max_attempts": "3",
            "parent_id": "4",
            "created_at": "1700000000000",
        },
    )
    assert job.data == {"url": "https://shop.example.com"}
    assert job.parent_id == "4"
    assert job.is_final_attempt is True
    assert job.created_at == 1700000000000.0
