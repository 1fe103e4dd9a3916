"""Tests for webhook envelope normalization."""

from datetime import datetime

import pytest

from paybridge.billing.webhooks import (
    extract_event_data,
    extract_event_type,
    extract_occurred_at,
    parse_webhook_event,
    read_signature,
)


class _Adapter:
    provider = "polar"
    signature_headers = ("webhook-signature", "x-polar-signature")


class TestReadSignature:
    def test_first_present_header_wins(self):
        headers = {"x-polar-signature": "legacy", "webhook-signature": "v1,abc"}
        assert read_signature(_Adapter(), headers) == "v1,abc"

    def test_falls_back_to_later_header(self):
        assert read_signature(_Adapter(), {"x-polar-signature": "legacy"}) == "legacy"

    def test_empty_header_is_missing(self):
        assert read_signature(_Adapter(), {"webhook-signature": ""}) is None


class TestEventType:
    def test_stripe_and_polar_use_type(self):
        assert extract_event_type("stripe", {"type": "invoice.paid"}) == "invoice.paid"
        assert extract_event_type("polar", {"type": "order.paid"}) == "order.paid"

    def test_lemonsqueezy_uses_meta_event_name(self):
        payload = {"meta": {"event_name": "subscription_created"}, "type": "ignored"}
        assert extract_event_type("lemonsqueezy", payload) == "subscription_created"

    @pytest.mark.parametrize(
        "payload", [{}, {"type": ""}, {"type": 42}, {"meta": None}, {"meta": "subscription_created"}]
    )
    def test_missing_type(self, payload):
        assert extract_event_type("stripe", payload) is None
        assert extract_event_type("lemonsqueezy", payload) is None


class TestEventData:
    def test_stripe_unwraps_data_object(self):
        assert extract_event_data("stripe", {"data": {"object": {"id": "sub_1"}}}) == {"id": "sub_1"}

    def test_other_providers_use_data(self):
        assert extract_event_data("polar", {"data": {"id": "p"}}) == {"id": "p"}
        assert extract_event_data("lemonsqueezy", {"data": {"id": "1", "attributes": {}}})["id"] == "1"

    def test_missing_data_is_empty(self):
        assert extract_event_data("stripe", {}) == {}

    @pytest.mark.parametrize("data", [["x"], "sub_1", {"object": ["x"]}])
    def test_non_object_data_is_empty(self, data):
        assert extract_event_data("stripe", {"data": data}) == {}
        assert extract_occurred_at("lemonsqueezy", {"data": data}) is None


class TestOccurredAt:
    def test_stripe_created(self):
        assert extract_occurred_at("stripe", {"created": 1767225600}) == datetime(2026, 1, 1)

    def test_polar_timestamp(self):
        payload = {"timestamp": "2026-01-01T12:30:00Z"}
        assert extract_occurred_at("polar", payload) == datetime(2026, 1, 1, 12, 30)

    def test_lemonsqueezy_updated_at(self):
        payload = {"data": {"attributes": {"updated_at": "2026-01-01T00:00:10.000000Z"}}}
        assert extract_occurred_at("lemonsqueezy", payload) == datetime(2026, 1, 1, 0, 0, 10)

    def test_garbage_timestamp_is_ignored(self):
        assert extract_occurred_at("polar", {"timestamp": "yesterday"}) is None
        assert extract_occurred_at("stripe", {"created": "soon"}) is None

    def test_absent_timestamp(self):
        assert extract_occurred_at("stripe", {}) is None


class TestParseWebhookEvent:
    def test_stripe_event(self):
        payload = {
            "id": "evt_1",
            "type": "customer.subscription.updated",
            "created": 1767225600,
            "data": {"object": {"id": "sub_1"}},
        }
        event = parse_webhook_event("stripe", payload)
        assert event.type == "customer.subscription.updated"
        assert event.provider == "stripe"
        assert event.data == {"id": "sub_1"}
        assert event.raw_event == payload
        assert event.occurred_at == datetime(2026, 1, 1)

    def test_untyped_payload(self):
        assert parse_webhook_event("polar", {"data": {}}) is None
