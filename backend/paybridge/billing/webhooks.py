"""Webhook envelope normalization shared by all providers.

Each vendor wraps its payload differently:

- Stripe: ``{"type", "created", "data": {"object": {...}}}``
- Polar: ``{"type", "timestamp", "data": {...}}``
- Lemon Squeezy: ``{"meta": {"event_name", "custom_data"}, "data": {"id", "attributes"}}``

The helpers here turn any of them into a ``WebhookEvent``.
"""

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from paybridge.billing.base import PaymentAdapter, WebhookEvent, iso_to_naive, ts_to_naive

logger = logging.getLogger(__name__)


def read_signature(adapter: PaymentAdapter, headers: Mapping[str, str]) -> str | None:
    """Return the first non-empty signature header the adapter recognizes."""
    for name in adapter.signature_headers:
        value = headers.get(name)
        if value:
            return value
    return None


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def extract_event_type(provider: str, payload: Mapping[str, Any]) -> str | None:
    """Return the vendor event type, or None if the payload carries none."""
    if provider == "lemonsqueezy":
        event_type = _mapping(payload.get("meta")).get("event_name")
    else:
        event_type = payload.get("type")
    if not isinstance(event_type, str) or not event_type:
        return None
    return event_type


def extract_event_data(provider: str, payload: Mapping[str, Any]) -> Any:
    if provider == "stripe":
        return _mapping(_mapping(payload.get("data")).get("object"))
    return _mapping(payload.get("data"))


def extract_occurred_at(provider: str, payload: Mapping[str, Any]) -> datetime | None:
    """Event time used to order subscription updates.

    Falls back to None when the payload has no usable timestamp, in which
    case the update is applied unconditionally.
    """
    try:
        if provider == "stripe":
            return ts_to_naive(payload.get("created"))
        if provider == "polar":
            return iso_to_naive(payload.get("timestamp"))
        attributes = _mapping(_mapping(payload.get("data")).get("attributes"))
        return iso_to_naive(attributes.get("updated_at"))
    except (TypeError, ValueError, OverflowError):
        logger.warning("Unparseable %s webhook timestamp, ignoring event time", provider)
        return None


def parse_webhook_event(provider: str, payload: Mapping[str, Any]) -> WebhookEvent | None:
    """Build a ``WebhookEvent`` from a decoded payload, or None if it has no type."""
    event_type = extract_event_type(provider, payload)
    if event_type is None:
        return None
    return WebhookEvent(
        type=event_type,
        provider=provider,  # type: ignore[arg-type]
        data=extract_event_data(provider, payload),
        raw_event=dict(payload),
        occurred_at=extract_occurred_at(provider, payload),
    )
