"""Provider-agnostic payment types and the adapter contract.

Every billing vendor is wrapped by a class that satisfies ``PaymentAdapter``.
Webhook interpretation produces *deltas* (``CustomerData``,
``SubscriptionData``, ``PaymentData``) which the reconciler upserts by
their vendor-scoped natural keys.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal, Protocol, runtime_checkable

PaymentProvider = Literal["stripe", "polar", "lemonsqueezy"]
SubscriptionStatus = Literal["active", "canceled", "past_due", "trialing", "incomplete", "paused"]
PaymentStatus = Literal["succeeded", "pending", "failed", "canceled", "refunded"]
PaymentType = Literal["subscription", "one_time", "refund"]
Interval = Literal["month", "year"]

SUBSCRIPTION_STATUSES: frozenset[str] = frozenset(
    {"active", "canceled", "past_due", "trialing", "incomplete", "paused"}
)


@dataclass
class CustomerData:
    """Customer delta. ``user_id`` is ``None`` when the vendor payload has no owner."""

    provider: PaymentProvider
    provider_customer_id: str
    user_id: str | None = None
    email: str | None = None
    is_provisional: bool = False


@dataclass
class SubscriptionData:
    """Subscription delta in normalized form."""

    provider: PaymentProvider
    provider_subscription_id: str
    status: SubscriptionStatus
    plan: str
    user_id: str | None = None
    customer_id: str | None = None  # local customers.id, when the adapter knows it
    provider_customer_id: str | None = None
    interval: Interval | None = None
    amount: Decimal | None = None
    currency: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None


@dataclass
class PaymentData:
    """Payment delta in normalized form."""

    provider: PaymentProvider
    provider_payment_id: str
    type: PaymentType
    status: PaymentStatus
    amount: Decimal
    currency: str
    user_id: str | None = None
    customer_id: str | None = None
    provider_customer_id: str | None = None
    subscription_id: str | None = None
    provider_subscription_id: str | None = None
    description: str | None = None


@dataclass
class CheckoutOptions:
    plan: str
    user_id: str
    email: str | None = None
    success_url: str | None = None
    cancel_url: str | None = None
    trial_days: int | None = None


@dataclass
class CheckoutResult:
    """Hosted checkout session; ``customer`` is the vendor customer it was opened for."""

    url: str
    session_id: str
    customer: CustomerData | None = None


@dataclass
class PortalResult:
    url: str


@dataclass
class WebhookEvent:
    """Normalized webhook envelope handed to ``PaymentAdapter.process_webhook``."""

    type: str
    provider: PaymentProvider
    data: Any
    raw_event: dict[str, Any]
    occurred_at: datetime | None = None


@dataclass
class WebhookResult:
    processed: bool
    customer: CustomerData | None = None
    subscription: SubscriptionData | None = None
    payment: PaymentData | None = None
    error: str | None = None

    @property
    def has_deltas(self) -> bool:
        return any((self.customer, self.subscription, self.payment))


@runtime_checkable
class PaymentAdapter(Protocol):
    """Capability set every billing vendor adapter implements."""

    provider: PaymentProvider
    signature_headers: tuple[str, ...]

    async def create_checkout(self, options: CheckoutOptions) -> CheckoutResult: ...

    async def create_customer(self, user_id: str, email: str | None = None) -> CustomerData: ...

    async def get_subscription(self, provider_subscription_id: str) -> SubscriptionData | None: ...

    async def cancel_subscription(
        self, provider_subscription_id: str, cancel_at_period_end: bool = True
    ) -> None: ...

    async def create_portal(
        self, provider_customer_id: str, return_url: str | None = None
    ) -> PortalResult: ...

    def process_webhook(self, event: WebhookEvent) -> WebhookResult: ...

    def validate_webhook(
        self,
        raw_body: bytes,
        signature: str,
        headers: Mapping[str, str] | None = None,
    ) -> bool: ...


# ---------------------------------------------------------------------------
# Conversion helpers shared by the adapters
# ---------------------------------------------------------------------------


def ts_to_naive(ts: int | float | None) -> datetime | None:
    """Convert a Unix timestamp to naive UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def iso_to_naive(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string (``Z`` suffix allowed) to naive UTC datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def cents_to_amount(cents: int | None) -> Decimal | None:
    """Convert vendor minor units to a two-place major-unit Decimal."""
    if cents is None:
        return None
    return (Decimal(int(cents)) / 100).quantize(Decimal("0.01"))


def normalize_interval(value: str | None) -> Interval | None:
    if value in ("month", "year"):
        return value  # type: ignore[return-value]
    return None
