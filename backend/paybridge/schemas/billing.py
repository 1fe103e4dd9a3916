"""Pydantic v2 request/response schemas for billing endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

# --- Request schemas ---


class CheckoutRequest(BaseModel):
    """Request to open a hosted checkout for a paid plan."""

    plan: str  # "starter", "pro" or "enterprise"
    success_url: str | None = None
    cancel_url: str | None = None


class PortalRequest(BaseModel):
    """Request to open the vendor's customer portal."""

    return_url: str | None = None


class CancelSubscriptionRequest(BaseModel):
    cancel_at_period_end: bool = True


# --- Response schemas ---


class PriceResponse(BaseModel):
    interval: str | None  # None for one-time prices
    amount_cents: int
    currency: str
    trial_period_days: int | None
    seat_based: bool


class PlanResponse(BaseModel):
    """Plan details for display, with prices for the active provider."""

    name: str
    display_name: str
    description: str
    features: list[str]
    is_free: bool
    recommended: bool
    max_seats: int | None
    prices: list[PriceResponse]


class PlansListResponse(BaseModel):
    provider: str
    plans: list[PlanResponse]


class CheckoutResponse(BaseModel):
    """Hosted checkout URL returned to frontend."""

    url: str
    session_id: str


class PortalResponse(BaseModel):
    url: str


class SubscriptionRead(BaseModel):
    """Persisted subscription row."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    provider: str
    provider_subscription_id: str
    status: str
    plan: str
    interval: str | None
    amount: Decimal | None
    currency: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    canceled_at: datetime | None
    trial_start: datetime | None
    trial_end: datetime | None
    created_at: datetime
    updated_at: datetime


class SubscriptionEnvelope(BaseModel):
    """``subscription`` is null when the user has never subscribed."""

    subscription: SubscriptionRead | None
