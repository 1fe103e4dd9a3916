"""Billing API endpoints: plans, hosted checkout, customer portal and subscription state.

Vendor calls go through the injected ``PaymentAdapter``; its ``PaymentError``
subclasses are turned into HTTP responses by the handlers in ``main``.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from paybridge.api.deps import get_current_active_user, get_db, get_payment_adapter
from paybridge.billing.base import CheckoutOptions, PaymentAdapter
from paybridge.billing.plans import PLANS, get_price_config, is_free_plan
from paybridge.config import settings
from paybridge.models.user import User
from paybridge.schemas.billing import (
    CancelSubscriptionRequest,
    CheckoutRequest,
    CheckoutResponse,
    PlanResponse,
    PlansListResponse,
    PortalRequest,
    PortalResponse,
    PriceResponse,
    SubscriptionEnvelope,
    SubscriptionRead,
)
from paybridge.services.billing_service import (
    get_cancelable_subscription,
    get_customer_for_user,
    get_latest_subscription,
    save_checkout_customer,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


def _provider_mismatch(kind: str, found: str, active: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=f"{kind} provider ({found}) does not match active provider ({active})",
    )


@router.get("/plans", response_model=PlansListResponse)
async def list_plans() -> PlansListResponse:
    """List available plans with prices for the active provider (public, no auth required)."""
    provider = settings.payment_provider
    return PlansListResponse(
        provider=provider,
        plans=[
            PlanResponse(
                name=p.name,
                display_name=p.display_name,
                description=p.description,
                features=list(p.features),
                is_free=p.is_free,
                recommended=p.recommended,
                max_seats=p.max_seats,
                prices=[
                    PriceResponse(
                        interval=price.interval,
                        amount_cents=price.amount,
                        currency=price.currency,
                        trial_period_days=price.trial_period_days,
                        seat_based=price.seat_based,
                    )
                    for price in get_price_config(p.name, provider)
                ],
            )
            for p in PLANS.values()
        ],
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    adapter: PaymentAdapter = Depends(get_payment_adapter),
) -> CheckoutResponse:
    """Open a hosted checkout session for a paid plan."""
    if body.plan not in PLANS or is_free_plan(body.plan):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid plan: {body.plan}",
        )

    result = await adapter.create_checkout(
        CheckoutOptions(
            plan=body.plan,
            user_id=str(current_user.id),
            email=current_user.email,
            success_url=body.success_url or settings.checkout_success_url,
            cancel_url=body.cancel_url or settings.checkout_cancel_url,
        )
    )

    # Persist the vendor customer now so the portal works before the first webhook
    if result.customer is not None:
        await save_checkout_customer(db, current_user, result.customer)

    logger.info(
        "Checkout session %s created for user %s (plan=%s, provider=%s)",
        result.session_id,
        current_user.id,
        body.plan,
        adapter.provider,
    )
    return CheckoutResponse(url=result.url, session_id=result.session_id)


@router.post("/portal", response_model=PortalResponse)
async def create_portal(
    body: PortalRequest | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    adapter: PaymentAdapter = Depends(get_payment_adapter),
) -> PortalResponse:
    """Open the vendor's customer portal for subscription management."""
    customer = await get_customer_for_user(db, current_user.id)
    if customer is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No customer found")

    if customer.provider != adapter.provider:
        raise _provider_mismatch("Customer", customer.provider, adapter.provider)

    return_url = (body.return_url if body else None) or settings.portal_return_url
    portal = await adapter.create_portal(customer.provider_customer_id, return_url)
    return PortalResponse(url=portal.url)


@router.get("/subscription", response_model=SubscriptionEnvelope)
async def get_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionEnvelope:
    """Return the user's most recently updated subscription, or null."""
    subscription = await get_latest_subscription(db, current_user.id)
    if subscription is None:
        return SubscriptionEnvelope(subscription=None)
    return SubscriptionEnvelope(subscription=SubscriptionRead.model_validate(subscription))


@router.post("/subscription/cancel", response_model=SubscriptionEnvelope)
async def cancel_subscription(
    body: CancelSubscriptionRequest | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    adapter: PaymentAdapter = Depends(get_payment_adapter),
) -> SubscriptionEnvelope:
    """Cancel the user's current subscription at the vendor.

    The local row is marked right away; the vendor's webhook that follows
    remains the source of truth.
    """
    at_period_end = body.cancel_at_period_end if body else True

    subscription = await get_cancelable_subscription(db, current_user.id)
    if subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active subscription found")

    if subscription.provider != adapter.provider:
        raise _provider_mismatch("Subscription", subscription.provider, adapter.provider)

    await adapter.cancel_subscription(subscription.provider_subscription_id, at_period_end)

    if at_period_end:
        subscription.cancel_at_period_end = True
    else:
        subscription.status = "canceled"
        subscription.canceled_at = datetime.now(timezone.utc).replace(tzinfo=None)
    await db.flush()
    await db.refresh(subscription)

    logger.info(
        "Subscription %s canceled by user %s (at period end: %s)",
        subscription.provider_subscription_id,
        current_user.id,
        at_period_end,
    )
    return SubscriptionEnvelope(subscription=SubscriptionRead.model_validate(subscription))
