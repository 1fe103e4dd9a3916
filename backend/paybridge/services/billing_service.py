"""Billing persistence: customer/subscription/payment lookups and webhook upserts.

Rows are matched by their vendor-scoped natural key
``(provider, provider_*_id)``. Upserts never delete, and never insert a row
without an owning user.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paybridge.billing.base import CustomerData, PaymentData, SubscriptionData, WebhookResult
from paybridge.models.customer import Customer
from paybridge.models.payment import Payment
from paybridge.models.subscription import Subscription
from paybridge.models.user import User

logger = logging.getLogger(__name__)

# Subscriptions that can still be canceled from the app
CANCELABLE_STATUSES = ("active", "trialing", "past_due", "paused")


@dataclass
class ReconcileSummary:
    """Rows touched by one webhook; ``None`` when a delta was skipped."""

    customer: Customer | None = None
    subscription: Subscription | None = None
    payment: Payment | None = None


def _to_uuid(value: str | uuid.UUID | None) -> uuid.UUID | None:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        logger.warning("Ignoring malformed user/customer id: %s", value)
        return None


async def _existing_user_id(db: AsyncSession, user_id: str | uuid.UUID | None) -> uuid.UUID | None:
    """Return ``user_id`` as a UUID if that user exists, else None."""
    parsed = _to_uuid(user_id)
    if parsed is None:
        return None
    user = await db.get(User, parsed)
    if user is None:
        logger.warning("Webhook references unknown user %s", parsed)
        return None
    return user.id


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def get_customer_by_provider_id(
    db: AsyncSession, provider: str, provider_customer_id: str
) -> Customer | None:
    result = await db.execute(
        select(Customer).where(
            Customer.provider == provider,
            Customer.provider_customer_id == provider_customer_id,
        )
    )
    return result.scalar_one_or_none()


async def get_customer_for_user(
    db: AsyncSession, user_id: uuid.UUID, provider: str | None = None
) -> Customer | None:
    """Most recently updated customer of a user, optionally for one provider.

    Confirmed customers win over provisional ones.
    """
    query = select(Customer).where(Customer.user_id == user_id)
    if provider is not None:
        query = query.where(Customer.provider == provider)
    query = query.order_by(
        Customer.is_provisional.asc(),
        Customer.updated_at.desc(),
        Customer.created_at.desc(),
    ).limit(1)
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_subscription_by_provider_id(
    db: AsyncSession, provider: str, provider_subscription_id: str
) -> Subscription | None:
    result = await db.execute(
        select(Subscription).where(
            Subscription.provider == provider,
            Subscription.provider_subscription_id == provider_subscription_id,
        )
    )
    return result.scalar_one_or_none()


async def get_latest_subscription(db: AsyncSession, user_id: uuid.UUID) -> Subscription | None:
    """The user's most recently updated subscription, in any status."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.updated_at.desc(), Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_cancelable_subscription(db: AsyncSession, user_id: uuid.UUID) -> Subscription | None:
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status.in_(CANCELABLE_STATUSES),
        )
        .order_by(Subscription.updated_at.desc(), Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_payment_by_provider_id(
    db: AsyncSession, provider: str, provider_payment_id: str
) -> Payment | None:
    result = await db.execute(
        select(Payment).where(
            Payment.provider == provider,
            Payment.provider_payment_id == provider_payment_id,
        )
    )
    return result.scalar_one_or_none()


async def _resolve_customer(
    db: AsyncSession,
    provider: str,
    customer_id: str | None,
    provider_customer_id: str | None,
    fallback: Customer | None,
) -> Customer | None:
    """Find the local customer a subscription/payment delta belongs to."""
    local_id = _to_uuid(customer_id)
    if local_id is not None:
        customer = await db.get(Customer, local_id)
        if customer is not None:
            return customer
    if provider_customer_id:
        customer = await get_customer_by_provider_id(db, provider, provider_customer_id)
        if customer is not None:
            return customer
    return fallback


# ---------------------------------------------------------------------------
# Upserts
# ---------------------------------------------------------------------------


async def upsert_customer(db: AsyncSession, data: CustomerData) -> tuple[Customer | None, bool]:
    """Insert or update a customer by ``(provider, provider_customer_id)``.

    A confirmed delta for a user who holds a provisional row for the same
    provider replaces the placeholder id instead of adding a second row.

    Returns:
        ``(row, created)``; row is None when no owning user is known.
    """
    customer = await get_customer_by_provider_id(db, data.provider, data.provider_customer_id)
    if customer is not None:
        if data.email:
            customer.email = data.email
        if customer.is_provisional and not data.is_provisional:
            customer.is_provisional = False
        await db.flush()
        return customer, False

    user_id = await _existing_user_id(db, data.user_id)
    if user_id is None:
        logger.warning(
            "Skipping %s customer %s: no owning user",
            data.provider,
            data.provider_customer_id,
        )
        return None, False

    if not data.is_provisional:
        result = await db.execute(
            select(Customer).where(
                Customer.user_id == user_id,
                Customer.provider == data.provider,
                Customer.is_provisional.is_(True),
            )
        )
        provisional = result.scalars().first()
        if provisional is not None:
            logger.info(
                "Confirming provisional %s customer %s -> %s",
                data.provider,
                provisional.provider_customer_id,
                data.provider_customer_id,
            )
            provisional.provider_customer_id = data.provider_customer_id
            provisional.is_provisional = False
            if data.email:
                provisional.email = data.email
            await db.flush()
            return provisional, False

    customer = Customer(
        user_id=user_id,
        provider=data.provider,
        provider_customer_id=data.provider_customer_id,
        email=data.email,
        is_provisional=data.is_provisional,
    )
    db.add(customer)
    await db.flush()
    logger.info("Created %s customer %s for user %s", data.provider, data.provider_customer_id, user_id)
    return customer, True


async def upsert_subscription(
    db: AsyncSession,
    data: SubscriptionData,
    occurred_at: datetime | None = None,
    customer_hint: Customer | None = None,
) -> tuple[Subscription | None, bool]:
    """Insert or update a subscription by ``(provider, provider_subscription_id)``.

    An update whose ``occurred_at`` is older than the stored ``last_event_at``
    is skipped so late deliveries cannot roll state back.
    """
    customer = await _resolve_customer(
        db, data.provider, data.customer_id, data.provider_customer_id, customer_hint
    )
    subscription = await get_subscription_by_provider_id(db, data.provider, data.provider_subscription_id)

    if subscription is not None:
        if (
            occurred_at is not None
            and subscription.last_event_at is not None
            and occurred_at < subscription.last_event_at
        ):
            logger.info(
                "Skipping stale %s event for subscription %s (%s < %s)",
                data.provider,
                data.provider_subscription_id,
                occurred_at,
                subscription.last_event_at,
            )
            return subscription, False
        _apply_subscription_fields(subscription, data, occurred_at)
        if customer is not None:
            subscription.customer_id = customer.id
        await db.flush()
        logger.info(
            "Updated %s subscription %s: status=%s plan=%s",
            data.provider,
            data.provider_subscription_id,
            subscription.status,
            subscription.plan,
        )
        return subscription, False

    user_id = await _existing_user_id(db, data.user_id)
    if user_id is None and customer is not None:
        user_id = customer.user_id
    if user_id is None:
        logger.warning(
            "Skipping %s subscription %s: no owning user",
            data.provider,
            data.provider_subscription_id,
        )
        return None, False

    subscription = Subscription(
        user_id=user_id,
        customer_id=customer.id if customer is not None else None,
        provider=data.provider,
        provider_subscription_id=data.provider_subscription_id,
    )
    _apply_subscription_fields(subscription, data, occurred_at)
    db.add(subscription)
    await db.flush()
    logger.info(
        "Created %s subscription %s for user %s: plan=%s",
        data.provider,
        data.provider_subscription_id,
        user_id,
        data.plan,
    )
    return subscription, True


def _apply_subscription_fields(
    subscription: Subscription, data: SubscriptionData, occurred_at: datetime | None
) -> None:
    subscription.status = data.status
    subscription.plan = data.plan
    subscription.cancel_at_period_end = data.cancel_at_period_end
    subscription.canceled_at = data.canceled_at

    # Fields a payload may omit keep their stored value
    for name in (
        "interval",
        "amount",
        "currency",
        "current_period_start",
        "current_period_end",
        "trial_start",
        "trial_end",
    ):
        value = getattr(data, name)
        if value is not None:
            setattr(subscription, name, value)

    if occurred_at is not None:
        subscription.last_event_at = occurred_at


async def upsert_payment(
    db: AsyncSession,
    data: PaymentData,
    customer_hint: Customer | None = None,
    subscription_hint: Subscription | None = None,
) -> tuple[Payment | None, bool]:
    """Insert a payment, or update only the status of an existing one."""
    payment = await get_payment_by_provider_id(db, data.provider, data.provider_payment_id)
    if payment is not None:
        # Refunds are final; a redelivered success must not undo them
        if payment.status == "refunded" and data.status != "refunded":
            logger.info(
                "Payment %s already refunded, ignoring status %s", data.provider_payment_id, data.status
            )
            return payment, False
        if payment.status != data.status:
            logger.info(
                "Payment %s status %s -> %s", data.provider_payment_id, payment.status, data.status
            )
            payment.status = data.status
            await db.flush()
        return payment, False

    customer = await _resolve_customer(
        db, data.provider, data.customer_id, data.provider_customer_id, customer_hint
    )

    subscription = None
    local_subscription_id = _to_uuid(data.subscription_id)
    if local_subscription_id is not None:
        subscription = await db.get(Subscription, local_subscription_id)
    if subscription is None and data.provider_subscription_id:
        subscription = await get_subscription_by_provider_id(
            db, data.provider, data.provider_subscription_id
        )
    if subscription is None and subscription_hint is not None and data.provider_subscription_id is None:
        subscription = subscription_hint

    user_id = await _existing_user_id(db, data.user_id)
    if user_id is None and customer is not None:
        user_id = customer.user_id
    if user_id is None and subscription is not None:
        user_id = subscription.user_id
    if user_id is None:
        logger.warning(
            "Skipping %s payment %s: no owning user",
            data.provider,
            data.provider_payment_id,
        )
        return None, False

    payment = Payment(
        user_id=user_id,
        customer_id=customer.id if customer is not None else None,
        subscription_id=subscription.id if subscription is not None else None,
        provider=data.provider,
        provider_payment_id=data.provider_payment_id,
        type=data.type,
        status=data.status,
        amount=data.amount,
        currency=data.currency,
        description=data.description,
    )
    db.add(payment)
    await db.flush()
    logger.info(
        "Recorded %s payment %s: %s %s %s",
        data.provider,
        data.provider_payment_id,
        data.status,
        data.amount,
        data.currency,
    )
    return payment, True


async def apply_webhook_result(
    db: AsyncSession,
    result: WebhookResult,
    occurred_at: datetime | None = None,
) -> ReconcileSummary:
    """Upsert the deltas of one processed webhook: customer, subscription, payment.

    The caller owns the transaction; nothing is committed here.
    """
    summary = ReconcileSummary()

    customer_hint = None
    if result.customer is not None:
        summary.customer, _ = await upsert_customer(db, result.customer)
        customer_hint = summary.customer
        if customer_hint is None:
            customer_hint = await get_customer_by_provider_id(
                db, result.customer.provider, result.customer.provider_customer_id
            )

    if result.subscription is not None:
        summary.subscription, _ = await upsert_subscription(
            db, result.subscription, occurred_at=occurred_at, customer_hint=customer_hint
        )

    if result.payment is not None:
        summary.payment, _ = await upsert_payment(
            db,
            result.payment,
            customer_hint=customer_hint,
            subscription_hint=summary.subscription,
        )

    return summary


async def save_checkout_customer(db: AsyncSession, user: User, data: CustomerData) -> Customer:
    """Persist the customer a checkout was opened for (provisional or confirmed)."""
    if data.user_id is None:
        data.user_id = str(user.id)
    if data.is_provisional:
        confirmed = await get_customer_for_user(db, user.id, data.provider)
        if confirmed is not None and not confirmed.is_provisional:
            return confirmed
    customer, _ = await upsert_customer(db, data)
    if customer is None:
        # upsert_customer only skips when the user is unknown, which cannot
        # happen for an authenticated user
        raise RuntimeError(f"Could not persist checkout customer for user {user.id}")
    return customer
