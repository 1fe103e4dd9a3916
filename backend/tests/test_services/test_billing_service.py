"""Tests for billing persistence: lookups and idempotent webhook upserts."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select

from paybridge.billing.base import CustomerData, PaymentData, SubscriptionData, WebhookResult
from paybridge.models.customer import Customer
from paybridge.models.payment import Payment
from paybridge.models.subscription import Subscription
from paybridge.services.billing_service import (
    apply_webhook_result,
    get_cancelable_subscription,
    get_customer_for_user,
    get_latest_subscription,
    save_checkout_customer,
    upsert_customer,
    upsert_payment,
    upsert_subscription,
)


async def _count(db, model) -> int:
    return await db.scalar(select(func.count()).select_from(model))


def _customer(user, provider_customer_id="cus_123", **kwargs) -> CustomerData:
    return CustomerData(
        provider="stripe",
        provider_customer_id=provider_customer_id,
        user_id=str(user.id) if user is not None else None,
        email="buyer@test.com",
        **kwargs,
    )


def _subscription(user=None, status="active", **kwargs) -> SubscriptionData:
    return SubscriptionData(
        provider="stripe",
        provider_subscription_id="sub_123",
        status=status,
        plan="pro",
        user_id=str(user.id) if user is not None else None,
        provider_customer_id="cus_123",
        interval="month",
        amount=Decimal("29.90"),
        currency="usd",
        current_period_start=datetime(2026, 1, 1),
        current_period_end=datetime(2026, 2, 1),
        **kwargs,
    )


def _payment(user=None, status="succeeded", **kwargs) -> PaymentData:
    return PaymentData(
        provider="stripe",
        provider_payment_id="in_123",
        type="subscription",
        status=status,
        amount=kwargs.pop("amount", Decimal("29.90")),
        currency="usd",
        user_id=str(user.id) if user is not None else None,
        provider_customer_id="cus_123",
        provider_subscription_id="sub_123",
        **kwargs,
    )


class TestUpsertCustomer:
    async def test_create_then_update_same_row(self, db_session, test_user):
        first, created = await upsert_customer(db_session, _customer(test_user))
        assert created is True
        assert first.user_id == test_user.id

        second, created = await upsert_customer(
            db_session, CustomerData(provider="stripe", provider_customer_id="cus_123", email="new@test.com")
        )
        assert created is False
        assert second.id == first.id
        assert second.email == "new@test.com"
        assert await _count(db_session, Customer) == 1

    async def test_no_owner_is_skipped(self, db_session):
        customer, created = await upsert_customer(db_session, _customer(None))
        assert customer is None
        assert created is False
        assert await _count(db_session, Customer) == 0

    async def test_unknown_user_is_skipped(self, db_session):
        data = CustomerData(provider="stripe", provider_customer_id="cus_x", user_id=str(uuid.uuid4()))
        customer, _ = await upsert_customer(db_session, data)
        assert customer is None

    async def test_provisional_row_is_confirmed(self, db_session, test_user):
        placeholder, _ = await upsert_customer(
            db_session,
            CustomerData(
                provider="polar",
                provider_customer_id=f"polar_pending_{test_user.id}",
                user_id=str(test_user.id),
                is_provisional=True,
            ),
        )

        confirmed, created = await upsert_customer(
            db_session,
            CustomerData(
                provider="polar",
                provider_customer_id="polar-cus-1",
                user_id=str(test_user.id),
                email="polar@test.com",
            ),
        )

        assert created is False
        assert confirmed.id == placeholder.id
        assert confirmed.provider_customer_id == "polar-cus-1"
        assert confirmed.is_provisional is False
        assert confirmed.email == "polar@test.com"
        assert await _count(db_session, Customer) == 1


class TestUpsertSubscription:
    async def test_create(self, db_session, test_user):
        sub, created = await upsert_subscription(db_session, _subscription(test_user))
        assert created is True
        assert sub.user_id == test_user.id
        assert sub.plan == "pro"
        assert sub.status == "active"
        assert sub.interval == "month"
        assert sub.amount == Decimal("29.90")

    async def test_redelivery_updates_in_place(self, db_session, test_user):
        first, _ = await upsert_subscription(db_session, _subscription(test_user))
        second, created = await upsert_subscription(db_session, _subscription(test_user, status="past_due"))
        assert created is False
        assert second.id == first.id
        assert second.status == "past_due"
        assert await _count(db_session, Subscription) == 1

    async def test_older_event_is_skipped(self, db_session, test_user):
        await upsert_subscription(db_session, _subscription(test_user), occurred_at=datetime(2026, 1, 2))
        sub, _ = await upsert_subscription(
            db_session, _subscription(test_user, status="canceled"), occurred_at=datetime(2026, 1, 1)
        )
        assert sub.status == "active"
        assert sub.last_event_at == datetime(2026, 1, 2)

    async def test_newer_event_is_applied(self, db_session, test_user):
        await upsert_subscription(db_session, _subscription(test_user), occurred_at=datetime(2026, 1, 1))
        sub, _ = await upsert_subscription(
            db_session, _subscription(test_user, status="canceled"), occurred_at=datetime(2026, 1, 2)
        )
        assert sub.status == "canceled"
        assert sub.last_event_at == datetime(2026, 1, 2)

    async def test_omitted_fields_keep_stored_values(self, db_session, test_user):
        await upsert_subscription(db_session, _subscription(test_user))
        sparse = SubscriptionData(
            provider="stripe", provider_subscription_id="sub_123", status="active", plan="pro"
        )
        sub, _ = await upsert_subscription(db_session, sparse)
        assert sub.amount == Decimal("29.90")
        assert sub.current_period_end == datetime(2026, 2, 1)

    async def test_owner_resolved_from_customer(self, db_session, test_user):
        customer, _ = await upsert_customer(db_session, _customer(test_user))
        sub, created = await upsert_subscription(db_session, _subscription(None))
        assert created is True
        assert sub.user_id == test_user.id
        assert sub.customer_id == customer.id

    async def test_no_owner_is_skipped(self, db_session):
        sub, created = await upsert_subscription(db_session, _subscription(None))
        assert sub is None
        assert created is False
        assert await _count(db_session, Subscription) == 0


class TestUpsertPayment:
    async def test_insert_links_subscription(self, db_session, test_user):
        sub, _ = await upsert_subscription(db_session, _subscription(test_user))
        payment, created = await upsert_payment(db_session, _payment(test_user))
        assert created is True
        assert payment.subscription_id == sub.id
        assert payment.amount == Decimal("29.90")

    async def test_existing_payment_only_changes_status(self, db_session, test_user):
        await upsert_payment(db_session, _payment(test_user))
        payment, created = await upsert_payment(
            db_session, _payment(test_user, status="refunded", amount=Decimal("0.00"), description="Refund")
        )
        assert created is False
        assert payment.status == "refunded"
        assert payment.amount == Decimal("29.90")
        assert payment.description is None
        assert await _count(db_session, Payment) == 1

    async def test_redelivered_success_does_not_undo_refund(self, db_session, test_user):
        for status in ("succeeded", "refunded", "succeeded"):
            payment, _ = await upsert_payment(db_session, _payment(test_user, status=status))
        assert payment.status == "refunded"
        assert await _count(db_session, Payment) == 1

    async def test_owner_from_subscription(self, db_session, test_user):
        await upsert_subscription(db_session, _subscription(test_user))
        data = _payment(None)
        data.provider_customer_id = None
        payment, _ = await upsert_payment(db_session, data)
        assert payment.user_id == test_user.id

    async def test_no_owner_is_skipped(self, db_session):
        payment, _ = await upsert_payment(db_session, _payment(None))
        assert payment is None
        assert await _count(db_session, Payment) == 0


class TestApplyWebhookResult:
    async def test_customer_subscription_and_payment(self, db_session, test_user):
        result = WebhookResult(
            processed=True,
            customer=_customer(test_user),
            subscription=_subscription(None),
            payment=_payment(None),
        )
        summary = await apply_webhook_result(db_session, result, occurred_at=datetime(2026, 1, 1))

        assert summary.customer.user_id == test_user.id
        assert summary.subscription.customer_id == summary.customer.id
        assert summary.subscription.user_id == test_user.id
        assert summary.payment.subscription_id == summary.subscription.id
        assert summary.payment.customer_id == summary.customer.id

    async def test_applying_twice_keeps_one_row_each(self, db_session, test_user):
        result = WebhookResult(
            processed=True,
            customer=_customer(test_user),
            subscription=_subscription(test_user),
            payment=_payment(test_user),
        )
        await apply_webhook_result(db_session, result)
        await apply_webhook_result(db_session, result)

        assert await _count(db_session, Customer) == 1
        assert await _count(db_session, Subscription) == 1
        assert await _count(db_session, Payment) == 1

    async def test_unowned_result_writes_nothing(self, db_session):
        result = WebhookResult(
            processed=True,
            customer=_customer(None),
            subscription=_subscription(None),
            payment=_payment(None),
        )
        summary = await apply_webhook_result(db_session, result)
        assert summary.customer is None
        assert summary.subscription is None
        assert summary.payment is None


class TestLookups:
    async def test_confirmed_customer_beats_provisional(self, db_session, test_user):
        await upsert_customer(db_session, _customer(test_user, provider_customer_id="cus_real"))
        db_session.add(
            Customer(
                user_id=test_user.id,
                provider="stripe",
                provider_customer_id="placeholder",
                is_provisional=True,
            )
        )
        await db_session.flush()

        customer = await get_customer_for_user(db_session, test_user.id)
        assert customer.provider_customer_id == "cus_real"

    async def test_customer_filtered_by_provider(self, db_session, test_user):
        await upsert_customer(db_session, _customer(test_user))
        assert await get_customer_for_user(db_session, test_user.id, "polar") is None

    async def test_save_checkout_customer_reuses_confirmed_row(self, db_session, test_user):
        confirmed, _ = await upsert_customer(
            db_session,
            CustomerData(provider="polar", provider_customer_id="polar-cus-1", user_id=str(test_user.id)),
        )
        saved = await save_checkout_customer(
            db_session,
            test_user,
            CustomerData(
                provider="polar", provider_customer_id=f"polar_pending_{test_user.id}", is_provisional=True
            ),
        )
        assert saved.id == confirmed.id
        assert await _count(db_session, Customer) == 1

    async def test_save_checkout_customer_stores_provisional(self, db_session, test_user):
        saved = await save_checkout_customer(
            db_session,
            test_user,
            CustomerData(provider="polar", provider_customer_id=f"polar_pending_{test_user.id}", is_provisional=True),
        )
        assert saved.user_id == test_user.id
        assert saved.is_provisional is True

    async def test_latest_and_cancelable_subscription(self, db_session, test_user):
        assert await get_latest_subscription(db_session, test_user.id) is None

        await upsert_subscription(db_session, _subscription(test_user, status="canceled"))
        assert (await get_latest_subscription(db_session, test_user.id)).status == "canceled"
        assert await get_cancelable_subscription(db_session, test_user.id) is None
