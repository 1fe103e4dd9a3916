"""Stripe payment adapter built on the async StripeClient."""

import logging
from collections.abc import Mapping
from typing import Any

import stripe
from stripe import StripeClient

from paybridge.billing.base import (
    CheckoutOptions,
    CheckoutResult,
    CustomerData,
    PaymentData,
    PortalResult,
    SubscriptionData,
    SubscriptionStatus,
    WebhookEvent,
    WebhookResult,
    cents_to_amount,
    normalize_interval,
    ts_to_naive,
)
from paybridge.billing.exceptions import ConfigurationError, NotFoundError, ProviderError
from paybridge.billing.plans import PlanCatalog, find_price, plan_for_price, select_checkout_price
from paybridge.config import Settings

logger = logging.getLogger(__name__)

STRIPE_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": "active",
    "trialing": "trialing",
    "canceled": "canceled",
    "past_due": "past_due",
    "unpaid": "past_due",
    "incomplete": "incomplete",
    "incomplete_expired": "incomplete",
    "paused": "paused",
}

SUBSCRIPTION_EVENTS = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "customer.subscription.paused",
        "customer.subscription.resumed",
        "customer.subscription.trial_will_end",
    }
)


def map_stripe_status(status: str | None) -> SubscriptionStatus:
    """Map a Stripe subscription status to the normalized status set."""
    return STRIPE_STATUS_MAP.get(status or "", "incomplete")


def _user_id_from(metadata: Mapping[str, Any] | None) -> str | None:
    if not metadata:
        return None
    return metadata.get("userId") or metadata.get("user_id") or None


def _object_id(value: Any) -> str | None:
    """Stripe fields may hold an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, Mapping):
        return value.get("id")
    return str(value)


def _first_item(stripe_sub: Mapping[str, Any]) -> Mapping[str, Any] | None:
    """Get the first subscription item.

    ``stripe_sub["items"]`` is read by key to avoid the collision with
    ``dict.items`` on Stripe objects.
    """
    sub_items = stripe_sub.get("items")
    if sub_items and sub_items.get("data"):
        return sub_items["data"][0]
    return None


def _invoice_subscription(invoice: Mapping[str, Any]) -> tuple[str | None, Mapping[str, Any]]:
    """Return (subscription id, subscription metadata) for an invoice.

    Since API 2025-03-31 the subscription lives under
    ``parent.subscription_details``; older versions put it on the invoice.
    """
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    subscription_id = _object_id(details.get("subscription")) or _object_id(invoice.get("subscription"))
    metadata = details.get("metadata") or (invoice.get("subscription_details") or {}).get("metadata") or {}
    return subscription_id, metadata


class StripeAdapter:
    """Stripe implementation of the ``PaymentAdapter`` contract."""

    provider = "stripe"
    signature_headers = ("stripe-signature",)

    def __init__(
        self,
        cfg: Settings,
        plans: PlanCatalog | None = None,
        client: StripeClient | None = None,
    ):
        if not cfg.stripe_secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is required for the Stripe adapter")
        if not cfg.stripe_webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is required for the Stripe adapter")

        self.settings = cfg
        self.plans = plans
        self.webhook_secret = cfg.stripe_webhook_secret
        self.client = client or StripeClient(
            cfg.stripe_secret_key,
            http_client=stripe.HTTPXClient(),
        )

    # ------------------------------------------------------------------
    # Outbound API calls
    # ------------------------------------------------------------------

    async def create_checkout(self, options: CheckoutOptions) -> CheckoutResult:
        """Create a hosted Checkout Session for the plan's monthly price."""
        price = select_checkout_price(options.plan, "stripe", self.plans)
        customer = await self.create_customer(options.user_id, options.email)

        metadata = {"userId": options.user_id, "plan": options.plan, "provider": "stripe"}
        recurring = price.type == "recurring"
        params: dict[str, Any] = {
            "customer": customer.provider_customer_id,
            "line_items": [{"price": price.product_id, "quantity": 1}],
            "mode": "subscription" if recurring else "payment",
            "success_url": options.success_url or self.settings.checkout_success_url,
            "cancel_url": options.cancel_url or self.settings.checkout_cancel_url,
            "metadata": metadata,
            "allow_promotion_codes": True,
        }
        if recurring:
            subscription_data: dict[str, Any] = {"metadata": metadata}
            trial_days = options.trial_days if options.trial_days is not None else price.trial_period_days
            if trial_days and trial_days > 0:
                subscription_data["trial_period_days"] = trial_days
            params["subscription_data"] = subscription_data
        else:
            params["payment_intent_data"] = {"metadata": metadata}

        logger.info(
            "Creating checkout session for customer %s, price %s",
            customer.provider_customer_id,
            price.product_id,
        )
        try:
            session = await self.client.v1.checkout.sessions.create_async(params=params)
        except stripe.StripeError as e:
            logger.error("Stripe checkout error: %s", e)
            raise ProviderError(f"Failed to create Stripe checkout session: {e}") from e

        if not session.url:
            raise ProviderError("Stripe returned a checkout session without a URL")
        return CheckoutResult(url=session.url, session_id=session.id, customer=customer)

    async def create_customer(self, user_id: str, email: str | None = None) -> CustomerData:
        """Reuse the first Stripe customer with this email, else create one."""
        try:
            existing = None
            if email:
                found = await self.client.v1.customers.list_async(params={"email": email, "limit": 1})
                if found.data:
                    existing = found.data[0]

            if existing is not None:
                customer = existing
                logger.info("Reusing Stripe customer %s for user %s", customer.id, user_id)
            else:
                params: dict[str, Any] = {"metadata": {"userId": user_id, "provider": "stripe"}}
                if email:
                    params["email"] = email
                customer = await self.client.v1.customers.create_async(params=params)
                logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
        except stripe.StripeError as e:
            logger.error("Stripe customer error: %s", e)
            raise ProviderError(f"Failed to create Stripe customer: {e}") from e

        return CustomerData(
            provider="stripe",
            provider_customer_id=customer.id,
            user_id=user_id,
            email=getattr(customer, "email", None) or email,
        )

    async def get_subscription(self, provider_subscription_id: str) -> SubscriptionData | None:
        try:
            stripe_sub = await self.client.v1.subscriptions.retrieve_async(
                provider_subscription_id,
                params={"expand": ["items.data.price"]},
            )
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing":
                logger.info("Stripe subscription %s not found", provider_subscription_id)
                return None
            raise ProviderError(f"Failed to fetch Stripe subscription: {e}") from e
        except stripe.StripeError as e:
            raise ProviderError(f"Failed to fetch Stripe subscription: {e}") from e
        return self._subscription_from_stripe(stripe_sub.to_dict())

    async def cancel_subscription(
        self, provider_subscription_id: str, cancel_at_period_end: bool = True
    ) -> None:
        logger.info(
            "Canceling Stripe subscription %s (at period end: %s)",
            provider_subscription_id,
            cancel_at_period_end,
        )
        try:
            if cancel_at_period_end:
                await self.client.v1.subscriptions.update_async(
                    provider_subscription_id,
                    params={"cancel_at_period_end": True},
                )
            else:
                await self.client.v1.subscriptions.cancel_async(provider_subscription_id)
        except stripe.StripeError as e:
            logger.error("Stripe cancel error: %s", e)
            raise ProviderError(f"Failed to cancel Stripe subscription: {e}") from e

    async def create_portal(
        self, provider_customer_id: str, return_url: str | None = None
    ) -> PortalResult:
        """Create a Customer Portal session for subscription management."""
        logger.info("Creating portal session for customer %s", provider_customer_id)
        try:
            session = await self.client.v1.billing_portal.sessions.create_async(
                params={
                    "customer": provider_customer_id,
                    "return_url": return_url or self.settings.portal_return_url,
                }
            )
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing":
                raise NotFoundError(f"Stripe customer {provider_customer_id} not found") from e
            raise ProviderError(f"Failed to create Stripe portal session: {e}") from e
        except stripe.StripeError as e:
            raise ProviderError(f"Failed to create Stripe portal session: {e}") from e
        return PortalResult(url=session.url)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def validate_webhook(
        self,
        raw_body: bytes,
        signature: str,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """Verify the ``Stripe-Signature`` header against the raw body."""
        try:
            stripe.WebhookSignature.verify_header(
                raw_body.decode("utf-8"),
                signature,
                self.webhook_secret,
                tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except (stripe.SignatureVerificationError, ValueError) as e:
            logger.warning("Stripe webhook signature verification failed: %s", e)
            return False
        return True

    def process_webhook(self, event: WebhookEvent) -> WebhookResult:
        obj = event.data

        if event.type in ("customer.created", "customer.updated"):
            return WebhookResult(
                processed=True,
                customer=CustomerData(
                    provider="stripe",
                    provider_customer_id=obj["id"],
                    user_id=_user_id_from(obj.get("metadata")),
                    email=obj.get("email"),
                ),
            )

        if event.type in SUBSCRIPTION_EVENTS:
            return WebhookResult(processed=True, subscription=self._subscription_from_stripe(obj))

        if event.type in ("invoice.paid", "invoice.payment_succeeded", "invoice.payment_failed"):
            payment = self._payment_from_invoice(obj, failed=event.type == "invoice.payment_failed")
            return WebhookResult(processed=True, payment=payment)

        if event.type == "checkout.session.completed":
            # Subscription checkouts are reconciled from customer.subscription.* events
            if obj.get("mode") != "payment":
                return WebhookResult(processed=True)
            return WebhookResult(processed=True, payment=self._payment_from_checkout(obj))

        if event.type == "charge.refunded":
            return WebhookResult(processed=True, payment=self._refund_from_charge(obj))

        logger.debug("Ignoring Stripe event type: %s", event.type)
        return WebhookResult(processed=True)

    # ------------------------------------------------------------------
    # Mapping helpers
    # ------------------------------------------------------------------

    def map_price_to_plan(self, price_id: str | None) -> str:
        return plan_for_price("stripe", price_id, self.plans)

    def _subscription_from_stripe(self, stripe_sub: Mapping[str, Any]) -> SubscriptionData:
        item = _first_item(stripe_sub) or {}
        price = item.get("price") or {}
        price_id = _object_id(price)
        match = find_price("stripe", price_id, self.plans)

        recurring = price.get("recurring") if isinstance(price, Mapping) else None
        interval = normalize_interval((recurring or {}).get("interval"))
        unit_amount = price.get("unit_amount") if isinstance(price, Mapping) else None
        currency = price.get("currency") if isinstance(price, Mapping) else None
        if match is not None:
            interval = interval or match[1].interval
            unit_amount = unit_amount if unit_amount is not None else match[1].amount
            currency = currency or match[1].currency

        # API 2025-08-27 moved the billing period onto the subscription item
        period_start = item.get("current_period_start") or stripe_sub.get("current_period_start")
        period_end = item.get("current_period_end") or stripe_sub.get("current_period_end")

        return SubscriptionData(
            provider="stripe",
            provider_subscription_id=stripe_sub["id"],
            status=map_stripe_status(stripe_sub.get("status")),
            plan=match[0] if match else self.map_price_to_plan(price_id),
            user_id=_user_id_from(stripe_sub.get("metadata")),
            provider_customer_id=_object_id(stripe_sub.get("customer")),
            interval=interval,
            amount=cents_to_amount(unit_amount),
            currency=currency,
            current_period_start=ts_to_naive(period_start),
            current_period_end=ts_to_naive(period_end),
            cancel_at_period_end=bool(stripe_sub.get("cancel_at_period_end")),
            canceled_at=ts_to_naive(stripe_sub.get("canceled_at")),
            trial_start=ts_to_naive(stripe_sub.get("trial_start")),
            trial_end=ts_to_naive(stripe_sub.get("trial_end")),
        )

    def _payment_from_invoice(self, invoice: Mapping[str, Any], failed: bool) -> PaymentData | None:
        subscription_id, sub_metadata = _invoice_subscription(invoice)
        if not subscription_id:
            logger.info("Invoice %s has no subscription (one-time), skipping", invoice.get("id"))
            return None

        cents = invoice.get("amount_due") if failed else invoice.get("amount_paid")
        period_end = ts_to_naive(invoice.get("period_end"))
        description = (
            f"Payment for period ending {period_end:%Y-%m-%d}" if period_end else "Subscription payment"
        )
        return PaymentData(
            provider="stripe",
            provider_payment_id=invoice["id"],
            type="subscription",
            status="failed" if failed else "succeeded",
            amount=cents_to_amount(cents or 0),
            currency=invoice.get("currency") or "usd",
            user_id=_user_id_from(sub_metadata) or _user_id_from(invoice.get("metadata")),
            provider_customer_id=_object_id(invoice.get("customer")),
            provider_subscription_id=subscription_id,
            description=description,
        )

    def _payment_from_checkout(self, session: Mapping[str, Any]) -> PaymentData:
        metadata = session.get("metadata") or {}
        status = "succeeded" if session.get("payment_status") in ("paid", "no_payment_required") else "pending"
        plan = metadata.get("plan")
        return PaymentData(
            provider="stripe",
            provider_payment_id=_object_id(session.get("payment_intent")) or session["id"],
            type="one_time",
            status=status,
            amount=cents_to_amount(session.get("amount_total") or 0),
            currency=session.get("currency") or "usd",
            user_id=_user_id_from(metadata),
            provider_customer_id=_object_id(session.get("customer")),
            description=f"Purchase of {plan} plan" if plan else "One-time purchase",
        )

    def _refund_from_charge(self, charge: Mapping[str, Any]) -> PaymentData:
        # Refunds update the payment recorded for the invoice or payment intent
        payment_id = (
            _object_id(charge.get("invoice")) or _object_id(charge.get("payment_intent")) or charge["id"]
        )
        return PaymentData(
            provider="stripe",
            provider_payment_id=payment_id,
            type="refund",
            status="refunded",
            amount=cents_to_amount(charge.get("amount_refunded") or 0),
            currency=charge.get("currency") or "usd",
            user_id=_user_id_from(charge.get("metadata")),
            provider_customer_id=_object_id(charge.get("customer")),
            description="Refund",
        )
