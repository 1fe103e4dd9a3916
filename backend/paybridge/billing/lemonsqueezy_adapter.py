"""Lemon Squeezy payment adapter (JSON:API over httpx)."""

import hashlib
import hmac
import logging
from collections.abc import Mapping
from typing import Any

import httpx

from paybridge.billing.base import (
    CheckoutOptions,
    CheckoutResult,
    CustomerData,
    PaymentData,
    PaymentStatus,
    PortalResult,
    SubscriptionData,
    SubscriptionStatus,
    WebhookEvent,
    WebhookResult,
    cents_to_amount,
    iso_to_naive,
)
from paybridge.billing.exceptions import ConfigurationError, NotFoundError, ProviderError
from paybridge.billing.plans import PlanCatalog, find_price, plan_for_price, select_checkout_price
from paybridge.config import Settings

logger = logging.getLogger(__name__)

PROVISIONAL_PREFIX = "ls_pending_"

LEMONSQUEEZY_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": "active",
    "on_trial": "trialing",
    "past_due": "past_due",
    "unpaid": "past_due",
    "cancelled": "canceled",
    "expired": "canceled",
    "paused": "paused",
}

# Order and subscription-invoice statuses
PAYMENT_STATUS_MAP: dict[str, PaymentStatus] = {
    "paid": "succeeded",
    "pending": "pending",
    "failed": "failed",
    "void": "canceled",
    "refunded": "refunded",
    "partial_refund": "refunded",
}

SUBSCRIPTION_EVENTS = frozenset(
    {
        "subscription_created",
        "subscription_updated",
        "subscription_cancelled",
        "subscription_resumed",
        "subscription_expired",
        "subscription_paused",
        "subscription_unpaused",
    }
)

SUBSCRIPTION_PAYMENT_EVENTS = frozenset(
    {
        "subscription_payment_success",
        "subscription_payment_failed",
        "subscription_payment_refunded",
    }
)


def map_lemonsqueezy_status(status: str | None) -> SubscriptionStatus:
    return LEMONSQUEEZY_STATUS_MAP.get(status or "", "incomplete")


def _custom_user_id(raw_event: Mapping[str, Any]) -> str | None:
    custom = (raw_event.get("meta") or {}).get("custom_data") or {}
    user_id = custom.get("user_id") or custom.get("userId")
    return str(user_id) if user_id else None


def _str_id(value: Any) -> str | None:
    # Lemon Squeezy sends numeric ids in attributes and string ids in ``data.id``
    return str(value) if value is not None else None


class LemonSqueezyAdapter:
    """Lemon Squeezy implementation of the ``PaymentAdapter`` contract."""

    API_BASE_URL = "https://api.lemonsqueezy.com/v1"

    provider = "lemonsqueezy"
    signature_headers = ("x-signature",)

    def __init__(
        self,
        cfg: Settings,
        plans: PlanCatalog | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not cfg.lemonsqueezy_api_key:
            raise ConfigurationError("LEMONSQUEEZY_API_KEY is required for the Lemon Squeezy adapter")
        if not cfg.lemonsqueezy_store_id:
            raise ConfigurationError("LEMONSQUEEZY_STORE_ID is required for the Lemon Squeezy adapter")
        if not cfg.lemonsqueezy_webhook_secret:
            raise ConfigurationError("LEMONSQUEEZY_WEBHOOK_SECRET is required for the Lemon Squeezy adapter")

        self.settings = cfg
        self.plans = plans
        self.api_key = cfg.lemonsqueezy_api_key
        self.store_id = cfg.lemonsqueezy_store_id
        self.webhook_secret = cfg.lemonsqueezy_webhook_secret
        self._transport = transport

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/vnd.api+json",
            "Content-Type": "application/vnd.api+json",
        }

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Make an HTTP request to the Lemon Squeezy API.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE)
            endpoint: API endpoint path, without leading slash
            data: JSON:API request document (for POST/PATCH)
            params: Query parameters such as ``filter[email]``

        Raises:
            NotFoundError: If Lemon Squeezy answers 404
            ProviderError: On any other HTTP or transport failure
        """
        url = f"{self.API_BASE_URL}/{endpoint}"

        try:
            async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
                logger.info("Making %s request to Lemon Squeezy %s", method, endpoint)
                response = await client.request(
                    method, url, headers=self._get_headers(), json=data, params=params
                )
                response.raise_for_status()

                # Handle empty responses (e.g., DELETE)
                if response.status_code == 204 or not response.content:
                    return {}
                return response.json()

        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise NotFoundError(f"Lemon Squeezy resource not found: {endpoint}") from e
            error_detail = str(e)
            try:
                errors = e.response.json().get("errors", [])
                if errors and isinstance(errors[0], dict):
                    error_detail = errors[0].get("detail", error_detail)
            except ValueError:
                pass
            logger.error("Lemon Squeezy API error: %s", error_detail)
            raise ProviderError(f"Lemon Squeezy API request failed: {error_detail}") from e
        except httpx.RequestError as e:
            logger.error("Lemon Squeezy request error: %s", e)
            raise ProviderError(f"Lemon Squeezy request failed: {e}") from e

    # ------------------------------------------------------------------
    # Outbound API calls
    # ------------------------------------------------------------------

    async def create_checkout(self, options: CheckoutOptions) -> CheckoutResult:
        """Create a hosted checkout for the plan's variant.

        Trial length is configured on the variant in Lemon Squeezy, so
        ``options.trial_days`` is not sent.
        """
        price = select_checkout_price(options.plan, "lemonsqueezy", self.plans)
        customer = await self.create_customer(options.user_id, options.email)

        checkout_data: dict[str, Any] = {
            "custom": {"user_id": options.user_id, "plan": options.plan, "provider": "lemonsqueezy"},
        }
        if options.email:
            checkout_data["email"] = options.email

        payload = {
            "data": {
                "type": "checkouts",
                "attributes": {
                    "checkout_data": checkout_data,
                    "product_options": {
                        "redirect_url": options.success_url or self.settings.checkout_success_url,
                        "receipt_button_text": "Go to Dashboard",
                        "receipt_link_url": self.settings.checkout_success_url,
                    },
                    "checkout_options": {"embed": False, "media": False, "logo": True},
                },
                "relationships": {
                    "store": {"data": {"type": "stores", "id": str(self.store_id)}},
                    "variant": {"data": {"type": "variants", "id": str(price.product_id)}},
                },
            }
        }

        try:
            response = await self._make_request("POST", "checkouts", payload)
        except NotFoundError as e:
            raise ProviderError(f"Failed to create Lemon Squeezy checkout: {e.message}") from e

        checkout = response.get("data") or {}
        url = (checkout.get("attributes") or {}).get("url")
        if not url:
            raise ProviderError("Lemon Squeezy returned a checkout without a URL")
        logger.info("Created Lemon Squeezy checkout %s for user %s", checkout.get("id"), options.user_id)
        return CheckoutResult(url=url, session_id=str(checkout["id"]), customer=customer)

    async def create_customer(self, user_id: str, email: str | None = None) -> CustomerData:
        """Reuse the store customer with this email, else return a provisional one."""
        if email:
            response = await self._make_request(
                "GET",
                "customers",
                params={"filter[email]": email, "filter[store_id]": self.store_id, "page[size]": 1},
            )
            found = response.get("data") or []
            if found:
                customer = found[0]
                logger.info("Reusing Lemon Squeezy customer %s for user %s", customer["id"], user_id)
                return CustomerData(
                    provider="lemonsqueezy",
                    provider_customer_id=str(customer["id"]),
                    user_id=user_id,
                    email=(customer.get("attributes") or {}).get("email") or email,
                )

        return CustomerData(
            provider="lemonsqueezy",
            provider_customer_id=f"{PROVISIONAL_PREFIX}{user_id}",
            user_id=user_id,
            email=email,
            is_provisional=True,
        )

    async def get_subscription(self, provider_subscription_id: str) -> SubscriptionData | None:
        try:
            response = await self._make_request("GET", f"subscriptions/{provider_subscription_id}")
        except NotFoundError:
            logger.info("Lemon Squeezy subscription %s not found", provider_subscription_id)
            return None
        return self._subscription_from_resource(response["data"], user_id=None)

    async def cancel_subscription(
        self, provider_subscription_id: str, cancel_at_period_end: bool = True
    ) -> None:
        """Cancel a subscription.

        Lemon Squeezy always cancels at the end of the billing period (the
        subscription enters its grace period), whatever ``cancel_at_period_end``
        says.
        """
        if not cancel_at_period_end:
            logger.warning(
                "Lemon Squeezy cannot cancel immediately; subscription %s ends at period end",
                provider_subscription_id,
            )
        try:
            await self._make_request("DELETE", f"subscriptions/{provider_subscription_id}")
        except NotFoundError as e:
            raise ProviderError(f"Failed to cancel Lemon Squeezy subscription: {e.message}") from e

    async def create_portal(
        self, provider_customer_id: str, return_url: str | None = None
    ) -> PortalResult:
        """Return the customer's signed portal link (valid for 24 hours)."""
        if provider_customer_id.startswith(PROVISIONAL_PREFIX):
            raise NotFoundError("Lemon Squeezy customer has not completed a checkout yet")

        response = await self._make_request("GET", f"customers/{provider_customer_id}")
        attributes = (response.get("data") or {}).get("attributes") or {}
        url = (attributes.get("urls") or {}).get("customer_portal")
        if not url:
            raise NotFoundError("Customer portal URL not found")
        return PortalResult(url=url)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def validate_webhook(
        self,
        raw_body: bytes,
        signature: str,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """Compare ``X-Signature`` with the hex HMAC-SHA256 of the raw body."""
        digest = hmac.new(self.webhook_secret.encode(), raw_body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(digest.encode(), signature.encode()):
            logger.warning("Lemon Squeezy webhook signature mismatch")
            return False
        return True

    def process_webhook(self, event: WebhookEvent) -> WebhookResult:
        resource = event.data
        attributes = resource.get("attributes") or {}
        user_id = _custom_user_id(event.raw_event)
        customer = self._customer_from_attributes(attributes, user_id)

        if event.type in SUBSCRIPTION_EVENTS:
            return WebhookResult(
                processed=True,
                customer=customer,
                subscription=self._subscription_from_resource(resource, user_id),
            )

        if event.type in SUBSCRIPTION_PAYMENT_EVENTS:
            if event.type == "subscription_payment_failed":
                status: PaymentStatus = "failed"
            elif event.type == "subscription_payment_refunded":
                status = "refunded"
            else:
                status = PAYMENT_STATUS_MAP.get(attributes.get("status"), "succeeded")
            payment = PaymentData(
                provider="lemonsqueezy",
                provider_payment_id=str(resource["id"]),
                type="subscription",
                status=status,
                amount=cents_to_amount(attributes.get("total") or 0),
                currency=(attributes.get("currency") or "usd").lower(),
                user_id=user_id,
                provider_customer_id=_str_id(attributes.get("customer_id")),
                provider_subscription_id=_str_id(attributes.get("subscription_id")),
                description=f"Subscription payment ({attributes.get('billing_reason') or 'renewal'})",
            )
            return WebhookResult(processed=True, customer=customer, payment=payment)

        if event.type in ("order_created", "order_refunded"):
            variant_id = _str_id((attributes.get("first_order_item") or {}).get("variant_id"))
            match = find_price("lemonsqueezy", variant_id, self.plans)
            # Orders for recurring variants are recorded from subscription_payment_* events
            if match is not None and match[1].type == "recurring":
                return WebhookResult(processed=True, customer=customer)

            if event.type == "order_refunded":
                status = "refunded"
            else:
                status = PAYMENT_STATUS_MAP.get(attributes.get("status"), "pending")
            payment = PaymentData(
                provider="lemonsqueezy",
                provider_payment_id=str(resource["id"]),
                type="one_time",
                status=status,
                amount=cents_to_amount(attributes.get("total") or 0),
                currency=(attributes.get("currency") or "usd").lower(),
                user_id=user_id,
                provider_customer_id=_str_id(attributes.get("customer_id")),
                description=f"Order {resource['id']}",
            )
            return WebhookResult(processed=True, customer=customer, payment=payment)

        logger.debug("Ignoring Lemon Squeezy event type: %s", event.type)
        return WebhookResult(processed=True)

    # ------------------------------------------------------------------
    # Mapping helpers
    # ------------------------------------------------------------------

    def map_variant_to_plan(self, variant_id: str | None) -> str:
        return plan_for_price("lemonsqueezy", variant_id, self.plans)

    def _customer_from_attributes(
        self, attributes: Mapping[str, Any], user_id: str | None
    ) -> CustomerData | None:
        customer_id = _str_id(attributes.get("customer_id"))
        if not customer_id:
            return None
        return CustomerData(
            provider="lemonsqueezy",
            provider_customer_id=customer_id,
            user_id=user_id,
            email=attributes.get("user_email"),
        )

    def _subscription_from_resource(
        self, resource: Mapping[str, Any], user_id: str | None
    ) -> SubscriptionData:
        attrs = resource.get("attributes") or {}
        variant_id = _str_id(attrs.get("variant_id"))
        match = find_price("lemonsqueezy", variant_id, self.plans)

        interval = match[1].interval if match else None
        if interval is None and attrs.get("variant_name"):
            interval = "year" if "year" in attrs["variant_name"].lower() else "month"

        status = map_lemonsqueezy_status(attrs.get("status"))
        return SubscriptionData(
            provider="lemonsqueezy",
            provider_subscription_id=str(resource["id"]),
            status=status,
            plan=match[0] if match else self.map_variant_to_plan(variant_id),
            user_id=user_id,
            provider_customer_id=_str_id(attrs.get("customer_id")),
            interval=interval,
            amount=cents_to_amount(match[1].amount) if match else None,
            currency=match[1].currency if match else None,
            current_period_start=iso_to_naive(attrs.get("created_at")),
            current_period_end=iso_to_naive(attrs.get("renews_at") or attrs.get("ends_at")),
            cancel_at_period_end=bool(attrs.get("cancelled")) and status != "canceled",
            canceled_at=iso_to_naive(attrs.get("ends_at")) if attrs.get("cancelled") else None,
            trial_end=iso_to_naive(attrs.get("trial_ends_at")),
        )
