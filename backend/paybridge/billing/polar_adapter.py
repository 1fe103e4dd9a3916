"""Polar payment adapter.

Polar has no standalone customer-creation endpoint: the customer is created
when the checkout completes. ``create_customer`` therefore returns a
provisional placeholder that the first webhook naming the real customer id
confirms. Webhooks follow the Standard Webhooks signing scheme.
"""

import base64
import json
import logging
from collections.abc import Mapping
from typing import Any

import httpx
from standardwebhooks import Webhook, WebhookVerificationError

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
    iso_to_naive,
    normalize_interval,
)
from paybridge.billing.exceptions import ConfigurationError, NotFoundError, ProviderError
from paybridge.billing.plans import PlanCatalog, find_price, plan_for_price, select_checkout_price
from paybridge.config import Settings

logger = logging.getLogger(__name__)

POLAR_API_URLS = {
    "production": "https://api.polar.sh",
    "sandbox": "https://sandbox-api.polar.sh",
}

PROVISIONAL_PREFIX = "polar_pending_"

POLAR_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": "active",
    "trialing": "trialing",
    "canceled": "canceled",
    "past_due": "past_due",
    "unpaid": "past_due",
    "incomplete": "incomplete",
    "incomplete_expired": "incomplete",
}

SUBSCRIPTION_EVENTS = frozenset(
    {
        "subscription.created",
        "subscription.updated",
        "subscription.active",
        "subscription.canceled",
        "subscription.uncanceled",
        "subscription.revoked",
    }
)


def map_polar_status(status: str | None) -> SubscriptionStatus:
    return POLAR_STATUS_MAP.get(status or "", "incomplete")


def _polar_user_id(obj: Mapping[str, Any]) -> str | None:
    """Find the owning user id on a Polar object.

    Checked in order: the object's own metadata, the legacy
    ``customer_metadata`` field, the embedded customer's metadata, and the
    customer's ``external_id`` (set from the user id at checkout).
    """
    customer = obj.get("customer") or {}
    for metadata in (obj.get("metadata"), obj.get("customer_metadata"), customer.get("metadata")):
        if metadata and metadata.get("userId"):
            return str(metadata["userId"])
    external_id = customer.get("external_id") or obj.get("external_id")
    return str(external_id) if external_id else None


class PolarAdapter:
    """Polar implementation of the ``PaymentAdapter`` contract."""

    provider = "polar"
    signature_headers = ("polar-webhook-signature", "webhook-signature")

    def __init__(
        self,
        cfg: Settings,
        plans: PlanCatalog | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not cfg.polar_access_token:
            raise ConfigurationError("POLAR_ACCESS_TOKEN is required for the Polar adapter")
        if not cfg.polar_webhook_secret:
            raise ConfigurationError("POLAR_WEBHOOK_SECRET is required for the Polar adapter")

        self.settings = cfg
        self.plans = plans
        self.access_token = cfg.polar_access_token
        self.api_base_url = POLAR_API_URLS[cfg.polar_environment]
        self._transport = transport
        # Polar secrets are raw strings; Standard Webhooks expects base64
        self._webhook = Webhook(base64.b64encode(cfg.polar_webhook_secret.encode()).decode())

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Make an HTTP request to the Polar API.

        Raises:
            NotFoundError: If Polar answers 404
            ProviderError: On any other HTTP or transport failure
        """
        url = f"{self.api_base_url}{endpoint}"

        try:
            async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
                logger.info("Making %s request to Polar %s", method, endpoint)
                response = await client.request(method, url, headers=self._get_headers(), json=data)
                response.raise_for_status()

                if response.status_code == 204 or not response.content:
                    return {}
                return response.json()

        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise NotFoundError(f"Polar resource not found: {endpoint}") from e
            detail = e.response.text or str(e)
            logger.error("Polar API error (%s): %s", e.response.status_code, detail)
            raise ProviderError(f"Polar API request failed: {detail}") from e
        except httpx.RequestError as e:
            logger.error("Polar request error: %s", e)
            raise ProviderError(f"Polar request failed: {e}") from e

    # ------------------------------------------------------------------
    # Outbound API calls
    # ------------------------------------------------------------------

    async def create_checkout(self, options: CheckoutOptions) -> CheckoutResult:
        price = select_checkout_price(options.plan, "polar", self.plans)
        customer = await self.create_customer(options.user_id, options.email)

        metadata = {"userId": options.user_id, "plan": options.plan, "provider": "polar"}
        payload: dict[str, Any] = {
            "products": [price.product_id],
            "success_url": options.success_url or self.settings.checkout_success_url,
            "external_customer_id": options.user_id,
            "metadata": metadata,
            "customer_metadata": metadata,
        }
        if options.email:
            payload["customer_email"] = options.email
        trial_days = options.trial_days if options.trial_days is not None else price.trial_period_days
        if price.type == "recurring" and trial_days and trial_days > 0:
            payload["trial_interval"] = "day"
            payload["trial_interval_count"] = trial_days

        try:
            checkout = await self._make_request("POST", "/v1/checkouts/", payload)
        except NotFoundError as e:
            raise ProviderError(f"Failed to create Polar checkout: {e.message}") from e

        if not checkout.get("url"):
            raise ProviderError("Polar returned a checkout without a URL")
        return CheckoutResult(url=checkout["url"], session_id=checkout["id"], customer=customer)

    async def create_customer(self, user_id: str, email: str | None = None) -> CustomerData:
        """Return a provisional customer; Polar assigns the real id at checkout."""
        return CustomerData(
            provider="polar",
            provider_customer_id=f"{PROVISIONAL_PREFIX}{user_id}",
            user_id=user_id,
            email=email,
            is_provisional=True,
        )

    async def get_subscription(self, provider_subscription_id: str) -> SubscriptionData | None:
        try:
            sub = await self._make_request("GET", f"/v1/subscriptions/{provider_subscription_id}")
        except NotFoundError:
            logger.info("Polar subscription %s not found", provider_subscription_id)
            return None
        return self._subscription_from_polar(sub)

    async def cancel_subscription(
        self, provider_subscription_id: str, cancel_at_period_end: bool = True
    ) -> None:
        """Cancel at period end, or revoke immediately."""
        endpoint = f"/v1/subscriptions/{provider_subscription_id}"
        try:
            if cancel_at_period_end:
                await self._make_request("PATCH", endpoint, {"cancel_at_period_end": True})
            else:
                await self._make_request("DELETE", endpoint)
        except NotFoundError as e:
            raise ProviderError(f"Failed to cancel Polar subscription: {e.message}") from e

    async def create_portal(
        self, provider_customer_id: str, return_url: str | None = None
    ) -> PortalResult:
        """Open an authenticated customer portal session.

        ``return_url`` is accepted for interface parity; the Polar portal has
        its own navigation back to the merchant.
        """
        if provider_customer_id.startswith(PROVISIONAL_PREFIX):
            raise NotFoundError("Polar customer has not completed a checkout yet")

        session = await self._make_request(
            "POST", "/v1/customer-sessions/", {"customer_id": provider_customer_id}
        )
        url = session.get("customer_portal_url")
        if not url:
            raise NotFoundError(f"No customer portal available for Polar customer {provider_customer_id}")
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
        """Verify a Standard Webhooks signature (``webhook-id``/``-timestamp``)."""
        received = {k.lower(): v for k, v in (headers or {}).items()}
        sw_headers = {
            "webhook-id": received.get("webhook-id", ""),
            "webhook-timestamp": received.get("webhook-timestamp", ""),
            "webhook-signature": signature,
        }
        try:
            self._webhook.verify(raw_body, sw_headers)
        except json.JSONDecodeError:
            # Signature matched; the body is rejected later as invalid JSON
            return True
        except (WebhookVerificationError, ValueError) as e:
            logger.warning("Polar webhook signature verification failed: %s", e)
            return False
        return True

    def process_webhook(self, event: WebhookEvent) -> WebhookResult:
        obj = event.data

        if event.type in ("customer.created", "customer.updated"):
            return WebhookResult(
                processed=True,
                customer=CustomerData(
                    provider="polar",
                    provider_customer_id=obj["id"],
                    user_id=_polar_user_id(obj),
                    email=obj.get("email"),
                ),
            )

        if event.type in SUBSCRIPTION_EVENTS:
            return WebhookResult(
                processed=True,
                customer=self._customer_from_embedded(obj),
                subscription=self._subscription_from_polar(obj),
            )

        if event.type in ("order.paid", "order.refunded"):
            return WebhookResult(
                processed=True,
                customer=self._customer_from_embedded(obj),
                payment=self._payment_from_order(obj, refunded=event.type == "order.refunded"),
            )

        logger.debug("Ignoring Polar event type: %s", event.type)
        return WebhookResult(processed=True)

    # ------------------------------------------------------------------
    # Mapping helpers
    # ------------------------------------------------------------------

    def map_product_to_plan(self, product_id: str | None) -> str:
        return plan_for_price("polar", product_id, self.plans)

    def _customer_from_embedded(self, obj: Mapping[str, Any]) -> CustomerData | None:
        customer = obj.get("customer") or {}
        customer_id = obj.get("customer_id") or customer.get("id")
        if not customer_id:
            return None
        return CustomerData(
            provider="polar",
            provider_customer_id=customer_id,
            user_id=_polar_user_id(obj),
            email=customer.get("email"),
        )

    def _subscription_from_polar(self, sub: Mapping[str, Any]) -> SubscriptionData:
        product_id = sub.get("product_id") or (sub.get("product") or {}).get("id")
        match = find_price("polar", product_id, self.plans)

        interval = normalize_interval(sub.get("recurring_interval"))
        cents = sub.get("amount")
        currency = sub.get("currency")
        if match is not None:
            interval = interval or match[1].interval
            cents = cents if cents is not None else match[1].amount
            currency = currency or match[1].currency

        return SubscriptionData(
            provider="polar",
            provider_subscription_id=sub["id"],
            status=map_polar_status(sub.get("status")),
            plan=match[0] if match else self.map_product_to_plan(product_id),
            user_id=_polar_user_id(sub),
            provider_customer_id=sub.get("customer_id") or (sub.get("customer") or {}).get("id"),
            interval=interval,
            amount=cents_to_amount(cents),
            currency=currency,
            current_period_start=iso_to_naive(sub.get("current_period_start")),
            current_period_end=iso_to_naive(sub.get("current_period_end")),
            cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
            canceled_at=iso_to_naive(sub.get("canceled_at")),
            trial_start=iso_to_naive(sub.get("trial_start")),
            trial_end=iso_to_naive(sub.get("trial_end")),
        )

    def _payment_from_order(self, order: Mapping[str, Any], refunded: bool) -> PaymentData:
        cents = order.get("total_amount")
        if cents is None:
            cents = order.get("amount") or 0
        product_name = (order.get("product") or {}).get("name") or "product"
        subscription_id = order.get("subscription_id")
        return PaymentData(
            provider="polar",
            provider_payment_id=order["id"],
            type="subscription" if subscription_id else "one_time",
            status="refunded" if refunded else "succeeded",
            amount=cents_to_amount(cents),
            currency=order.get("currency") or "usd",
            user_id=_polar_user_id(order),
            provider_customer_id=order.get("customer_id") or (order.get("customer") or {}).get("id"),
            provider_subscription_id=subscription_id,
            description=f"Payment for {product_name}",
        )
