"""Payment service: builds the adapter for the configured provider.

The adapter is created lazily on first use and cached on ``app.state`` so a
process serves exactly one provider. Tests swap it out with
``app.dependency_overrides[get_payment_adapter]``.
"""

import logging

from fastapi import Request

from paybridge.billing.base import PaymentAdapter
from paybridge.billing.exceptions import ConfigurationError
from paybridge.billing.lemonsqueezy_adapter import LemonSqueezyAdapter
from paybridge.billing.plans import PlanCatalog
from paybridge.billing.polar_adapter import PolarAdapter
from paybridge.billing.stripe_adapter import StripeAdapter
from paybridge.config import Settings, settings

logger = logging.getLogger(__name__)

ADAPTERS: dict[str, type] = {
    "stripe": StripeAdapter,
    "polar": PolarAdapter,
    "lemonsqueezy": LemonSqueezyAdapter,
}


def create_payment_adapter(cfg: Settings, plans: PlanCatalog | None = None) -> PaymentAdapter:
    """Instantiate the adapter named by ``cfg.payment_provider``.

    Raises:
        ConfigurationError: If the provider is unknown or its secrets are missing.
    """
    adapter_cls = ADAPTERS.get(cfg.payment_provider)
    if adapter_cls is None:
        raise ConfigurationError(f"Unsupported payment provider: {cfg.payment_provider}")
    adapter = adapter_cls(cfg, plans)
    logger.info("Payment adapter initialized: %s", cfg.payment_provider)
    return adapter


def is_payment_system_configured(cfg: Settings) -> bool:
    """Return True if an adapter can be built from ``cfg``."""
    try:
        create_payment_adapter(cfg)
    except ConfigurationError as e:
        logger.warning("Payment system not configured: %s", e.message)
        return False
    return True


def get_payment_adapter(request: Request) -> PaymentAdapter:
    """FastAPI dependency returning the application's payment adapter."""
    adapter = getattr(request.app.state, "payment_adapter", None)
    if adapter is None:
        adapter = create_payment_adapter(settings)
        request.app.state.payment_adapter = adapter
    return adapter
