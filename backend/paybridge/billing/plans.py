"""Plan catalog: pricing tiers and their vendor price/product ids."""

from dataclasses import dataclass, field
from typing import Literal

from paybridge.billing.base import PaymentProvider
from paybridge.billing.exceptions import ConfigurationError
from paybridge.config import Settings, settings

FREE_PLAN = "free"


@dataclass(frozen=True)
class PriceConfig:
    """One purchasable price of a plan on a single provider."""

    product_id: str  # Stripe price id, Polar product id, Lemon Squeezy variant id
    interval: Literal["month", "year"] | None  # None for one-time purchases
    amount: int  # in cents (e.g., 2990 = $29.90)
    currency: str = "usd"
    type: Literal["recurring", "one_time"] = "recurring"
    trial_period_days: int | None = None
    seat_based: bool = False


@dataclass(frozen=True)
class PlanConfig:
    """Display metadata and per-provider prices for a plan."""

    name: str
    display_name: str
    description: str
    features: tuple[str, ...] = ()
    prices: dict[str, tuple[PriceConfig, ...]] = field(default_factory=dict)
    is_free: bool = False
    recommended: bool = False
    max_seats: int | None = None


PlanCatalog = dict[str, PlanConfig]


def _prices(*prices: PriceConfig) -> tuple[PriceConfig, ...]:
    """Drop prices whose vendor id is not configured."""
    return tuple(p for p in prices if p.product_id)


def build_plan_catalog(cfg: Settings) -> PlanCatalog:
    """Build the plan catalog from vendor ids in the given settings."""
    return {
        "free": PlanConfig(
            name="free",
            display_name="Free",
            description="Perfect for getting started",
            is_free=True,
            features=("Up to 3 projects", "Basic analytics", "Community support", "Standard templates"),
        ),
        "starter": PlanConfig(
            name="starter",
            display_name="Starter",
            description="Great for small teams",
            features=(
                "Up to 10 projects",
                "Advanced analytics",
                "Email support",
                "Premium templates",
                "Custom integrations",
            ),
            prices={
                "stripe": _prices(
                    PriceConfig(cfg.stripe_price_starter_monthly, "month", 990, trial_period_days=14),
                    PriceConfig(cfg.stripe_price_starter_yearly, "year", 9900, trial_period_days=14),
                ),
                "polar": _prices(
                    PriceConfig(cfg.polar_product_starter_monthly, "month", 990, trial_period_days=14),
                ),
                "lemonsqueezy": _prices(
                    PriceConfig(cfg.lemonsqueezy_variant_starter_monthly, "month", 990, trial_period_days=14),
                ),
            },
        ),
        "pro": PlanConfig(
            name="pro",
            display_name="Pro",
            description="For growing businesses",
            recommended=True,
            max_seats=50,
            features=(
                "Unlimited projects",
                "Real-time analytics",
                "Priority support",
                "White-label options",
                "Advanced integrations",
                "Team collaboration",
                "Custom workflows",
            ),
            prices={
                "stripe": _prices(
                    PriceConfig(cfg.stripe_price_pro_monthly, "month", 2990, trial_period_days=14, seat_based=True),
                    PriceConfig(cfg.stripe_price_pro_yearly, "year", 29900, trial_period_days=14, seat_based=True),
                ),
                "polar": _prices(
                    PriceConfig(cfg.polar_product_pro_monthly, "month", 2990, trial_period_days=14, seat_based=True),
                ),
                "lemonsqueezy": _prices(
                    PriceConfig(
                        cfg.lemonsqueezy_variant_pro_monthly, "month", 2990, trial_period_days=14, seat_based=True
                    ),
                ),
            },
        ),
        "enterprise": PlanConfig(
            name="enterprise",
            display_name="Enterprise",
            description="For large organizations",
            features=(
                "Everything in Pro",
                "Dedicated account manager",
                "Custom contracts",
                "SLA guarantees",
                "Advanced security",
                "Unlimited seats",
                "Custom integrations",
                "On-premise deployment",
            ),
            prices={
                "stripe": _prices(
                    PriceConfig(
                        cfg.stripe_price_enterprise_monthly, "month", 9990, trial_period_days=30, seat_based=True
                    ),
                    PriceConfig(
                        cfg.stripe_price_enterprise_yearly, "year", 99900, trial_period_days=30, seat_based=True
                    ),
                ),
                "polar": _prices(
                    PriceConfig(
                        cfg.polar_product_enterprise_monthly, "month", 9990, trial_period_days=30, seat_based=True
                    ),
                ),
                "lemonsqueezy": _prices(
                    PriceConfig(
                        cfg.lemonsqueezy_variant_enterprise_monthly,
                        "month",
                        9990,
                        trial_period_days=30,
                        seat_based=True,
                    ),
                ),
            },
        ),
    }


PLANS: PlanCatalog = build_plan_catalog(settings)


def get_available_plans(catalog: PlanCatalog | None = None) -> list[str]:
    return list((catalog or PLANS).keys())


def get_plan(plan_name: str, catalog: PlanCatalog | None = None) -> PlanConfig:
    """Get plan config by name. Defaults to free if unknown."""
    catalog = catalog or PLANS
    return catalog.get(plan_name, catalog[FREE_PLAN])


def is_free_plan(plan_name: str, catalog: PlanCatalog | None = None) -> bool:
    return get_plan(plan_name, catalog).is_free


def get_price_config(
    plan_name: str, provider: PaymentProvider, catalog: PlanCatalog | None = None
) -> tuple[PriceConfig, ...]:
    """All configured prices of a plan for one provider (may be empty)."""
    plan = (catalog or PLANS).get(plan_name)
    if plan is None:
        return ()
    return plan.prices.get(provider, ())


def select_checkout_price(
    plan_name: str, provider: PaymentProvider, catalog: PlanCatalog | None = None
) -> PriceConfig:
    """Pick the price used for checkout: the monthly one, else the first.

    Raises:
        ConfigurationError: If no price is configured for the plan and provider.
    """
    prices = get_price_config(plan_name, provider, catalog)
    if not prices:
        raise ConfigurationError(f"No {provider} price configured for plan: {plan_name}")
    return next((p for p in prices if p.interval == "month"), prices[0])


def find_price(
    provider: PaymentProvider, product_id: str | None, catalog: PlanCatalog | None = None
) -> tuple[str, PriceConfig] | None:
    """Reverse lookup: vendor price/product id -> (plan name, price config)."""
    if not product_id:
        return None
    for plan in (catalog or PLANS).values():
        for price in plan.prices.get(provider, ()):
            if price.product_id == str(product_id):
                return plan.name, price
    return None


def plan_for_price(
    provider: PaymentProvider, product_id: str | None, catalog: PlanCatalog | None = None
) -> str:
    """Map a vendor price/product id to its plan name, ``free`` when unmapped."""
    match = find_price(provider, product_id, catalog)
    return match[0] if match else FREE_PLAN
