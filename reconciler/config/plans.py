"""Plan configuration - plan ids and Stripe price/product -> plan mapping."""

import re

from reconciler.config.settings import settings

PLAN_IDS: tuple[str, ...] = ("free", "solo", "pro", "studio")
PAID_PLAN_IDS: tuple[str, ...] = ("solo", "pro", "studio")

# Stripe recurring.interval values (and common aliases) -> billing interval
_INTERVAL_ALIASES: dict[str, str] = {
    "month": "monthly",
    "monthly": "monthly",
    "year": "annual",
    "yearly": "annual",
    "annual": "annual",
}


def normalize_plan(plan: str | None) -> str:
    """Normalize any stored plan value to a known plan id (default 'free')."""
    if not plan:
        return "free"
    candidate = plan.strip().lower()
    return candidate if candidate in PLAN_IDS else "free"


def normalize_paid_plan(plan: str | None) -> str | None:
    """Return a paid plan id, or None for empty/unknown/free values."""
    if not plan:
        return None
    normalized = normalize_plan(plan)
    return None if normalized == "free" else normalized


def normalize_interval(interval: str | None) -> str | None:
    """
    Normalize a recurring interval to 'monthly' or 'annual'.

    Anything else (week, day, garbage) resolves to None rather than a guessed bucket.
    """
    if not interval:
        return None
    return _INTERVAL_ALIASES.get(interval.strip().lower())


def _price_ids_by_plan() -> dict[str, tuple[str, str]]:
    return {
        "solo": (settings.stripe_price_solo, settings.stripe_price_solo_annual),
        "pro": (settings.stripe_price_pro, settings.stripe_price_pro_annual),
        "studio": (settings.stripe_price_studio, settings.stripe_price_studio_annual),
    }


def _product_ids_by_plan() -> dict[str, str]:
    return {
        "solo": settings.stripe_product_solo,
        "pro": settings.stripe_product_pro,
        "studio": settings.stripe_product_studio,
    }


def plan_from_price_id(price_id: str | None) -> str | None:
    """Map a Stripe price id (monthly or annual) to a paid plan via configured ids."""
    if not price_id:
        return None
    for plan_id, price_ids in _price_ids_by_plan().items():
        if any(configured and configured == price_id for configured in price_ids):
            return plan_id
    return None


def interval_from_price_id(price_id: str | None) -> str | None:
    """Infer the billing interval from which configured price id matched."""
    if not price_id:
        return None
    for monthly, annual in _price_ids_by_plan().values():
        if monthly and monthly == price_id:
            return "monthly"
        if annual and annual == price_id:
            return "annual"
    return None


def plan_from_price_lookup_key(lookup_key: str | None) -> str | None:
    """Match a whole-word plan token in a Stripe price lookup key, e.g. 'pro_monthly_eur'."""
    if not lookup_key:
        return None
    normalized = lookup_key.strip().lower()
    for plan_id in PAID_PLAN_IDS:
        if re.search(rf"(^|[^a-z]){plan_id}([^a-z]|$)", normalized):
            return plan_id
    return None


def plan_from_product_id(product_id: str | None) -> str | None:
    """Map a Stripe product id to a paid plan via configured ids."""
    if not product_id:
        return None
    for plan_id, configured in _product_ids_by_plan().items():
        if configured and configured == product_id:
            return plan_id
    return None
