"""Plan resolution - map an event's price/product/metadata hints to a plan + interval.

Strategies, first match wins:
  1. subscription_deleted - an ended subscription resolves to 'free'
  2. metadata            - explicit plan in event/session metadata
  3. price_id            - configured Stripe price ids (monthly or annual)
  4. price_lookup_key    - plan token in the price's lookup key
  5. product_metadata    - the product's own `plan` metadata (fetched if not expanded)
  6. product_id          - configured Stripe product ids

The interval is resolved independently of the plan.
"""

import logging

from reconciler.config.plans import (
    interval_from_price_id,
    normalize_interval,
    normalize_paid_plan,
    plan_from_price_id,
    plan_from_price_lookup_key,
    plan_from_product_id,
)
from reconciler.services.billing.resolution import Strategy, first_resolved
from reconciler.services.billing.types import BillingSignal, PlanResolution, Unresolved
from reconciler.services.stripe_service import StripeService, stripe_service

logger = logging.getLogger(__name__)


class PlanResolver:
    """Deterministic plan resolution for a billing signal."""

    def __init__(self, provider: StripeService = stripe_service) -> None:
        self.provider = provider

    async def resolve(self, signal: BillingSignal) -> PlanResolution | Unresolved:
        chain = await first_resolved(
            [
                Strategy("subscription_deleted", lambda: self._from_deletion(signal)),
                Strategy("metadata", lambda: self._from_metadata(signal)),
                Strategy("price_id", lambda: self._from_price_id(signal)),
                Strategy("price_lookup_key", lambda: self._from_lookup_key(signal)),
                Strategy("product_metadata", lambda: self._from_product_metadata(signal)),
                Strategy("product_id", lambda: self._from_product_id(signal)),
            ]
        )
        if chain.value is None:
            logger.warning(
                f"[plan-resolver] Unresolved for {signal.event_type} {signal.dedupe_key} "
                f"(plan_hint={signal.plan_hint}, price={signal.price_id}, "
                f"lookup_key={signal.price_lookup_key}, product={signal.product_id})"
            )
            return Unresolved(reason="no_strategy_resolved", tried=chain.tried)

        return PlanResolution(
            plan=chain.value,
            interval=self.resolve_interval(signal),
            strategy=chain.strategy or "",
        )

    @staticmethod
    def resolve_interval(signal: BillingSignal) -> str | None:
        """
        'monthly' | 'annual' | None.

        A recurring interval that is present but neither monthly nor annual
        (e.g. 'week') resolves to None; fallbacks apply only when it's absent.
        """
        if signal.recurring_interval:
            return normalize_interval(signal.recurring_interval)
        if signal.interval_hint:
            return normalize_interval(signal.interval_hint)
        return interval_from_price_id(signal.price_id)

    async def _from_deletion(self, signal: BillingSignal) -> str | None:
        return "free" if signal.subscription_deleted else None

    async def _from_metadata(self, signal: BillingSignal) -> str | None:
        return normalize_paid_plan(signal.plan_hint)

    async def _from_price_id(self, signal: BillingSignal) -> str | None:
        return plan_from_price_id(signal.price_id)

    async def _from_lookup_key(self, signal: BillingSignal) -> str | None:
        return plan_from_price_lookup_key(signal.price_lookup_key)

    async def _from_product_metadata(self, signal: BillingSignal) -> str | None:
        if signal.product_metadata_plan:
            return normalize_paid_plan(signal.product_metadata_plan)
        if not signal.product_id:
            return None
        product = self.provider.get_product(signal.product_id)
        if not product:
            return None
        metadata = product.get("metadata") or {}
        return normalize_paid_plan(metadata.get("plan"))

    async def _from_product_id(self, signal: BillingSignal) -> str | None:
        return plan_from_product_id(signal.product_id)


plan_resolver = PlanResolver()
