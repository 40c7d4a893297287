"""Normalize Stripe payloads (events, checkout sessions, subscriptions) into BillingSignals.

Stripe objects arrive either as plain dicts (webhook JSON) or as StripeObject
instances (SDK retrievals); `_field` reads both.
"""

import hashlib
from collections.abc import Mapping
from typing import Any

from reconciler.services.billing.types import BillingSignal, SignalSource

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"

SUBSCRIPTION_EVENTS = {SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED}
INVOICE_EVENTS = {INVOICE_PAYMENT_FAILED, INVOICE_PAID, INVOICE_PAYMENT_SUCCEEDED}
HANDLED_EVENT_TYPES = {CHECKOUT_COMPLETED} | SUBSCRIPTION_EVENTS | INVOICE_EVENTS

# Checkout payment states that mean the subscription is live
PAID_SESSION_STATES = {"paid", "no_payment_required"}

# Metadata keys, current spelling first
WORKSPACE_ID_KEYS = ("workspace_id", "workspaceId")
USER_ID_KEYS = ("user_id", "userId")
PLAN_KEYS = ("plan",)
INTERVAL_KEYS = ("interval", "billing_interval")


def _field(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _id_of(value: Any) -> str | None:
    """Stripe references are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    return _field(value, "id")


def _metadata(obj: Any) -> dict[str, str]:
    raw = _field(obj, "metadata") or {}
    return {str(k): str(v) for k, v in dict(raw).items() if v not in (None, "")}


def _hint(metadata: Mapping[str, str], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = metadata.get(key)
        if value and value.strip():
            return value.strip()
    return None


def _first_price(subscription: Any) -> Any:
    items = _field(_field(subscription, "items"), "data") or []
    if not items:
        return None
    return _field(items[0], "price")


def _apply_metadata(signal: BillingSignal, metadata: Mapping[str, str]) -> None:
    """Fill hints that are still empty; earlier sources win."""
    signal.workspace_id_hint = signal.workspace_id_hint or _hint(metadata, WORKSPACE_ID_KEYS)
    signal.user_id_hint = signal.user_id_hint or _hint(metadata, USER_ID_KEYS)
    signal.plan_hint = signal.plan_hint or _hint(metadata, PLAN_KEYS)
    signal.interval_hint = signal.interval_hint or _hint(metadata, INTERVAL_KEYS)


def enrich_with_subscription(signal: BillingSignal, subscription: Any) -> BillingSignal:
    """
    Copy subscription facts onto a signal without overwriting what it already has.

    Status is the exception: the subscription's own status is authoritative
    for dunning, so it replaces a missing or invoice-level status.
    """
    signal.subscription_id = signal.subscription_id or _id_of(subscription)
    signal.customer_id = signal.customer_id or _id_of(_field(subscription, "customer"))
    status = _field(subscription, "status")
    if status:
        signal.status = str(status).strip().lower()
    signal.latest_invoice_id = signal.latest_invoice_id or _id_of(
        _field(subscription, "latest_invoice")
    )
    if signal.livemode is None:
        signal.livemode = _field(subscription, "livemode")

    price = _first_price(subscription)
    if price is not None:
        signal.price_id = signal.price_id or _id_of(price)
        signal.price_lookup_key = signal.price_lookup_key or _field(price, "lookup_key")
        signal.recurring_interval = signal.recurring_interval or _field(
            _field(price, "recurring"), "interval"
        )
        product = _field(price, "product")
        signal.product_id = signal.product_id or _id_of(product)
        if not isinstance(product, str) and product is not None:
            signal.product_metadata_plan = signal.product_metadata_plan or _hint(
                _metadata(product), PLAN_KEYS
            )

    _apply_metadata(signal, _metadata(subscription))
    return signal


def subscription_fingerprint(subscription: Any) -> str:
    """
    Short digest of the subscription facts that drive plan and dunning state
    (id, status, latest invoice, item prices).

    Two reads of an unchanged subscription give the same digest; an upgrade,
    downgrade, status change or new invoice gives a new one.
    """
    items = _field(_field(subscription, "items"), "data") or []
    prices = sorted(_id_of(_field(item, "price")) or "" for item in items)
    parts = [
        _id_of(subscription) or "",
        str(_field(subscription, "status") or ""),
        _id_of(_field(subscription, "latest_invoice")) or "",
        ",".join(prices),
    ]
    return hashlib.sha256("|".join(parts).encode()).hexdigest()[:16]


def signal_from_subscription(
    subscription: Any,
    *,
    dedupe_key: str,
    event_type: str,
    source: SignalSource = SignalSource.WEBHOOK,
    actor_email: str | None = None,
) -> BillingSignal:
    signal = BillingSignal(
        dedupe_key=dedupe_key,
        event_type=event_type,
        source=source,
        object_id=_id_of(subscription),
        actor_email=actor_email,
        subscription_deleted=event_type == SUBSCRIPTION_DELETED,
    )
    return enrich_with_subscription(signal, subscription)


def is_paid_subscription_session(session: Any) -> bool:
    """A checkout session that produced a live subscription."""
    return (
        _field(session, "mode") == "subscription"
        and _field(session, "payment_status") in PAID_SESSION_STATES
        and _id_of(_field(session, "subscription")) is not None
    )


def signal_from_checkout_session(
    session: Any,
    *,
    dedupe_key: str,
    event_type: str = CHECKOUT_COMPLETED,
    source: SignalSource = SignalSource.WEBHOOK,
) -> BillingSignal:
    """
    Build a signal from a checkout session.

    Session metadata is applied before any subscription enrichment, so
    hints set at checkout time win over the subscription's own metadata.
    """
    customer_details = _field(session, "customer_details")
    email = _field(customer_details, "email") or _field(session, "customer_email")
    metadata = _metadata(session)

    signal = BillingSignal(
        dedupe_key=dedupe_key,
        event_type=event_type,
        source=source,
        object_id=_id_of(session),
        customer_id=_id_of(_field(session, "customer")),
        subscription_id=_id_of(_field(session, "subscription")),
        livemode=_field(session, "livemode"),
        actor_email=email.strip().lower() if email else None,
        user_id_hint=_field(session, "client_reference_id"),
        actionable=_field(session, "mode") == "subscription",
    )
    _apply_metadata(signal, metadata)

    subscription = _field(session, "subscription")
    if subscription is not None and not isinstance(subscription, str):
        enrich_with_subscription(signal, subscription)
    return signal


def _invoice_subscription_id(invoice: Any) -> str | None:
    direct = _id_of(_field(invoice, "subscription"))
    if direct:
        return direct
    # Newer API versions nest it under parent.subscription_details
    details = _field(_field(invoice, "parent"), "subscription_details")
    return _id_of(_field(details, "subscription"))


def signal_from_invoice(invoice: Any, *, dedupe_key: str, event_type: str) -> BillingSignal:
    details = _field(_field(invoice, "parent"), "subscription_details") or _field(
        invoice, "subscription_details"
    )
    email = _field(invoice, "customer_email")
    signal = BillingSignal(
        dedupe_key=dedupe_key,
        event_type=event_type,
        object_id=_id_of(invoice),
        customer_id=_id_of(_field(invoice, "customer")),
        subscription_id=_invoice_subscription_id(invoice),
        latest_invoice_id=_id_of(invoice),
        livemode=_field(invoice, "livemode"),
        actor_email=email.strip().lower() if email else None,
        payment_failed=event_type == INVOICE_PAYMENT_FAILED,
        payment_succeeded=event_type in (INVOICE_PAID, INVOICE_PAYMENT_SUCCEEDED),
        actionable=_invoice_subscription_id(invoice) is not None,
    )
    _apply_metadata(signal, _metadata(details))
    _apply_metadata(signal, _metadata(invoice))
    return signal


def signal_from_webhook_event(event: Mapping[str, Any]) -> BillingSignal:
    """
    Normalize a verified webhook event.

    The Stripe event id is the dedupe key. Event types this service doesn't
    act on still produce a signal (actionable=False) so they are recorded.
    """
    event_id = str(event.get("id") or "")
    event_type = str(event.get("type") or "")
    obj = _field(event.get("data"), "object") or {}

    if event_type == CHECKOUT_COMPLETED:
        return signal_from_checkout_session(obj, dedupe_key=event_id, event_type=event_type)
    if event_type in SUBSCRIPTION_EVENTS:
        return signal_from_subscription(obj, dedupe_key=event_id, event_type=event_type)
    if event_type in INVOICE_EVENTS:
        return signal_from_invoice(obj, dedupe_key=event_id, event_type=event_type)

    return BillingSignal(
        dedupe_key=event_id,
        event_type=event_type,
        object_id=_id_of(obj),
        actionable=False,
    )


def needs_subscription_lookup(signal: BillingSignal) -> bool:
    """True when a signal names a subscription but lacks the price/status facts to act on."""
    if not signal.actionable or not signal.subscription_id:
        return False
    return signal.status is None or (signal.price_id is None and signal.plan_hint is None)
