"""Locating ledger entities from event payloads, with remote fallback enrichment"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from donation_ledger.core.config import AttributionDefaults
from donation_ledger.core.logging import log_debug_extract
from donation_ledger.models.enums import gift_status_from_upstream
from donation_ledger.models.recurring_gift import RecurringGift
from donation_ledger.services.attribution import (
    AttributionBundle, metadata_of, parse_int_safe, resolve_attribution, resolve_hints
)
from donation_ledger.services.ledger_writer import find_recurring_gift, upsert_recurring_gift
from donation_ledger.services.stripe_service import INVOICE_EXPAND, _get_path, _get_stripe_value, as_id

logger = logging.getLogger(__name__)

ID_PREFIXES = {
    "invoice": "in_",
    "payment_intent": "pi_",
    "subscription": "sub_",
    "checkout_session": "cs_",
}


def is_valid_id(kind: str, value: Optional[str]) -> bool:
    """True when ``value`` has the provider's id shape for ``kind``"""
    prefix = ID_PREFIXES[kind]
    return isinstance(value, str) and value.startswith(prefix) and len(value) > len(prefix)


def from_timestamp(value: Any) -> Optional[datetime]:
    seconds = parse_int_safe(value)
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

@dataclass(frozen=True)
class SubscriptionFinancials:
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    current_period_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None


def subscription_financials(subscription: Any) -> SubscriptionFinancials:
    """Amount/currency from the first item's price (or legacy plan), plus period end and cancellation time"""
    item = _get_path(subscription, "items", "data", 0)
    price = _get_stripe_value(item, "price")
    plan = _get_stripe_value(item, "plan")

    amount_minor = parse_int_safe(_get_stripe_value(price, "unit_amount"))
    if amount_minor is None:
        amount_minor = parse_int_safe(_get_stripe_value(plan, "amount"))

    currency = _get_stripe_value(price, "currency") or _get_stripe_value(plan, "currency")

    # Newer API versions moved the billing period onto the subscription item
    period_end = _get_stripe_value(subscription, "current_period_end") or _get_stripe_value(item, "current_period_end")

    return SubscriptionFinancials(
        amount_minor=amount_minor,
        currency=currency.lower() if isinstance(currency, str) else None,
        current_period_end=from_timestamp(period_end),
        canceled_at=from_timestamp(_get_stripe_value(subscription, "canceled_at")),
    )


@dataclass
class ResolvedGift:
    gift: RecurringGift
    attribution: AttributionBundle
    fetched: bool = False


def resolve_recurring_gift(
    db: Session,
    subscription_id: str,
    provider,
    *,
    event_id: str,
    defaults: AttributionDefaults,
    preferred_sources: Optional[List[Dict[str, str]]] = None,
    donor: Optional[Dict[str, Any]] = None,
    fallback_amount_minor: Optional[int] = None,
    fallback_currency: Optional[str] = None,
) -> ResolvedGift:
    """Return the gift for ``subscription_id``, recovering it from the provider when missing.

    Invoice events can arrive before the checkout or subscription event that
    normally creates the gift. In that case the subscription is fetched once
    (no retry here; a failure aborts the event) and a gift is upserted from it.
    """
    gift = find_recurring_gift(db, subscription_id)
    if gift is not None:
        # The gift wins field by field; fields it never recorded come from the event's own metadata
        attribution = AttributionBundle.from_record(gift)
        if preferred_sources:
            attribution = attribution.filled_from(resolve_attribution(*preferred_sources, defaults=defaults))
        return ResolvedGift(gift=gift, attribution=attribution)

    subscription = provider.retrieve_subscription(subscription_id)
    sub_meta = metadata_of(subscription)
    sources = list(preferred_sources or []) + [sub_meta]
    attribution = resolve_attribution(*sources, defaults=defaults)
    hints = resolve_hints(*sources)
    financials = subscription_financials(subscription)
    donor = donor or {}

    data = {
        "donor_key": donor.get("donor_key") or hints.donor_key,
        "donor_email": donor.get("donor_email") or hints.donor_email,
        "donor_name": donor.get("donor_name") or hints.donor_name,
        "stripe_customer_id": donor.get("stripe_customer_id") or as_id(_get_stripe_value(subscription, "customer")),
        "amount_minor": _first_not_none(financials.amount_minor, hints.amount_minor, fallback_amount_minor),
        "currency": financials.currency or hints.currency or fallback_currency,
        "current_period_end": financials.current_period_end,
        "canceled_at": financials.canceled_at,
        "stripe_event_id": event_id,
    }
    log_debug_extract("recurring_gift.subscription_fallback", {
        "subscription": subscription_id,
        "status": _get_stripe_value(subscription, "status"),
        "recovered": attribution.as_columns(),
    })
    gift, _ = upsert_recurring_gift(
        db, subscription_id, data, attribution,
        gift_status_from_upstream(_get_stripe_value(subscription, "status")),
    )
    logger.info(f"Recovered recurring gift for subscription {subscription_id} from Stripe")
    return ResolvedGift(gift=gift, attribution=attribution, fetched=True)


# ============================================================================
# INVOICES
# ============================================================================

@dataclass(frozen=True)
class NormalizedInvoice:
    invoice: Any
    payment_intent_override: Optional[str] = None
    refetched: bool = field(default=False, compare=False)


def normalize_invoice(obj: Any, provider) -> Optional[NormalizedInvoice]:
    """Canonicalize an event object to a real invoice.

    Stripe may deliver either an ``invoice`` or an ``invoice_payment`` shadow
    object (``inpay_...``) that only references the invoice. The shadow id is
    never persisted; the referenced invoice is fetched instead. Returns None
    for anything that cannot be mapped.
    """
    object_type = _get_stripe_value(obj, "object")
    if object_type == "invoice":
        return NormalizedInvoice(invoice=obj)

    if object_type == "invoice_payment":
        invoice_id = as_id(_get_stripe_value(obj, "invoice"))
        if not is_valid_id("invoice", invoice_id):
            logger.warning(
                f"invoice_payment {_get_stripe_value(obj, 'id')} has no usable invoice reference "
                f"({_get_stripe_value(obj, 'invoice')!r}), skipping"
            )
            return None
        override = as_id(_get_path(obj, "payment", "payment_intent")) or as_id(_get_stripe_value(obj, "payment_intent"))
        invoice = provider.retrieve_invoice(invoice_id, expand=INVOICE_EXPAND)
        log_debug_extract("invoice.normalized_invoice_payment", {
            "invoice_payment_id": _get_stripe_value(obj, "id"),
            "invoice_id": invoice_id,
            "payment_intent_override": override,
        })
        return NormalizedInvoice(invoice=invoice, payment_intent_override=override, refetched=True)

    logger.warning(f"Unexpected invoice event object {object_type!r} ({_get_stripe_value(obj, 'id')}), skipping")
    return None


def invoice_subscription_id(invoice: Any) -> Optional[str]:
    """Subscription id from ``invoice.subscription`` or the newer ``parent.subscription_details``"""
    return (
        as_id(_get_stripe_value(invoice, "subscription"))
        or as_id(_get_path(invoice, "parent", "subscription_details", "subscription"))
    )


def invoice_payment_intent_id(invoice: Any) -> Optional[str]:
    return (
        as_id(_get_stripe_value(invoice, "payment_intent"))
        or as_id(_get_path(invoice, "payments", "data", 0, "payment", "payment_intent"))
    )


def invoice_metadata_sources(invoice: Any) -> List[Dict[str, str]]:
    """Invoice-level metadata sources, most specific first"""
    sources = [metadata_of(invoice), metadata_of(_get_path(invoice, "parent", "subscription_details"))]
    subscription = _get_stripe_value(invoice, "subscription")
    if subscription is not None and not isinstance(subscription, str):
        # Expanded subscription object on a re-fetched invoice
        sources.append(metadata_of(subscription))
    return [meta for meta in sources if meta]


def _first_not_none(*values):
    for value in values:
        if value is not None:
            return value
    return None
