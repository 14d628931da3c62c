"""Reconciliation of Stripe events into the donation ledger.

Each event runs in a single unit of work: the idempotency claim is the first
write, every ledger mutation follows in the same transaction, and any error
rolls all of it back so the provider's redelivery starts from a clean slate.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from donation_ledger.core.config import AttributionDefaults, get_attribution_defaults
from donation_ledger.core.logging import log_debug_extract, webhook_logger
from donation_ledger.core.metrics import webhook_events_counter
from donation_ledger.core.otel import get_tracer
from donation_ledger.db.session import unit_of_work
from donation_ledger.models.enums import DonationKind, GiftStatus, PaymentStatus, gift_status_from_upstream
from donation_ledger.services.attribution import (
    AttributionBundle, looks_like_donation, metadata_of, parse_int_safe,
    resolve_attribution, resolve_donor_key, resolve_hints
)
from donation_ledger.services.entity_resolver import (
    from_timestamp, invoice_metadata_sources, invoice_payment_intent_id, invoice_subscription_id,
    is_valid_id, normalize_invoice, resolve_recurring_gift, subscription_financials
)
from donation_ledger.services.event_normalizer import EventEnvelope, normalize_event
from donation_ledger.services.idempotency import claim_event
from donation_ledger.services.ledger_writer import (
    PaymentKey, find_payment, find_recurring_gift, mark_gift_past_due, record_refund,
    set_payment_status, upsert_payment, upsert_recurring_gift
)
from donation_ledger.services.stripe_service import StripeProvider, _get_path, _get_stripe_value, as_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    event_id: str
    canonical_type: str
    duplicate: bool = False
    applied: bool = False


@dataclass
class ReconcileContext:
    """Everything a handler needs for one event."""
    envelope: EventEnvelope
    db: Session
    provider: Any
    defaults: AttributionDefaults

    @property
    def obj(self):
        return self.envelope.data_object

    @property
    def event_id(self) -> str:
        return self.envelope.event_id


def process_event(event: Any, db: Session, provider=None, defaults: Optional[AttributionDefaults] = None) -> ReconcileResult:
    """Reconcile one parsed event into the ledger.

    Returns a duplicate result when the event id was already claimed.
    Raises MalformedEventError when the envelope has no id or type, and
    propagates any other failure after rolling back the unit of work.
    """
    envelope = normalize_event(event)
    provider = provider or StripeProvider()
    defaults = defaults or get_attribution_defaults()

    if envelope.aliased:
        webhook_logger.info(f"Event {envelope.event_id}: {envelope.raw_type} treated as {envelope.canonical_type}")
    webhook_logger.info(f"Processing event {envelope.event_id} ({envelope.canonical_type})")

    tracer = get_tracer()
    with tracer.start_as_current_span("reconcile_event") as span:
        span.set_attribute("stripe.event_id", envelope.event_id)
        span.set_attribute("stripe.event_type", envelope.canonical_type)
        try:
            with unit_of_work(db):
                claim = claim_event(envelope.event_id, envelope.canonical_type, db)
                if claim.duplicate:
                    result = ReconcileResult(envelope.event_id, envelope.canonical_type, duplicate=True)
                else:
                    handler = EVENT_HANDLERS.get(envelope.canonical_type)
                    if handler is None:
                        logger.debug(f"No handler for {envelope.canonical_type}, acknowledging")
                        applied = False
                    else:
                        ctx = ReconcileContext(envelope=envelope, db=db, provider=provider, defaults=defaults)
                        applied = handler(ctx)
                    result = ReconcileResult(envelope.event_id, envelope.canonical_type, applied=applied)
        except Exception as e:
            webhook_events_counter.labels(event_type=envelope.canonical_type, outcome="error").inc()
            span.record_exception(e)
            webhook_logger.error(f"Failed to reconcile event {envelope.event_id} ({envelope.canonical_type}): {e}", exc_info=True)
            raise

        outcome = "duplicate" if result.duplicate else ("applied" if result.applied else "noop")
        span.set_attribute("reconcile.outcome", outcome)
    webhook_events_counter.labels(event_type=envelope.canonical_type, outcome=outcome).inc()
    return result


# ============================================================================
# CHECKOUT
# ============================================================================

def handle_checkout_completed(ctx: ReconcileContext) -> bool:
    session = ctx.obj
    mode = _get_stripe_value(session, "mode")
    meta = metadata_of(session)
    hints = resolve_hints(meta)
    details = _get_stripe_value(session, "customer_details")

    donor = {
        "donor_key": resolve_donor_key(_get_stripe_value(session, "client_reference_id"), meta),
        "donor_email": _get_stripe_value(details, "email") or _get_stripe_value(session, "customer_email") or hints.donor_email,
        "donor_name": _get_stripe_value(details, "name") or hints.donor_name,
        "stripe_customer_id": as_id(_get_stripe_value(session, "customer")),
    }
    log_debug_extract("checkout.session.completed", {
        "session": _get_stripe_value(session, "id"),
        "mode": mode,
        "payment_status": _get_stripe_value(session, "payment_status"),
        "metadata": meta,
        "donor": donor,
    })

    if mode == "payment":
        return _checkout_one_time(ctx, session, meta, hints, donor, details)
    if mode == "subscription":
        return _checkout_subscription(ctx, session, meta, hints, donor)

    logger.info(f"Checkout session {_get_stripe_value(session, 'id')} has mode {mode!r}, nothing to record")
    return False


def _checkout_one_time(ctx, session, meta, hints, donor, details) -> bool:
    session_id = _get_stripe_value(session, "id")
    if _get_stripe_value(session, "payment_status") != "paid":
        logger.info(f"Checkout session {session_id} is not paid yet, skipping")
        return False

    amount_minor = parse_int_safe(_get_stripe_value(session, "amount_total"))
    if amount_minor is None:
        amount_minor = hints.amount_minor
    if amount_minor is None:
        logger.warning(f"Checkout session {session_id} has no amount, skipping")
        return False

    payment_intent_id = as_id(_get_stripe_value(session, "payment_intent"))
    if not is_valid_id("payment_intent", payment_intent_id):
        logger.warning(f"Checkout session {session_id} has invalid payment intent {payment_intent_id!r}, skipping")
        return False

    currency = _get_stripe_value(session, "currency") or hints.currency or ctx.defaults.currency
    data = {
        **donor,
        "kind": DonationKind.ONE_TIME.value,
        "status": PaymentStatus.SUCCEEDED.value,
        "amount_minor": amount_minor,
        "currency": currency.lower(),
        "billing_country": _get_path(details, "address", "country"),
        "stripe_payment_intent_id": payment_intent_id,
        "stripe_session_id": session_id,
        "stripe_event_id": ctx.event_id,
    }
    attribution = resolve_attribution(meta, defaults=ctx.defaults)
    upsert_payment(ctx.db, PaymentKey.payment_intent(payment_intent_id), data, attribution)
    return True


def _checkout_subscription(ctx, session, meta, hints, donor) -> bool:
    session_id = _get_stripe_value(session, "id")
    subscription_id = as_id(_get_stripe_value(session, "subscription"))
    if not is_valid_id("subscription", subscription_id):
        logger.warning(f"Checkout session {session_id} has invalid subscription {subscription_id!r}, skipping")
        return False

    amount_minor = parse_int_safe(_get_stripe_value(session, "amount_total"))
    if amount_minor is None:
        amount_minor = hints.amount_minor
    currency = _get_stripe_value(session, "currency") or hints.currency
    sources = [meta]
    current_period_end = None

    if amount_minor is None or not currency:
        subscription = ctx.provider.retrieve_subscription(subscription_id)
        sub_meta = metadata_of(subscription)
        sources.append(sub_meta)
        financials = subscription_financials(subscription)
        sub_hints = resolve_hints(sub_meta)
        if amount_minor is None:
            amount_minor = financials.amount_minor if financials.amount_minor is not None else sub_hints.amount_minor
        currency = currency or financials.currency or sub_hints.currency
        current_period_end = financials.current_period_end

    data = {
        **donor,
        "amount_minor": amount_minor,
        "currency": currency.lower() if currency else None,
        "current_period_end": current_period_end,
        "stripe_event_id": ctx.event_id,
    }
    attribution = resolve_attribution(*sources, defaults=ctx.defaults)
    upsert_recurring_gift(ctx.db, subscription_id, data, attribution, GiftStatus.ACTIVE)
    return True


# ============================================================================
# PAYMENT INTENTS
# ============================================================================

def handle_payment_intent_succeeded(ctx: ReconcileContext) -> bool:
    intent = ctx.obj
    intent_id = as_id(intent)
    if not looks_like_donation(metadata_of(intent)):
        logger.debug(f"Payment intent {intent_id} is not a donation, skipping")
        return False
    if as_id(_get_stripe_value(intent, "invoice")):
        # Invoice-linked intents are recorded through the invoice events
        logger.debug(f"Payment intent {intent_id} belongs to an invoice, skipping")
        return False
    if not is_valid_id("payment_intent", intent_id):
        logger.warning(f"Invalid payment intent id {intent_id!r}, skipping")
        return False

    payment = find_payment(ctx.db, PaymentKey.payment_intent(intent_id))
    if payment is None:
        logger.info(f"No donation payment for {intent_id} yet; checkout completion will create it")
        return False
    return set_payment_status(payment, PaymentStatus.SUCCEEDED, ctx.event_id)


def handle_payment_intent_failed(ctx: ReconcileContext) -> bool:
    intent = ctx.obj
    intent_id = as_id(intent)
    if as_id(_get_stripe_value(intent, "invoice")):
        logger.debug(f"Payment intent {intent_id} belongs to an invoice, skipping")
        return False
    if not is_valid_id("payment_intent", intent_id):
        logger.warning(f"Invalid payment intent id {intent_id!r}, skipping")
        return False

    payment = find_payment(ctx.db, PaymentKey.payment_intent(intent_id))
    if payment is None:
        logger.info(f"Payment intent {intent_id} failed with no donation payment recorded")
        return False
    return set_payment_status(payment, PaymentStatus.FAILED, ctx.event_id)


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

def handle_subscription_changed(ctx: ReconcileContext) -> bool:
    subscription = ctx.obj
    subscription_id = as_id(subscription)
    if not is_valid_id("subscription", subscription_id):
        logger.warning(f"Invalid subscription id {subscription_id!r}, skipping")
        return False

    meta = metadata_of(subscription)
    hints = resolve_hints(meta)
    financials = subscription_financials(subscription)
    upstream = _get_stripe_value(subscription, "status")
    if ctx.envelope.canonical_type == "customer.subscription.deleted":
        proposed = GiftStatus.CANCELED
    else:
        proposed = gift_status_from_upstream(upstream)

    data = {
        "donor_key": hints.donor_key,
        "donor_email": hints.donor_email,
        "donor_name": hints.donor_name,
        "stripe_customer_id": as_id(_get_stripe_value(subscription, "customer")),
        "amount_minor": financials.amount_minor if financials.amount_minor is not None else hints.amount_minor,
        "currency": financials.currency or hints.currency,
        "current_period_end": financials.current_period_end,
        "canceled_at": financials.canceled_at or from_timestamp(_get_stripe_value(subscription, "ended_at")),
        "stripe_event_id": ctx.event_id,
    }
    log_debug_extract(ctx.envelope.canonical_type, {
        "subscription": subscription_id,
        "upstream_status": upstream,
        "proposed_status": proposed.value,
        "metadata": meta,
    })
    attribution = resolve_attribution(meta, defaults=ctx.defaults)
    upsert_recurring_gift(ctx.db, subscription_id, data, attribution, proposed)
    return True


# ============================================================================
# INVOICES
# ============================================================================

def handle_invoice_paid(ctx: ReconcileContext) -> bool:
    normalized = normalize_invoice(ctx.obj, ctx.provider)
    if normalized is None:
        return False
    invoice = normalized.invoice

    invoice_id = as_id(invoice)
    if not is_valid_id("invoice", invoice_id):
        logger.warning(f"Invalid invoice id {invoice_id!r}, skipping")
        return False

    subscription_id = invoice_subscription_id(invoice)
    if subscription_id is not None and not is_valid_id("subscription", subscription_id):
        logger.warning(f"Invoice {invoice_id} references invalid subscription {subscription_id!r}, skipping")
        return False

    amount_minor = parse_int_safe(_get_stripe_value(invoice, "amount_paid"))
    if amount_minor is None:
        amount_minor = parse_int_safe(_get_stripe_value(invoice, "amount_due"))
    if amount_minor is None:
        logger.warning(f"Invoice {invoice_id} has no amount, skipping")
        return False
    currency = (_get_stripe_value(invoice, "currency") or ctx.defaults.currency).lower()

    payment_intent_id = normalized.payment_intent_override or invoice_payment_intent_id(invoice)
    if payment_intent_id is not None and not is_valid_id("payment_intent", payment_intent_id):
        payment_intent_id = None

    sources = invoice_metadata_sources(invoice)
    hints = resolve_hints(*sources)
    donor = {
        "donor_email": _get_stripe_value(invoice, "customer_email") or hints.donor_email,
        "donor_name": _get_stripe_value(invoice, "customer_name") or hints.donor_name,
        "stripe_customer_id": as_id(_get_stripe_value(invoice, "customer")),
    }

    attribution: AttributionBundle
    donor_key = hints.donor_key
    if subscription_id is not None:
        resolved = resolve_recurring_gift(
            ctx.db, subscription_id, ctx.provider,
            event_id=ctx.event_id,
            defaults=ctx.defaults,
            preferred_sources=sources,
            donor={**donor, "donor_key": donor_key},
            fallback_amount_minor=amount_minor,
            fallback_currency=currency,
        )
        attribution = resolved.attribution
        donor_key = resolved.gift.donor_key or donor_key
    else:
        logger.info(f"Invoice {invoice_id} has no subscription; recording it from invoice metadata")
        attribution = resolve_attribution(*sources, defaults=ctx.defaults)

    period = _get_path(invoice, "lines", "data", 0, "period")
    data = {
        **donor,
        "donor_key": donor_key,
        "kind": DonationKind.MONTHLY.value,
        "status": PaymentStatus.SUCCEEDED.value,
        "amount_minor": amount_minor,
        "currency": currency,
        "billing_country": _get_path(invoice, "customer_address", "country"),
        "stripe_invoice_id": invoice_id,
        "stripe_payment_intent_id": payment_intent_id,
        "stripe_subscription_id": subscription_id,
        "period_start": from_timestamp(_get_stripe_value(period, "start")),
        "period_end": from_timestamp(_get_stripe_value(period, "end")),
        "stripe_event_id": ctx.event_id,
    }
    log_debug_extract("invoice.payment_succeeded", {
        "invoice": invoice_id,
        "subscription": subscription_id,
        "payment_intent": payment_intent_id,
        "amount_minor": amount_minor,
        "attribution": attribution.as_columns(),
    })
    upsert_payment(ctx.db, PaymentKey.invoice(invoice_id), data, attribution)
    return True


def handle_invoice_failed(ctx: ReconcileContext) -> bool:
    normalized = normalize_invoice(ctx.obj, ctx.provider)
    if normalized is None:
        return False
    invoice = normalized.invoice

    subscription_id = invoice_subscription_id(invoice)
    if not is_valid_id("subscription", subscription_id):
        logger.info(f"Failed invoice {as_id(invoice)} has no usable subscription, skipping")
        return False

    gift = find_recurring_gift(ctx.db, subscription_id)
    if gift is None:
        logger.info(f"No recurring gift for {subscription_id}; ignoring failed invoice {as_id(invoice)}")
        return False
    return mark_gift_past_due(gift, ctx.event_id)


# ============================================================================
# REFUNDS
# ============================================================================

def handle_charge_refunded(ctx: ReconcileContext) -> bool:
    charge = ctx.obj
    charge_id = as_id(charge)
    payment_intent_id = as_id(_get_stripe_value(charge, "payment_intent"))
    if not is_valid_id("payment_intent", payment_intent_id):
        logger.warning(f"Charge {charge_id} has invalid payment intent {payment_intent_id!r}, skipping")
        return False

    refunded = _get_stripe_value(charge, "amount_refunded")
    if isinstance(refunded, bool) or not isinstance(refunded, int):
        logger.warning(f"Charge {charge_id} has non-numeric amount_refunded {refunded!r}, skipping")
        return False

    payment = find_payment(ctx.db, PaymentKey.payment_intent(payment_intent_id))
    if payment is None:
        logger.info(f"No donation payment for {payment_intent_id}; ignoring refund on {charge_id}")
        return False
    return record_refund(payment, refunded, ctx.event_id)


EVENT_HANDLERS: Dict[str, Callable[[ReconcileContext], bool]] = {
    "checkout.session.completed": handle_checkout_completed,
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "payment_intent.payment_failed": handle_payment_intent_failed,
    "customer.subscription.created": handle_subscription_changed,
    "customer.subscription.updated": handle_subscription_changed,
    "customer.subscription.deleted": handle_subscription_changed,
    "invoice.payment_succeeded": handle_invoice_paid,
    "invoice.paid": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_failed,
    "charge.refunded": handle_charge_refunded,
}
