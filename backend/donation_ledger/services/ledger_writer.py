import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from donation_ledger.core.config import get_attribution_defaults
from donation_ledger.core.metrics import ledger_writes_counter
from donation_ledger.db.helpers import InsertOutcome, apply_non_null, insert_or_conflict
from donation_ledger.models.donation_payment import DonationPayment
from donation_ledger.models.enums import (
    GiftStatus, PaymentStatus, next_gift_status, next_payment_status, status_after_refund
)
from donation_ledger.models.recurring_gift import RecurringGift
from donation_ledger.services.attribution import AttributionBundle

logger = logging.getLogger(__name__)

# Never touched by a create-or-update: refunds have their own writer and
# status goes through the state machine.
_PAYMENT_GUARDED = frozenset({"kind", "status", "refunded_amount_minor", "refunded_at"})
_GIFT_GUARDED = frozenset({"status", "canceled_at"})


@dataclass(frozen=True)
class PaymentKey:
    """Durable business key of a DonationPayment"""
    kind: str  # 'invoice' or 'payment_intent'
    value: str

    @classmethod
    def invoice(cls, invoice_id: str) -> "PaymentKey":
        return cls("invoice", invoice_id)

    @classmethod
    def payment_intent(cls, payment_intent_id: str) -> "PaymentKey":
        return cls("payment_intent", payment_intent_id)

    @property
    def column(self):
        if self.kind == "invoice":
            return DonationPayment.stripe_invoice_id
        return DonationPayment.stripe_payment_intent_id


def find_payment(db: Session, key: PaymentKey) -> Optional[DonationPayment]:
    return db.query(DonationPayment).filter(key.column == key.value).first()


def find_recurring_gift(db: Session, subscription_id: str) -> Optional[RecurringGift]:
    return db.query(RecurringGift).filter(RecurringGift.stripe_subscription_id == subscription_id).first()


def upsert_payment(db: Session, key: PaymentKey, data: Dict[str, Any], attribution: AttributionBundle) -> InsertOutcome:
    """Create a DonationPayment, or backfill the existing row for the same business key.

    On conflict only non-null incoming values are written, and substituted
    attribution defaults never replace stored values, so a less-informed event
    cannot erase what a more authoritative one wrote earlier.
    """
    values = {**data, **attribution.as_columns()}
    outcome = insert_or_conflict(db, DonationPayment(**values))
    if outcome is InsertOutcome.INSERTED:
        ledger_writes_counter.labels(entity="donation_payment", outcome="inserted").inc()
        logger.info(f"Created {values.get('kind')} donation payment for {key.kind} {key.value}")
        return outcome

    existing = find_payment(db, key)
    if existing is None:
        # The conflict was on the other unique key; nothing addressable by this key
        logger.warning(f"Donation payment insert for {key.kind} {key.value} conflicted on another key, skipping")
        ledger_writes_counter.labels(entity="donation_payment", outcome="skipped").inc()
        return outcome

    changed = apply_non_null(existing, values, skip=_PAYMENT_GUARDED | attribution.defaulted)
    proposed = data.get("status")
    if proposed is not None:
        status = next_payment_status(existing.status, PaymentStatus(proposed)).value
        if status != existing.status:
            existing.status = status
            changed.append("status")
    db.flush()
    ledger_writes_counter.labels(entity="donation_payment", outcome="updated").inc()
    logger.info(f"Backfilled donation payment {existing.id} for {key.kind} {key.value}: {sorted(changed)}")
    return outcome


def upsert_recurring_gift(
    db: Session,
    subscription_id: str,
    data: Dict[str, Any],
    attribution: AttributionBundle,
    proposed_status: GiftStatus,
) -> Tuple[RecurringGift, InsertOutcome]:
    """Create or merge the gift for a subscription, applying the subscription state machine"""
    gift = find_recurring_gift(db, subscription_id)
    outcome = InsertOutcome.CONFLICTED
    if gift is None:
        status = next_gift_status(None, proposed_status)
        columns = {k: v for k, v in data.items() if k not in _GIFT_GUARDED}
        if columns.get("amount_minor") is None:
            columns["amount_minor"] = 0
        if not columns.get("currency"):
            columns["currency"] = get_attribution_defaults().currency
        candidate = RecurringGift(
            stripe_subscription_id=subscription_id,
            **columns,
            **attribution.as_columns(),
            status=status.value,
            canceled_at=_canceled_at(status, data),
        )
        outcome = insert_or_conflict(db, candidate)
        if outcome is InsertOutcome.INSERTED:
            ledger_writes_counter.labels(entity="recurring_gift", outcome="inserted").inc()
            logger.info(f"Created recurring gift for subscription {subscription_id} ({status.value})")
            return candidate, outcome
        # Another worker created it between our read and insert
        gift = find_recurring_gift(db, subscription_id)

    apply_non_null(gift, {**data, **attribution.as_columns()}, skip=_GIFT_GUARDED | attribution.defaulted)
    previous = gift.status
    status = next_gift_status(previous, proposed_status)
    if previous == GiftStatus.CANCELED.value and proposed_status is not GiftStatus.CANCELED:
        logger.info(f"Recurring gift {subscription_id} is canceled; ignoring transition to {proposed_status.value}")
    gift.status = status.value
    if status is GiftStatus.CANCELED and gift.canceled_at is None:
        gift.canceled_at = _canceled_at(status, data)
    db.flush()
    ledger_writes_counter.labels(entity="recurring_gift", outcome="updated").inc()
    return gift, outcome


def _canceled_at(status: GiftStatus, data: Dict[str, Any]) -> Optional[datetime]:
    if status is not GiftStatus.CANCELED:
        return None
    return data.get("canceled_at") or datetime.now(timezone.utc)


def set_payment_status(payment: DonationPayment, proposed: PaymentStatus, event_id: str) -> bool:
    """Status-only correction of an existing row; returns True when the row changed"""
    status = next_payment_status(payment.status, proposed).value
    if status == payment.status:
        return False
    logger.info(f"Donation payment {payment.id}: {payment.status} -> {status}")
    payment.status = status
    payment.stripe_event_id = event_id
    ledger_writes_counter.labels(entity="donation_payment", outcome="status").inc()
    return True


def record_refund(payment: DonationPayment, refunded_amount_minor: int, event_id: str,
                  refunded_at: Optional[datetime] = None) -> bool:
    """Apply a cumulative refund amount. The stored amount never decreases.

    Stale or replayed refund events carrying a smaller total are ignored.
    """
    current = payment.refunded_amount_minor or 0
    if refunded_amount_minor <= current:
        logger.info(
            f"Ignoring refund total {refunded_amount_minor} for donation payment {payment.id} "
            f"(already {current})"
        )
        return False

    payment.refunded_amount_minor = refunded_amount_minor
    payment.refunded_at = refunded_at or datetime.now(timezone.utc)
    payment.status = status_after_refund(payment.status, payment.refunded_amount_minor, payment.amount_minor)
    payment.stripe_event_id = event_id
    ledger_writes_counter.labels(entity="donation_payment", outcome="refund").inc()
    logger.info(
        f"Recorded refund of {payment.refunded_amount_minor}/{payment.amount_minor} "
        f"on donation payment {payment.id} (status {payment.status})"
    )
    return True


def mark_gift_past_due(gift: RecurringGift, event_id: str) -> bool:
    """Invoice payment failure: past_due unless the gift is already canceled. Touches nothing else."""
    status = next_gift_status(gift.status, GiftStatus.PAST_DUE).value
    if status == gift.status:
        return False
    gift.status = status
    gift.stripe_event_id = event_id
    ledger_writes_counter.labels(entity="recurring_gift", outcome="status").inc()
    return True
