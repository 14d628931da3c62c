"""Canonical event type + event id extraction. Pure: safe to run before any transaction opens."""
from dataclasses import dataclass
from typing import Any

from donation_ledger.core.exceptions import MalformedEventError
from donation_ledger.services.stripe_service import _get_stripe_value

# Stripe CLI / legacy aliases (underscored) -> canonical dotted names
EVENT_ALIASES = {
    "invoice_payment.paid": "invoice.payment_succeeded",
    "invoice_payment.failed": "invoice.payment_failed",
}


@dataclass(frozen=True)
class EventEnvelope:
    event_id: str
    raw_type: str
    canonical_type: str
    data_object: Any

    @property
    def aliased(self) -> bool:
        return self.raw_type != self.canonical_type


def canonical_event_type(raw_type: str) -> str:
    return EVENT_ALIASES.get(raw_type, raw_type)


def normalize_event(event: Any) -> EventEnvelope:
    """Build an envelope from a parsed event (dict or stripe.Event)."""
    event_id = _get_stripe_value(event, "id")
    raw_type = _get_stripe_value(event, "type")
    if not isinstance(event_id, str) or not event_id.strip():
        raise MalformedEventError("Event has no id")
    if not isinstance(raw_type, str) or not raw_type.strip():
        raise MalformedEventError(f"Event {event_id} has no type")

    data = _get_stripe_value(event, "data")
    return EventEnvelope(
        event_id=event_id.strip(),
        raw_type=raw_type,
        canonical_type=canonical_event_type(raw_type),
        data_object=_get_stripe_value(data, "object"),
    )
