"""Ledger enumerations and their coercion / transition functions.

Every coercion here is total: any input, including None or garbage from
provider metadata, maps to a defined member.
"""
from enum import Enum
from typing import Optional


class ContextType(str, Enum):
    CAMPAIGN = "campaign"
    DRAMA_CLUB = "drama_club"
    CAUSE = "cause"
    PRODUCTION = "production"
    SPECIAL_PROJECT = "special_project"
    ARTIST = "artist"


class AmountType(str, Enum):
    TIER = "tier"
    CUSTOM = "custom"


class DonationKind(str, Enum):
    ONE_TIME = "one_time"
    MONTHLY = "monthly"


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class GiftStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


_CONTEXT_TYPES = {member.value: member for member in ContextType}
_AMOUNT_TYPES = {member.value: member for member in AmountType}

# Stripe subscription statuses -> gift status. Anything missing here is
# treated as a billing problem, never as a cancellation.
_UPSTREAM_GIFT_STATUS = {
    "active": GiftStatus.ACTIVE,
    "trialing": GiftStatus.ACTIVE,
    "past_due": GiftStatus.PAST_DUE,
    "unpaid": GiftStatus.PAST_DUE,
    "paused": GiftStatus.PAST_DUE,
    "canceled": GiftStatus.CANCELED,
}


def coerce_context_type(value: Optional[str]) -> ContextType:
    if isinstance(value, str):
        return _CONTEXT_TYPES.get(value.strip().lower(), ContextType.CAMPAIGN)
    return ContextType.CAMPAIGN


def coerce_amount_type(value: Optional[str]) -> AmountType:
    if isinstance(value, str):
        return _AMOUNT_TYPES.get(value.strip().lower(), AmountType.CUSTOM)
    return AmountType.CUSTOM


def gift_status_from_upstream(status: Optional[str]) -> GiftStatus:
    """Map a provider subscription status onto the gift state machine.

    Unknown statuses (incomplete, incomplete_expired, ...) land on past_due.
    """
    if isinstance(status, str):
        return _UPSTREAM_GIFT_STATUS.get(status.strip().lower(), GiftStatus.PAST_DUE)
    return GiftStatus.PAST_DUE


def next_gift_status(current: Optional[str], proposed: GiftStatus) -> GiftStatus:
    """canceled is terminal; every other transition is taken as proposed."""
    if current == GiftStatus.CANCELED.value:
        return GiftStatus.CANCELED
    return proposed


def next_payment_status(current: Optional[str], proposed: PaymentStatus) -> PaymentStatus:
    """canceled (fully refunded) is terminal for a payment."""
    if current == PaymentStatus.CANCELED.value:
        return PaymentStatus.CANCELED
    return proposed


def status_after_refund(current: str, refunded_amount_minor: int, amount_minor: int) -> str:
    """A refund covering the whole amount cancels a succeeded payment; partial refunds keep status."""
    if current == PaymentStatus.SUCCEEDED.value and refunded_amount_minor >= amount_minor:
        return PaymentStatus.CANCELED.value
    return current
