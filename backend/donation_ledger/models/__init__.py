"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from donation_ledger.models.base import Base
from donation_ledger.models.processed_event import ProcessedEvent
from donation_ledger.models.donation_payment import DonationPayment
from donation_ledger.models.recurring_gift import RecurringGift

# Export all for convenience
__all__ = ["Base", "ProcessedEvent", "DonationPayment", "RecurringGift"]
