"""RecurringGift model"""
from sqlalchemy import Column, Integer, String, DateTime
from donation_ledger.models.base import Base
from donation_ledger.models.mixins import AttributionMixin, TimestampMixin


class RecurringGift(AttributionMixin, TimestampMixin, Base):
    """Subscription-level attribution and status record"""
    __tablename__ = "recurring_gifts"

    id = Column(Integer, primary_key=True, index=True)
    stripe_subscription_id = Column(String(255), unique=True, nullable=False, index=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)

    # Donor snapshot
    donor_key = Column(String(255), nullable=True, index=True)
    donor_email = Column(String(255), nullable=True)
    donor_name = Column(String(255), nullable=True)

    amount_minor = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False)

    status = Column(String(16), nullable=False)  # 'active', 'past_due', 'canceled'
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)

    stripe_event_id = Column(String(255), nullable=True)

    def __repr__(self):
        return f"<RecurringGift {self.stripe_subscription_id} {self.status}>"
