"""DonationPayment model"""
from sqlalchemy import Column, Integer, String, DateTime
from donation_ledger.models.base import Base
from donation_ledger.models.mixins import AttributionMixin, TimestampMixin


class DonationPayment(AttributionMixin, TimestampMixin, Base):
    """One realized one-time or monthly charge.

    One-time rows are keyed on the payment intent, monthly rows on the invoice.
    """
    __tablename__ = "donation_payments"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String(16), nullable=False)  # 'one_time', 'monthly'
    status = Column(String(16), nullable=False)  # 'succeeded', 'failed', 'canceled'

    amount_minor = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False)

    # Donor snapshot
    donor_key = Column(String(255), nullable=True, index=True)
    donor_email = Column(String(255), nullable=True)
    donor_name = Column(String(255), nullable=True)
    billing_country = Column(String(8), nullable=True)

    # Refund state (refunded_amount_minor never decreases)
    refunded_amount_minor = Column(Integer, nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    # Stripe linkage
    stripe_payment_intent_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_invoice_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_session_id = Column(String(255), nullable=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    stripe_customer_id = Column(String(255), nullable=True)

    # Billing period (monthly only)
    period_start = Column(DateTime(timezone=True), nullable=True)
    period_end = Column(DateTime(timezone=True), nullable=True)

    # Event that last stamped this row
    stripe_event_id = Column(String(255), nullable=False)

    def __repr__(self):
        key = self.stripe_invoice_id or self.stripe_payment_intent_id
        return f"<DonationPayment {self.id} {self.kind} {key} {self.status}>"
