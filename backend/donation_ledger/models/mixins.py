"""Column groups shared by DonationPayment and RecurringGift"""
from sqlalchemy import Column, String, DateTime
from datetime import datetime, timezone


class AttributionMixin:
    """Campaign / context / tier / marketing-source snapshot"""
    campaign_slug = Column(String(120), nullable=False, index=True)
    context_type = Column(String(32), nullable=False)  # ContextType value
    context_id = Column(String(120), nullable=False)
    context_label = Column(String(255), nullable=True)
    tier_id = Column(String(120), nullable=True)
    tier_label = Column(String(255), nullable=True)
    amount_type = Column(String(16), nullable=False)  # AmountType value
    utm_source = Column(String(255), nullable=True)
    utm_medium = Column(String(255), nullable=True)
    utm_campaign = Column(String(255), nullable=True)
    utm_content = Column(String(255), nullable=True)
    utm_term = Column(String(255), nullable=True)
    referrer = Column(String(1024), nullable=True)
    landing_path = Column(String(1024), nullable=True)

class TimestampMixin:
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
