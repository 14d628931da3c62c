"""ProcessedEvent model"""
from sqlalchemy import Column, String, DateTime
from datetime import datetime, timezone
from donation_ledger.models.base import Base


class ProcessedEvent(Base):
    """Provider event claimed for processing; the primary key is the idempotency gate"""
    __tablename__ = "processed_events"

    event_id = Column(String(255), primary_key=True)
    canonical_type = Column(String(100), nullable=False, index=True)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self):
        return f"<ProcessedEvent {self.event_id} ({self.canonical_type})>"
