import logging
from dataclasses import dataclass

from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from donation_ledger.models.processed_event import ProcessedEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimResult:
    claimed: bool
    duplicate: bool = False


def claim_event(event_id: str, canonical_type: str, db: Session) -> ClaimResult:
    """Claim an event id for processing.

    Must be the first write of the unit of work. The insert itself is the
    check: two workers delivering the same id race on the primary key and the
    loser gets an IntegrityError. On conflict the whole unit of work is rolled
    back, which is safe because nothing else has been written yet.
    """
    try:
        db.execute(insert(ProcessedEvent).values(event_id=event_id, canonical_type=canonical_type))
    except IntegrityError:
        db.rollback()
        logger.info(f"Webhook event {event_id} already processed")
        return ClaimResult(claimed=False, duplicate=True)
    return ClaimResult(claimed=True)
