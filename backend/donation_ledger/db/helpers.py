"""Store helpers for ledger writes"""
import logging
from enum import Enum

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class InsertOutcome(str, Enum):
    """Result of an insert attempt against a uniqueness-constrained table"""
    INSERTED = "inserted"
    CONFLICTED = "conflicted"


def insert_or_conflict(db: Session, row) -> InsertOutcome:
    """Insert ``row`` inside a SAVEPOINT.

    A uniqueness violation rolls back only the savepoint, so the caller's
    unit of work stays usable for the follow-up update.
    """
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError as e:
        logger.info(f"Insert into {row.__tablename__} conflicted: {e.orig}")
        return InsertOutcome.CONFLICTED
    return InsertOutcome.INSERTED


def apply_non_null(target, values: dict, skip: frozenset = frozenset()) -> list:
    """Copy every non-None value onto ``target``; returns the names that changed"""
    changed = []
    for name, value in values.items():
        if value is None or name in skip:
            continue
        if getattr(target, name) != value:
            setattr(target, name, value)
            changed.append(name)
    return changed
