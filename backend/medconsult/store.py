"""
Session Record Store — transactions, row locks and conditional updates.

Every lifecycle or billing mutation runs as:

    with transaction(db):
        row = lock_row(db, TextSession, session_id)
        ...

The lock lives exactly as long as the transaction: it is released by the
commit on success and by the rollback on any exception or early return.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from medconsult.errors import NotFound

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    APPLIED = "applied"
    LOST_RACE = "lost_race"                      # another path already made this transition
    PRECONDITION_FAILED = "precondition_failed"  # row is in some other state


@dataclass
class TransitionResult:
    outcome: Outcome
    status: str

    @property
    def applied(self) -> bool:
        return self.outcome is Outcome.APPLIED


@contextmanager
def transaction(db: Session):
    """Commit on success, roll back on every error path."""
    try:
        yield db
        db.commit()
    except BaseException:
        db.rollback()
        raise


def lock_row(db: Session, model, pk: Any, missing_ok: bool = False):
    """SELECT ... FOR UPDATE on one row, refreshing any stale identity-map copy.

    Raises:
        NotFound: If the row does not exist and missing_ok is False.
    """
    db.flush()
    row = (
        db.query(model)
        .filter(model.id == pk)
        .populate_existing()
        .with_for_update()
        .one_or_none()
    )
    if row is None and not missing_ok:
        raise NotFound(f"{model.__name__} {pk} not found")
    return row


def conditional_update(db: Session, model, pk: Any, where: Iterable, values: Dict[str, Any]) -> int:
    """Compare-and-swap style UPDATE. Returns the number of rows affected.

    Zero rows means the precondition no longer holds; callers resolve that by
    re-reading the row, never by treating it as an error.
    """
    # Pending ORM changes must reach the row before the UPDATE sees it
    db.flush()
    return (
        db.query(model)
        .filter(model.id == pk, *where)
        .update(values, synchronize_session=False)
    )


def resolve(db: Session, model, pk: Any, rowcount: int, target_status: Optional[str]) -> TransitionResult:
    """Turn an UPDATE row count into a three-way TransitionResult."""
    row = lock_row(db, model, pk)
    if rowcount:
        return TransitionResult(Outcome.APPLIED, row.status)
    if target_status is not None and row.status == target_status:
        logger.debug("%s %s already %s, transition lost race", model.__name__, pk, target_status)
        return TransitionResult(Outcome.LOST_RACE, row.status)
    return TransitionResult(Outcome.PRECONDITION_FAILED, row.status)
