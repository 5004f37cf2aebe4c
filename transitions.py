"""
Reservation state machine.

All status changes go through ``ReservationStateMachine.apply``: the allowed
prior statuses are part of the update filter, so a reservation that moved on
since it was read is left untouched and the call reports failure.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.database import Database

from database import parse_object_id
from schemas import ReservationStatus as S

logger = logging.getLogger(__name__)


class Event(str, Enum):
    APPROVE = "approve"
    HOLD = "hold"
    MARK_BORROWED = "mark_borrowed"
    EXPIRE = "expire"
    CANCEL = "cancel"
    REJECT = "reject"
    RETURN_GOOD = "return_good"
    RETURN_DAMAGED = "return_damaged"
    RETURN_LOST = "return_lost"
    REQUEST_RENEWAL = "request_renewal"
    APPROVE_RENEWAL = "approve_renewal"
    REJECT_RENEWAL = "reject_renewal"


TRANSITIONS: Dict[Event, Tuple[FrozenSet[S], S]] = {
    Event.APPROVE: (frozenset({S.PENDING}), S.APPROVED),
    Event.HOLD: (frozenset({S.PENDING}), S.APPROVED),
    Event.MARK_BORROWED: (frozenset({S.APPROVED}), S.BORROWED),
    Event.EXPIRE: (frozenset({S.APPROVED}), S.CANCELLED),
    Event.CANCEL: (frozenset({S.PENDING, S.APPROVED}), S.CANCELLED),
    Event.REJECT: (frozenset({S.PENDING, S.APPROVED}), S.REJECTED),
    Event.RETURN_GOOD: (frozenset({S.BORROWED}), S.RETURNED),
    Event.RETURN_DAMAGED: (frozenset({S.BORROWED}), S.DAMAGED),
    Event.RETURN_LOST: (frozenset({S.BORROWED}), S.LOST),
    Event.REQUEST_RENEWAL: (frozenset({S.BORROWED}), S.RENEWAL_REQUESTED),
    Event.APPROVE_RENEWAL: (frozenset({S.RENEWAL_REQUESTED}), S.BORROWED),
    Event.REJECT_RENEWAL: (frozenset({S.RENEWAL_REQUESTED}), S.BORROWED),
}

TERMINAL = frozenset({S.REJECTED, S.CANCELLED, S.RETURNED, S.DAMAGED, S.LOST, S.FLAGGED})


def can_apply(status: Any, event: Event) -> bool:
    sources, _ = TRANSITIONS[event]
    try:
        return S(status) in sources
    except ValueError:
        return False


class ReservationStateMachine:
    def __init__(self, database: Database) -> None:
        self.reservations = database["reservation"]

    def get(self, reservation_id: Any) -> Optional[Dict[str, Any]]:
        oid = parse_object_id(reservation_id)
        if oid is None:
            return None
        return self.reservations.find_one({"_id": oid})

    def apply(self, reservation_id: Any, event: Event, fields: Optional[Dict[str, Any]] = None,
              guard: Optional[Dict[str, Any]] = None, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Apply ``event`` if the stored status allows it.

        Returns the reservation as it was just before the write, or None when
        the reservation does not exist or is no longer in a valid prior state.
        """
        oid = parse_object_id(reservation_id)
        if oid is None:
            return None
        sources, target = TRANSITIONS[event]
        filt: Dict[str, Any] = {"_id": oid, "status": {"$in": sorted(s.value for s in sources)}}
        if guard:
            filt.update(guard)
        update_fields = dict(fields or {})
        update_fields["status"] = target.value
        update_fields["updated_at"] = now or datetime.utcnow()
        before = self.reservations.find_one_and_update(
            filt, {"$set": update_fields}, return_document=ReturnDocument.BEFORE
        )
        if before is None:
            logger.warning("Transition %s skipped for reservation %s: not in %s",
                           event.value, reservation_id, sorted(s.value for s in sources))
            return None
        logger.info("Reservation %s: %s -> %s (%s)", reservation_id, before.get("status"), target.value, event.value)
        return before
