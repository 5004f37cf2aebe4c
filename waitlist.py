"""
FIFO waitlist advancement.

``approve_next_and_hold`` is the single reaction to "a copy became free":
returns, expiries, cancellations and newly added copies all end up here.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING

from catalog import Catalog
from ledger import InventoryLedger
from notifications import Notifier
from schemas import NotificationKind, ReservationStatus
from transitions import Event, ReservationStateMachine

logger = logging.getLogger(__name__)


class QueueAdvancer:
    def __init__(self, machine: ReservationStateMachine, ledger: InventoryLedger, catalog: Catalog,
                 notifier: Notifier, pickup_window: timedelta) -> None:
        self.machine = machine
        self.ledger = ledger
        self.catalog = catalog
        self.notifier = notifier
        self.pickup_window = pickup_window

    def pending_queue(self, book_id: str, limit: int = 0) -> List[Dict[str, Any]]:
        cursor = self.machine.reservations.find(
            {"book_id": book_id, "status": ReservationStatus.PENDING.value}
        ).sort([("reservation_date", ASCENDING), ("_id", ASCENDING)])
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def approve_next_and_hold(self, book_id: Any, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        book = self.catalog.resolve(book_id)
        if book is None:
            logger.info("Queue advance skipped: book %s not found", book_id)
            return False
        if not Catalog.is_reservable(book):
            logger.info("Queue advance skipped: book %s is not reservable", book["_id"])
            return False
        canonical_id = str(book["_id"])

        head = self.pending_queue(canonical_id, limit=1)
        if not head:
            logger.debug("No pending reservations for book %s", canonical_id)
            return False
        reservation = head[0]

        if not self.ledger.try_decrement_available(canonical_id):
            logger.info("No available copy to hold for book '%s' (%s)", book.get("title"), canonical_id)
            return False

        before = self.machine.apply(reservation["_id"], Event.HOLD, {
            "approval_date": now,
            "inventory_hold_active": True,
            "pickup_reminder_sent": False,
        }, now=now)
        if before is None:
            self.ledger.compensate_decrement(canonical_id, f"hold for reservation {reservation['_id']}")
            return False

        logger.info("Approved and held '%s' for reservation %s", book.get("title"), reservation["_id"])
        self.notifier.notify(reservation["user_id"], NotificationKind.RESERVATION_APPROVED, {
            "book_title": book.get("title"),
            "reservation_id": str(reservation["_id"]),
            "pickup_deadline": now + self.pickup_window,
        })
        return True
