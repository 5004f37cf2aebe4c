"""
Interactive reservation operations: create, approve, pickup, cancel, reject
and the renewal round trip.

Approval reserves intent, pickup reserves inventory: ``approve`` never touches
the ledger, ``mark_borrowed`` takes a copy unless the queue advancer already
holds one for this reservation.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from abuse import AbuseDetector
from catalog import Catalog
from config import Settings
from database import create_document, parse_object_id
from ledger import InventoryLedger
from members import MemberDirectory
from notifications import Notifier
from penalties import PenaltyService
from schemas import (
    ACTIVE_STATUSES,
    ErrorCode,
    NotificationKind,
    PenaltyType,
    RenewalCheck,
    Reservation,
    ReservationResult,
    ReservationStatus,
)
from transitions import Event, ReservationStateMachine, can_apply
from waitlist import QueueAdvancer

logger = logging.getLogger(__name__)

RENEWAL_BLOCKING_PENALTIES = (PenaltyType.DAMAGE, PenaltyType.LOST, PenaltyType.LATE)


def _fail(code: ErrorCode, message: str) -> ReservationResult:
    return ReservationResult(success=False, message=message, error_code=code)


class ReservationService:
    def __init__(self, database: Database, settings: Settings, machine: ReservationStateMachine,
                 ledger: InventoryLedger, catalog: Catalog, members: MemberDirectory,
                 penalties: PenaltyService, advancer: QueueAdvancer, abuse: AbuseDetector,
                 notifier: Notifier) -> None:
        self.database = database
        self.settings = settings
        self.machine = machine
        self.ledger = ledger
        self.catalog = catalog
        self.members = members
        self.penalties = penalties
        self.advancer = advancer
        self.abuse = abuse
        self.notifier = notifier

    # ----------------------
    # Queries
    # ----------------------

    def get(self, reservation_id: Any) -> Optional[Dict[str, Any]]:
        return self.machine.get(reservation_id)

    def for_user(self, user_id: Any) -> List[Dict[str, Any]]:
        return list(self.machine.reservations.find({"user_id": str(user_id)})
                    .sort("reservation_date", DESCENDING))

    def active_borrowings(self, user_id: Any) -> List[Dict[str, Any]]:
        return list(self.machine.reservations.find({
            "user_id": str(user_id),
            "status": {"$in": [ReservationStatus.BORROWED.value, ReservationStatus.RENEWAL_REQUESTED.value]},
        }))

    def renewal_requests(self) -> List[Dict[str, Any]]:
        return list(self.machine.reservations.find({"status": ReservationStatus.RENEWAL_REQUESTED.value}))

    def _active_for_pair(self, user_id: str, book_id: str) -> List[Dict[str, Any]]:
        return list(self.machine.reservations.find({
            "user_id": user_id,
            "book_id": book_id,
            "status": {"$in": [s.value for s in ACTIVE_STATUSES]},
        }).sort([("reservation_date", ASCENDING), ("_id", ASCENDING)]))

    # ----------------------
    # Create
    # ----------------------

    def create_reservation(self, user_id: Any, book_id: Any, now: Optional[datetime] = None) -> ReservationResult:
        now = now or datetime.utcnow()
        if parse_object_id(user_id) is None:
            return _fail(ErrorCode.INVALID_ACCOUNT, "Invalid user account.")
        member = self.members.get(user_id)
        if member is None:
            return _fail(ErrorCode.ACCOUNT_NOT_FOUND, "We could not find your account. Please sign in again.")
        user_id = str(member["_id"])
        if member.get("is_restricted"):
            logger.info("Reservation refused: user %s is restricted", user_id)
            return _fail(ErrorCode.ACCOUNT_RESTRICTED, "Your account is restricted. Please contact the librarian.")
        if self.members.has_unpaid_penalties(user_id):
            logger.info("Reservation refused: user %s has unpaid penalties", user_id)
            return _fail(ErrorCode.UNPAID_PENALTIES, "You must settle your penalties before reserving books.")

        book = self.catalog.resolve(book_id)
        if book is None:
            return _fail(ErrorCode.BOOK_NOT_FOUND, "The selected book was not found.")
        if not book.get("is_active", True):
            return _fail(ErrorCode.BOOK_INACTIVE, "This book is not available for reservations at the moment.")
        if book.get("is_reference_only"):
            return _fail(ErrorCode.REFERENCE_ONLY, "Reference-only books cannot be reserved.")
        book_id = str(book["_id"])

        if self._active_for_pair(user_id, book_id):
            return _fail(ErrorCode.DUPLICATE_RESERVATION, "You already have a reservation or borrowing for this book.")

        attempts = self.abuse.is_suspicious(user_id, now)
        if attempts is not None:
            flagged_id = self.abuse.flag(member, book, attempts, now)
            return ReservationResult(
                success=False,
                error_code=ErrorCode.SUSPICIOUS_ACTIVITY,
                message="We detected unusual activity. Please wait a moment before trying again.",
                reservation_id=flagged_id,
            )

        reservation = Reservation(
            user_id=user_id,
            book_id=book_id,
            book_title=book.get("title"),
            reservation_date=now,
        )
        reservation_id = create_document("reservation", reservation, database=self.database)

        # A concurrent request for the same pair may have slipped past the duplicate check.
        # The newcomer always yields; if both yield the pair is left with none, never two.
        others = [r for r in self._active_for_pair(user_id, book_id) if str(r["_id"]) != reservation_id]
        if others:
            self.machine.apply(reservation_id, Event.CANCEL, {"notes": "Duplicate reservation request"}, now=now)
            logger.warning("Cancelled duplicate reservation %s for user %s, book %s", reservation_id, user_id, book_id)
            return _fail(ErrorCode.DUPLICATE_RESERVATION, "You already have a reservation or borrowing for this book.")

        logger.info("Pending reservation %s created for user %s, book '%s' (available copies: %s)",
                    reservation_id, user_id, book.get("title"), book.get("available_copies"))
        self.notifier.notify(user_id, NotificationKind.RESERVATION_CREATED, {
            "book_title": book.get("title"),
            "reservation_id": reservation_id,
        })
        self.notifier.notify_staff(NotificationKind.LIBRARIAN_RESERVATION_ALERT, {
            "student_name": MemberDirectory.display_name(member),
            "student_number": member.get("student_number") or "N/A",
            "book_title": book.get("title"),
            "reservation_id": reservation_id,
        })
        return ReservationResult(success=True, message="Book reservation submitted successfully!",
                                 reservation_id=reservation_id)

    # ----------------------
    # Approval and pickup
    # ----------------------

    def approve(self, reservation_id: Any, staff_id: Optional[str] = None, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        reservation = self.machine.get(reservation_id)
        if reservation is None or not can_apply(reservation.get("status"), Event.APPROVE):
            return False
        book = self.catalog.resolve(reservation["book_id"])
        if book is None or not Catalog.is_reservable(book) or book.get("available_copies", 0) <= 0:
            return False

        before = self.machine.apply(reservation_id, Event.APPROVE, {
            "approval_date": now,
            "approved_by": staff_id,
            "inventory_hold_active": False,
            "pickup_reminder_sent": False,
        }, now=now)
        if before is None:
            return False
        self.notifier.notify(reservation["user_id"], NotificationKind.RESERVATION_APPROVED, {
            "book_title": book.get("title"),
            "reservation_id": str(reservation["_id"]),
            "pickup_deadline": now + self.settings.pickup_window,
        })
        return True

    def mark_borrowed(self, reservation_id: Any, staff_id: Optional[str] = None,
                      now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        reservation = self.machine.get(reservation_id)
        if reservation is None or not can_apply(reservation.get("status"), Event.MARK_BORROWED):
            return False
        book = self.catalog.resolve(reservation["book_id"])
        if book is None or not Catalog.is_reservable(book):
            return False
        book_id = str(book["_id"])

        holding = bool(reservation.get("inventory_hold_active"))
        took_copy = False
        if not holding:
            if not self.ledger.try_decrement_available(book_id):
                logger.info("Pickup refused for reservation %s: '%s' is no longer available",
                            reservation_id, book.get("title"))
                return False
            took_copy = True

        due_date = now + self.settings.loan_period
        before = self.machine.apply(reservation_id, Event.MARK_BORROWED, {
            "due_date": due_date,
            "borrow_date": now,
            "borrowed_by": staff_id,
            "inventory_hold_active": False,
        }, guard={"inventory_hold_active": holding}, now=now)
        if before is None:
            if took_copy:
                self.ledger.compensate_decrement(book_id, f"pickup of reservation {reservation_id}")
            return False

        self.notifier.notify(reservation["user_id"], NotificationKind.BOOK_BORROWED, {
            "book_title": book.get("title"),
            "reservation_id": str(reservation["_id"]),
            "due_date": due_date,
        })
        return True

    # ----------------------
    # Cancel / reject / expire
    # ----------------------

    def _release_hold(self, before: Dict[str, Any]) -> bool:
        if not before.get("inventory_hold_active"):
            return False
        if not self.ledger.increment_available(before["book_id"]):
            logger.critical("Released hold for reservation %s but book %s was not updated",
                            before["_id"], before["book_id"])
            return False
        logger.info("Released held copy of book %s from reservation %s", before["book_id"], before["_id"])
        return True

    def cancel(self, reservation_id: Any, by_user_id: Optional[str] = None, reason: Optional[str] = None,
               now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        before = self.machine.apply(reservation_id, Event.CANCEL, {
            "inventory_hold_active": False,
            "notes": reason or "Reservation cancelled",
        }, now=now)
        if before is None:
            return False
        released = self._release_hold(before)
        if by_user_id != before["user_id"]:
            self.notifier.notify(before["user_id"], NotificationKind.RESERVATION_CANCELLED, {
                "book_title": before.get("book_title"),
                "reason": reason or "Reservation cancelled",
            })
        if released:
            self.advancer.approve_next_and_hold(before["book_id"], now=now)
        return True

    def reject(self, reservation_id: Any, staff_id: Optional[str] = None, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        before = self.machine.apply(reservation_id, Event.REJECT, {
            "rejected_by": staff_id,
            "inventory_hold_active": False,
            "notes": "Reservation rejected",
        }, now=now)
        if before is None:
            return False
        released = self._release_hold(before)
        self.notifier.notify(before["user_id"], NotificationKind.RESERVATION_REJECTED, {
            "book_title": before.get("book_title"),
        })
        if released:
            self.advancer.approve_next_and_hold(before["book_id"], now=now)
        return True

    def expire_pickup(self, reservation_id: Any, now: Optional[datetime] = None) -> bool:
        """Cancel an Approved reservation whose pickup window has lapsed."""
        now = now or datetime.utcnow()
        minutes = self.settings.pickup_window_minutes
        before = self.machine.apply(reservation_id, Event.EXPIRE, {
            "inventory_hold_active": False,
            "notes": f"Auto-cancelled: not picked up within {minutes:g} minute(s)",
        }, guard={"approval_date": {"$lt": now - self.settings.pickup_window}}, now=now)
        if before is None:
            return False
        self._release_hold(before)
        self.notifier.notify(before["user_id"], NotificationKind.RESERVATION_EXPIRED, {
            "book_title": before.get("book_title"),
            "reservation_id": str(before["_id"]),
        })
        advanced = self.advancer.approve_next_and_hold(before["book_id"], now=now)
        logger.info("Queue advancement for book %s after expiry: %s", before["book_id"],
                    "next student approved" if advanced else "nothing to advance")
        return True

    # ----------------------
    # Renewal
    # ----------------------

    def validate_renewal(self, reservation_id: Any, now: Optional[datetime] = None) -> RenewalCheck:
        now = now or datetime.utcnow()
        reservation = self.machine.get(reservation_id)
        if reservation is None:
            return RenewalCheck(is_valid=False, message="Reservation not found.", reason="NotFound")
        if not can_apply(reservation.get("status"), Event.REQUEST_RENEWAL):
            return RenewalCheck(is_valid=False, message="Only borrowed books can be renewed.", reason="NotBorrowed")
        due_date = reservation.get("due_date")
        if due_date is not None and due_date <= now:
            return RenewalCheck(
                is_valid=False,
                message="This book is due or already overdue. Renewal is not allowed with no time remaining.",
                reason="DueReached",
            )
        unpaid = self.penalties.unpaid_of_types(reservation["user_id"], RENEWAL_BLOCKING_PENALTIES)
        if unpaid:
            kinds = ", ".join(sorted({p["penalty_type"] for p in unpaid}))
            return RenewalCheck(
                is_valid=False,
                message=f"You have unpaid penalties ({kinds}). Please settle all penalties before requesting a renewal.",
                reason="HasPenalties",
            )
        return RenewalCheck(is_valid=True, message="You are eligible to request a renewal.", reason="Valid")

    def request_renewal(self, reservation_id: Any, user_id: Optional[str] = None,
                        now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        check = self.validate_renewal(reservation_id, now)
        if not check.is_valid:
            logger.info("Renewal refused for reservation %s: %s", reservation_id, check.reason)
            return False
        reservation = self.machine.get(reservation_id)
        if user_id is not None and reservation["user_id"] != str(user_id):
            return False
        guard = {"due_date": {"$gt": now}} if reservation.get("due_date") is not None else None
        before = self.machine.apply(reservation_id, Event.REQUEST_RENEWAL, guard=guard, now=now)
        if before is None:
            return False
        self.notifier.notify(before["user_id"], NotificationKind.RENEWAL_REQUESTED, {
            "book_title": before.get("book_title"),
        })
        return True

    def approve_renewal(self, reservation_id: Any, staff_id: Optional[str] = None,
                        now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        reservation = self.machine.get(reservation_id)
        if reservation is None or not can_apply(reservation.get("status"), Event.APPROVE_RENEWAL):
            return False
        current_due = reservation.get("due_date")
        new_due = (current_due or now) + self.settings.renewal_period
        before = self.machine.apply(reservation_id, Event.APPROVE_RENEWAL, {
            "due_date": new_due,
            "notes": "Renewal approved by librarian",
            "approved_by": staff_id,
        }, guard={"due_date": current_due}, now=now)
        if before is None:
            return False
        self.notifier.notify(before["user_id"], NotificationKind.RENEWAL_APPROVED, {
            "book_title": before.get("book_title"),
            "due_date": new_due,
        })
        return True

    def reject_renewal(self, reservation_id: Any, staff_id: Optional[str] = None,
                       now: Optional[datetime] = None) -> bool:
        before = self.machine.apply(reservation_id, Event.REJECT_RENEWAL, {
            "notes": "Renewal request rejected by librarian",
        }, now=now)
        if before is None:
            return False
        self.notifier.notify(before["user_id"], NotificationKind.RENEWAL_REJECTED, {
            "book_title": before.get("book_title"),
        })
        return True
