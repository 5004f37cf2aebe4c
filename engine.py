from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from abuse import AbuseDetector
from catalog import Catalog
from config import Settings, settings as default_settings
from expiry import ExpiryProcessor, ExpirySweepResult
from ledger import InventoryLedger
from members import MemberDirectory
from notifications import MongoNotificationSink, Notifier
from overdue import OverdueAccrualProcessor, OverdueSweepResult
from penalties import PenaltyService
from reservations import ReservationService
from returns import ReturnService
from schemas import RenewalCheck, ReservationResult, ReturnCondition
from sweeps import SingleFlight
from transitions import ReservationStateMachine
from waitlist import QueueAdvancer


class ReservationEngine:
    """
    Wires the store-backed components together and exposes the lifecycle
    operations callers (HTTP handlers, schedulers) are meant to use.
    """

    def __init__(self, database: Database, settings: Optional[Settings] = None, sink=None) -> None:
        self.database = database
        self.settings = settings or default_settings

        # store-facing components
        self.members = MemberDirectory(database)
        self.catalog = Catalog(database)
        self.ledger = InventoryLedger(database)
        self.machine = ReservationStateMachine(database)
        self.notifier = Notifier(sink or MongoNotificationSink(database), staff_lookup=self.members.staff_ids)

        # services
        self.penalties = PenaltyService(database, self.notifier)
        self.advancer = QueueAdvancer(self.machine, self.ledger, self.catalog, self.notifier,
                                      self.settings.pickup_window)
        self.abuse = AbuseDetector(database, self.notifier, self.settings.suspicious_window,
                                   self.settings.suspicious_threshold)
        self.reservations = ReservationService(
            database, self.settings, self.machine, self.ledger, self.catalog, self.members,
            self.penalties, self.advancer, self.abuse, self.notifier,
        )
        self.returns = ReturnService(self.settings, self.machine, self.ledger, self.penalties,
                                     self.advancer, self.notifier)

        # sweeps
        self.expiry = ExpiryProcessor(self.settings, self.reservations, self.notifier)
        self.overdue = OverdueAccrualProcessor(self.settings, self.machine.reservations, self.penalties)
        self._expiry_flight = SingleFlight("expiry sweep", self.expiry.run)
        self._overdue_flight = SingleFlight("overdue accrual sweep", self.overdue.run)

    # ---- reservations
    def create_reservation(self, user_id: str, book_id: str, now: Optional[datetime] = None) -> ReservationResult:
        return self.reservations.create_reservation(user_id, book_id, now=now)

    def approve_reservation(self, reservation_id: str, staff_id: Optional[str] = None,
                            now: Optional[datetime] = None) -> bool:
        return self.reservations.approve(reservation_id, staff_id, now=now)

    def mark_as_borrowed(self, reservation_id: str, staff_id: Optional[str] = None,
                         now: Optional[datetime] = None) -> bool:
        return self.reservations.mark_borrowed(reservation_id, staff_id, now=now)

    def cancel_reservation(self, reservation_id: str, by_user_id: Optional[str] = None,
                           reason: Optional[str] = None, now: Optional[datetime] = None) -> bool:
        return self.reservations.cancel(reservation_id, by_user_id, reason, now=now)

    def reject_reservation(self, reservation_id: str, staff_id: Optional[str] = None,
                           now: Optional[datetime] = None) -> bool:
        return self.reservations.reject(reservation_id, staff_id, now=now)

    def approve_next_and_hold(self, book_id: str, now: Optional[datetime] = None) -> bool:
        return self.advancer.approve_next_and_hold(book_id, now=now)

    # ---- returns and renewals
    def process_return(self, reservation_id: str, condition: ReturnCondition, staff_id: Optional[str] = None,
                       damage_penalty: Optional[float] = None, lost_penalty: Optional[float] = None,
                       now: Optional[datetime] = None) -> bool:
        return self.returns.process_return(reservation_id, condition, staff_id,
                                           damage_penalty, lost_penalty, now=now)

    def validate_renewal(self, reservation_id: str, now: Optional[datetime] = None) -> RenewalCheck:
        return self.reservations.validate_renewal(reservation_id, now=now)

    def request_renewal(self, reservation_id: str, user_id: Optional[str] = None,
                        now: Optional[datetime] = None) -> bool:
        return self.reservations.request_renewal(reservation_id, user_id, now=now)

    def approve_renewal(self, reservation_id: str, staff_id: Optional[str] = None,
                        now: Optional[datetime] = None) -> bool:
        return self.reservations.approve_renewal(reservation_id, staff_id, now=now)

    def reject_renewal(self, reservation_id: str, staff_id: Optional[str] = None,
                       now: Optional[datetime] = None) -> bool:
        return self.reservations.reject_renewal(reservation_id, staff_id, now=now)

    # ---- inventory
    def add_copies(self, book_id: str, count: int, now: Optional[datetime] = None) -> int:
        """Acquire new copies, then hand them to the waitlist. Returns how many were held."""
        book = self.catalog.resolve(book_id)
        if book is None or not self.ledger.add_copies(book["_id"], count):
            return 0
        held = 0
        for _ in range(count):
            if not self.advancer.approve_next_and_hold(book["_id"], now=now):
                break
            held += 1
        return held

    # ---- penalties
    def pay_penalty(self, penalty_id: str, now: Optional[datetime] = None) -> bool:
        return self.penalties.mark_paid(penalty_id, now=now)

    def member_penalties(self, user_id: str) -> List[Dict[str, Any]]:
        return self.penalties.for_user(user_id)

    # ---- sweeps
    def run_expiry_sweep(self, now: Optional[datetime] = None) -> Optional[ExpirySweepResult]:
        return self._expiry_flight(now)

    def run_overdue_accrual_sweep(self, now: Optional[datetime] = None) -> Optional[OverdueSweepResult]:
        return self._overdue_flight(now)
