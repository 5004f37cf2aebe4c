import logging
import math
from datetime import datetime
from typing import Any, Optional, Union

from config import Settings
from ledger import InventoryLedger
from notifications import Notifier
from penalties import PenaltyService, format_amount
from schemas import NotificationKind, PenaltyType, ReturnCondition
from transitions import Event, ReservationStateMachine
from waitlist import QueueAdvancer

logger = logging.getLogger(__name__)

DAMAGE_DESCRIPTIONS = {
    ReturnCondition.DAMAGED_MINOR: "Minor damage to book",
    ReturnCondition.DAMAGED_MODERATE: "Moderate damage to book",
    ReturnCondition.DAMAGED_MAJOR: "Major damage to book",
}


def event_for(condition: ReturnCondition) -> Event:
    if condition is ReturnCondition.LOST:
        return Event.RETURN_LOST
    if condition.is_damaged:
        return Event.RETURN_DAMAGED
    return Event.RETURN_GOOD


class ReturnService:
    def __init__(self, settings: Settings, machine: ReservationStateMachine, ledger: InventoryLedger,
                 penalties: PenaltyService, advancer: QueueAdvancer, notifier: Notifier) -> None:
        self.settings = settings
        self.machine = machine
        self.ledger = ledger
        self.penalties = penalties
        self.advancer = advancer
        self.notifier = notifier

    def process_return(self, reservation_id: Any, condition: Union[ReturnCondition, str],
                       staff_id: Optional[str] = None, damage_penalty: Optional[float] = None,
                       lost_penalty: Optional[float] = None, now: Optional[datetime] = None) -> bool:
        """Close a Borrowed reservation and settle inventory and penalties for the returned copy."""
        now = now or datetime.utcnow()
        condition = ReturnCondition(condition)

        before = self.machine.apply(reservation_id, event_for(condition), {
            "return_date": now,
            "return_condition": condition.value,
            "processed_by": staff_id,
            "inventory_hold_active": False,
        }, now=now)
        if before is None:
            return False
        book_id = before["book_id"]

        back_on_shelf = condition is not ReturnCondition.LOST
        if back_on_shelf:
            if not self.ledger.increment_available(book_id):
                logger.critical("Return of reservation %s did not restore a copy of book %s",
                                reservation_id, book_id)
                back_on_shelf = False
        elif not self.ledger.decrement_total(book_id):
            logger.critical("Lost return of reservation %s did not reduce total copies of book %s",
                            reservation_id, book_id)

        total = self._settle_late_return(before, staff_id, now)
        if condition.is_damaged:
            fee = damage_penalty if damage_penalty is not None else self.settings.damage_fees.get(condition.value, 0)
            if fee > 0:
                self.penalties.issue(before, PenaltyType.DAMAGE, fee, DAMAGE_DESCRIPTIONS[condition], staff_id)
                total += fee
        elif condition is ReturnCondition.LOST:
            fee = lost_penalty if lost_penalty is not None else self.settings.lost_book_fee
            if fee > 0:
                self.penalties.issue(before, PenaltyType.LOST, fee, "Lost book", staff_id)
                total += fee

        if total > 0:
            self.penalties.refresh_member_status(before["user_id"], now)

        logger.info("Processed return of reservation %s (%s), penalties %s",
                    reservation_id, condition.value, format_amount(total))
        self.notifier.notify(before["user_id"], NotificationKind.BOOK_RETURNED, {
            "book_title": before.get("book_title"),
            "condition": condition.value,
            "penalty_total": format_amount(total),
        })

        if back_on_shelf:
            self.advancer.approve_next_and_hold(book_id, now=now)
        return True

    def _settle_late_return(self, reservation, staff_id: Optional[str], now: datetime) -> float:
        """Freeze the running overdue penalty, or charge a Late fee if none was accrued yet."""
        due_date = reservation.get("due_date")
        if due_date is None or due_date >= now:
            return 0.0
        elapsed = (now - due_date).total_seconds() / 60
        rate = self.settings.overdue_rate_per_minute
        if self.penalties.overdue_for(reservation["_id"]) is not None:
            minutes = int(math.floor(elapsed))
            amount, _ = self.penalties.upsert_overdue(reservation, minutes, minutes * rate, now)
            return amount
        minutes = int(math.ceil(elapsed))
        amount = minutes * rate
        if amount > 0:
            self.penalties.issue(reservation, PenaltyType.LATE, amount,
                                 f"{minutes} min(s) = {format_amount(amount)}", staff_id)
        return amount
