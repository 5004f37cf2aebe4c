"""
Pickup-window sweep: auto-cancel lapsed approvals, then send pickup reminders.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from pymongo import ASCENDING, ReturnDocument

from config import Settings
from notifications import Notifier
from reservations import ReservationService
from schemas import NotificationKind, ReservationStatus

logger = logging.getLogger(__name__)


@dataclass
class ExpirySweepResult:
    cancelled: int = 0
    reminders: int = 0
    errors: int = 0


class ExpiryProcessor:
    def __init__(self, settings: Settings, reservations: ReservationService, notifier: Notifier) -> None:
        self.settings = settings
        self.reservations = reservations
        self.collection = reservations.machine.reservations
        self.notifier = notifier

    def run(self, now: Optional[datetime] = None) -> ExpirySweepResult:
        now = now or datetime.utcnow()
        result = ExpirySweepResult()
        self.cancel_expired(now, result)
        self.send_reminders(now, result)
        logger.info("Expiry sweep complete: %d auto-cancelled, %d reminders sent, %d errors",
                    result.cancelled, result.reminders, result.errors)
        return result

    def cancel_expired(self, now: datetime, result: ExpirySweepResult) -> None:
        cutoff = now - self.settings.pickup_window
        expired = list(self.collection.find({
            "status": ReservationStatus.APPROVED.value,
            "approval_date": {"$lt": cutoff},
        }).sort("approval_date", ASCENDING))
        logger.debug("Found %d approved reservations past their pickup window", len(expired))
        for reservation in expired:
            try:
                if self.reservations.expire_pickup(reservation["_id"], now=now):
                    result.cancelled += 1
            except Exception:
                result.errors += 1
                logger.exception("Failed to auto-cancel reservation %s", reservation["_id"])

    def send_reminders(self, now: datetime, result: ExpirySweepResult) -> None:
        due = list(self.collection.find({
            "status": ReservationStatus.APPROVED.value,
            "approval_date": {"$ne": None},
            "pickup_reminder_sent": {"$ne": True},
        }))
        for reservation in due:
            try:
                # claim the reminder first so it is sent at most once
                claimed = self.collection.find_one_and_update(
                    {"_id": reservation["_id"], "status": ReservationStatus.APPROVED.value,
                     "pickup_reminder_sent": {"$ne": True}},
                    {"$set": {"pickup_reminder_sent": True, "updated_at": now}},
                    return_document=ReturnDocument.AFTER,
                )
                if claimed is None:
                    continue
                deadline = claimed["approval_date"] + self.settings.pickup_window
                self.notifier.notify(claimed["user_id"], NotificationKind.PICKUP_REMINDER, {
                    "book_title": claimed.get("book_title"),
                    "reservation_id": str(claimed["_id"]),
                    "pickup_deadline": deadline,
                })
                result.reminders += 1
            except Exception:
                result.errors += 1
                logger.exception("Failed to send pickup reminder for reservation %s", reservation["_id"])
