"""
Overdue penalty accrual sweep.

The amount is recomputed from (now, due_date) on every run and overwritten,
never added to, so repeated ticks cannot double-count.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Set

from config import Settings
from penalties import PenaltyService
from schemas import ReservationStatus

logger = logging.getLogger(__name__)


def minutes_overdue(due_date: datetime, now: datetime) -> int:
    return int(math.floor((now - due_date).total_seconds() / 60))


@dataclass
class OverdueSweepResult:
    evaluated: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0


class OverdueAccrualProcessor:
    def __init__(self, settings: Settings, reservations_collection, penalties: PenaltyService) -> None:
        self.settings = settings
        self.reservations = reservations_collection
        self.penalties = penalties

    def run(self, now: Optional[datetime] = None) -> OverdueSweepResult:
        now = now or datetime.utcnow()
        result = OverdueSweepResult()
        touched: Set[str] = set()
        overdue = list(self.reservations.find({
            "status": ReservationStatus.BORROWED.value,
            "due_date": {"$lt": now},
        }))
        logger.debug("Found %d borrowed reservations past their due date", len(overdue))

        for reservation in overdue:
            result.evaluated += 1
            try:
                minutes = minutes_overdue(reservation["due_date"], now)
                if minutes <= 0:
                    continue
                amount = minutes * self.settings.overdue_rate_per_minute
                _, created = self.penalties.upsert_overdue(reservation, minutes, amount, now)
                if created:
                    result.created += 1
                else:
                    result.updated += 1
                touched.add(reservation["user_id"])
            except Exception:
                result.errors += 1
                logger.exception("Failed to accrue overdue penalty for reservation %s", reservation["_id"])

        for user_id in touched:
            try:
                self.penalties.refresh_member_status(user_id, now)
            except Exception:
                result.errors += 1
                logger.exception("Failed to refresh penalty status for user %s", user_id)

        logger.info("Overdue sweep complete: %d evaluated, %d created, %d updated, %d errors",
                    result.evaluated, result.created, result.updated, result.errors)
        return result
