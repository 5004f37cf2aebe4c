"""
Burst detection for reservation requests.

A sliding-window count over the user's own reservation records: reaching the
threshold (counting the request being made) turns the request into an inert
Flagged reservation and alerts staff.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pymongo.database import Database

from database import create_document
from members import MemberDirectory
from notifications import Notifier
from schemas import NotificationKind, Reservation, ReservationStatus

logger = logging.getLogger(__name__)


class AbuseDetector:
    def __init__(self, database: Database, notifier: Notifier, window: timedelta, threshold: int) -> None:
        self.database = database
        self.reservations = database["reservation"]
        self.notifier = notifier
        self.window = window
        self.threshold = threshold

    def attempts_in_window(self, user_id: str, now: datetime) -> int:
        """Attempts inside the window, including the one being made."""
        recent = self.reservations.count_documents({
            "user_id": user_id,
            "reservation_date": {"$gte": now - self.window},
        })
        return recent + 1

    def is_suspicious(self, user_id: str, now: datetime) -> Optional[int]:
        attempts = self.attempts_in_window(user_id, now)
        return attempts if attempts >= self.threshold else None

    def flag(self, member: Dict[str, Any], book: Dict[str, Any], attempts: int, now: datetime) -> str:
        """Record the attempt as a terminal Flagged reservation and alert every staff account."""
        window_seconds = int(self.window.total_seconds())
        user_id = str(member["_id"])
        flagged = Reservation(
            user_id=user_id,
            book_id=str(book["_id"]),
            book_title=book.get("title"),
            status=ReservationStatus.FLAGGED,
            reservation_date=now,
            is_suspicious=True,
            suspicious_reason=f"Detected {attempts} reservations within {window_seconds} seconds.",
            suspicious_detected_at=now,
            notes="Auto-flagged by security policy",
        )
        reservation_id = create_document("reservation", flagged, database=self.database)
        logger.warning("Suspicious activity from user %s: %d attempts in %ds, flagged reservation %s",
                       user_id, attempts, window_seconds, reservation_id)
        self.notifier.notify_staff(NotificationKind.SUSPICIOUS_ACTIVITY_ALERT, {
            "student_name": MemberDirectory.display_name(member),
            "student_number": member.get("student_number") or "N/A",
            "book_title": book.get("title"),
            "attempts": attempts,
            "window_seconds": window_seconds,
            "reservation_id": reservation_id,
        })
        return reservation_id
