"""
Notification delivery.

Delivery is fire-and-forget: a failing sink is logged and never propagates
into the transition that triggered it.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from pymongo.database import Database

from database import create_document
from schemas import Notification, NotificationKind

logger = logging.getLogger(__name__)


TEMPLATES = {
    NotificationKind.RESERVATION_CREATED: (
        "RESERVATION CONFIRMED!", "Your reservation for '{book_title}' was received."),
    NotificationKind.RESERVATION_APPROVED: (
        "RESERVATION APPROVED!", "'{book_title}' is ready for pickup until {pickup_deadline}."),
    NotificationKind.RESERVATION_REJECTED: (
        "RESERVATION REJECTED", "Your reservation for '{book_title}' was rejected."),
    NotificationKind.RESERVATION_CANCELLED: (
        "RESERVATION CANCELLED", "Your reservation for '{book_title}' was cancelled: {reason}"),
    NotificationKind.RESERVATION_EXPIRED: (
        "RESERVATION EXPIRED", "You did not pick up '{book_title}' in time; the reservation was cancelled."),
    NotificationKind.BOOK_BORROWED: (
        "BOOK BORROWED!", "You borrowed '{book_title}'. It is due on {due_date}."),
    NotificationKind.BOOK_RETURNED: (
        "BOOK RETURNED", "'{book_title}' was returned ({condition}). Penalties: {penalty_total}."),
    NotificationKind.PICKUP_REMINDER: (
        "PICKUP REMINDER", "Please pick up '{book_title}' before {pickup_deadline}."),
    NotificationKind.RENEWAL_REQUESTED: (
        "RENEWAL REQUESTED", "Your renewal request for '{book_title}' was submitted."),
    NotificationKind.RENEWAL_APPROVED: (
        "RENEWAL APPROVED", "'{book_title}' is now due on {due_date}."),
    NotificationKind.RENEWAL_REJECTED: (
        "RENEWAL REJECTED", "Your renewal request for '{book_title}' was rejected."),
    NotificationKind.PENALTY_ISSUED: (
        "PENALTY ISSUED", "A {penalty_type} penalty of {amount} was issued for '{book_title}'."),
    NotificationKind.PENALTY_PAID: (
        "PENALTY PAID", "Your penalty of {amount} for '{book_title}' was settled."),
    NotificationKind.LIBRARIAN_RESERVATION_ALERT: (
        "NEW RESERVATION", "{student_name} reserved '{book_title}'."),
    NotificationKind.SUSPICIOUS_ACTIVITY_ALERT: (
        "SUSPICIOUS ACTIVITY",
        "{student_name} attempted {attempts} reservations within {window_seconds} seconds ('{book_title}')."),
}


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return "?"


def render(kind: NotificationKind, payload: Dict[str, Any]) -> tuple:
    title, template = TEMPLATES[kind]
    values = _Blank({k: v.isoformat() if isinstance(v, datetime) else v for k, v in payload.items()})
    return title, template.format_map(values)


class MongoNotificationSink:
    """Stores notifications in the "notification" collection for the portal to show."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def deliver(self, notification: Notification) -> None:
        create_document("notification", notification, database=self.database)


class Notifier:
    def __init__(self, sink, staff_lookup=None) -> None:
        self.sink = sink
        self.staff_lookup = staff_lookup

    def notify(self, user_id: Optional[str], kind: NotificationKind, payload: Optional[Dict[str, Any]] = None) -> bool:
        if not user_id:
            return False
        payload = dict(payload or {})
        try:
            title, message = render(kind, payload)
            self.sink.deliver(Notification(user_id=str(user_id), kind=kind, title=title,
                                           message=message, payload=payload))
            return True
        except Exception as exc:
            logger.warning("Notification %s to %s dropped: %s", kind.value, user_id, exc)
            return False

    def notify_many(self, user_ids: Iterable[str], kind: NotificationKind,
                    payload: Optional[Dict[str, Any]] = None) -> int:
        return sum(1 for uid in user_ids if self.notify(uid, kind, payload))

    def notify_staff(self, kind: NotificationKind, payload: Optional[Dict[str, Any]] = None) -> int:
        if self.staff_lookup is None:
            return 0
        try:
            staff = self.staff_lookup()
        except Exception as exc:
            logger.warning("Could not load staff for %s alert: %s", kind.value, exc)
            return 0
        return self.notify_many(staff, kind, payload)
