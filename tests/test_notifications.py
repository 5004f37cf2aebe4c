from datetime import datetime

from engine import ReservationEngine
from notifications import Notifier, render
from schemas import NotificationKind


class BrokenSink:
    def deliver(self, notification):
        raise ConnectionError("smtp down")


def test_render_fills_template():
    title, message = render(NotificationKind.BOOK_BORROWED, {
        "book_title": "Dune",
        "due_date": datetime(2026, 1, 15, 9, 0, 0),
    })
    assert title == "BOOK BORROWED!"
    assert message == "You borrowed 'Dune'. It is due on 2026-01-15T09:00:00."


def test_render_tolerates_missing_fields():
    _, message = render(NotificationKind.RESERVATION_CREATED, {})
    assert message == "Your reservation for '?' was received."


def test_broken_sink_does_not_block_reservations(database, settings, make_book, make_member, now):
    engine = ReservationEngine(database, settings, sink=BrokenSink())
    result = engine.create_reservation(make_member(), make_book(), now=now)
    assert result.success
    assert engine.approve_reservation(result.reservation_id, now=now)


def test_notify_requires_recipient(sink):
    notifier = Notifier(sink)
    assert not notifier.notify(None, NotificationKind.RESERVATION_CREATED)
    assert notifier.notify_staff(NotificationKind.SUSPICIOUS_ACTIVITY_ALERT) == 0
    assert sink.sent == []


def test_mongo_sink_stores_notifications(database, make_book, make_member, settings, now):
    engine = ReservationEngine(database, settings)
    student = make_member()
    engine.create_reservation(student, make_book(), now=now)

    stored = list(database["notification"].find({"user_id": student}))
    assert len(stored) == 1
    assert stored[0]["kind"] == "ReservationCreated"
    assert stored[0]["is_read"] is False
