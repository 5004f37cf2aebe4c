from datetime import timedelta

from schemas import NotificationKind


def test_lapsed_hold_is_cancelled_and_passed_on(engine, make_book, make_member, book_of, reservation_of, sink, now):
    book_id = make_book(copies=1)
    alice, bob = make_member(), make_member()
    first = engine.create_reservation(alice, book_id, now=now)
    second = engine.create_reservation(bob, book_id, now=now + timedelta(seconds=1))
    assert engine.approve_next_and_hold(book_id, now=now)

    later = now + timedelta(minutes=3)
    result = engine.run_expiry_sweep(now=later)

    assert result.cancelled == 1
    assert result.errors == 0
    expired = reservation_of(first.reservation_id)
    assert expired["status"] == "Cancelled"
    assert expired["inventory_hold_active"] is False
    assert "not picked up" in expired["notes"]
    nxt = reservation_of(second.reservation_id)
    assert nxt["status"] == "Approved"
    assert nxt["inventory_hold_active"] is True
    assert nxt["approval_date"] == later
    assert book_of(book_id)["available_copies"] == 0
    assert NotificationKind.RESERVATION_EXPIRED in sink.kinds_for(alice)


def test_lapsed_hold_with_empty_queue_restores_copy(engine, make_book, make_member, book_of, now):
    book_id = make_book(copies=1)
    engine.create_reservation(make_member(), book_id, now=now)
    engine.approve_next_and_hold(book_id, now=now)

    engine.run_expiry_sweep(now=now + timedelta(minutes=3))
    assert book_of(book_id)["available_copies"] == 1


def test_manual_approval_expiry_leaves_inventory(engine, make_book, make_member, book_of, reservation_of, now):
    book_id = make_book(copies=2)
    result = engine.create_reservation(make_member(), book_id, now=now)
    engine.approve_reservation(result.reservation_id, now=now)

    engine.run_expiry_sweep(now=now + timedelta(minutes=3))
    assert reservation_of(result.reservation_id)["status"] == "Cancelled"
    assert book_of(book_id)["available_copies"] == 2


def test_window_not_yet_lapsed(engine, make_book, make_member, reservation_of, now):
    result = engine.create_reservation(make_member(), make_book(), now=now)
    engine.approve_reservation(result.reservation_id, now=now)

    sweep = engine.run_expiry_sweep(now=now + timedelta(minutes=1))
    assert sweep.cancelled == 0
    assert reservation_of(result.reservation_id)["status"] == "Approved"


def test_pickup_reminder_is_sent_once(engine, make_book, make_member, sink, reservation_of, now):
    student = make_member()
    result = engine.create_reservation(student, make_book(), now=now)
    engine.approve_reservation(result.reservation_id, now=now)

    first = engine.run_expiry_sweep(now=now + timedelta(minutes=1))
    second = engine.run_expiry_sweep(now=now + timedelta(seconds=90))

    assert first.reminders == 1
    assert second.reminders == 0
    reminders = [n for n in sink.sent if n.kind == NotificationKind.PICKUP_REMINDER]
    assert len(reminders) == 1
    assert reminders[0].user_id == student
    assert reminders[0].payload["pickup_deadline"] == now + timedelta(minutes=2)
    assert reservation_of(result.reservation_id)["pickup_reminder_sent"] is True


def test_picked_up_reservation_is_not_expired(engine, borrow, reservation_of, now):
    reservation_id, _, _ = borrow(engine)
    assert not engine.reservations.expire_pickup(reservation_id, now=now + timedelta(minutes=3))
    assert reservation_of(reservation_id)["status"] == "Borrowed"


def test_one_bad_record_does_not_stop_the_sweep(engine, make_book, make_member, monkeypatch, now):
    for _ in range(2):
        result = engine.create_reservation(make_member(), make_book(), now=now)
        engine.approve_reservation(result.reservation_id, now=now)

    calls = []
    original = engine.reservations.expire_pickup

    def flaky(reservation_id, now=None):
        calls.append(reservation_id)
        if len(calls) == 1:
            raise RuntimeError("boom")
        return original(reservation_id, now=now)

    monkeypatch.setattr(engine.reservations, "expire_pickup", flaky)
    sweep = engine.run_expiry_sweep(now=now + timedelta(minutes=3))
    assert sweep.errors == 1
    assert sweep.cancelled == 1
