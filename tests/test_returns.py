from datetime import timedelta

import pytest

from schemas import NotificationKind


def penalties_of(database, user_id):
    return list(database["penalty"].find({"user_id": user_id}))


def test_good_return_on_time(engine, borrow, book_of, reservation_of, database, sink, now):
    reservation_id, user_id, book_id = borrow(engine)
    assert engine.process_return(reservation_id, "Good", staff_id="lib-1", now=now)

    doc = reservation_of(reservation_id)
    assert doc["status"] == "Returned"
    assert doc["return_date"] == now
    assert doc["return_condition"] == "Good"
    assert doc["processed_by"] == "lib-1"
    assert book_of(book_id)["available_copies"] == 1
    assert penalties_of(database, user_id) == []
    returned = [n for n in sink.sent if n.kind == NotificationKind.BOOK_RETURNED]
    assert returned[0].payload["penalty_total"] == "0.00"


@pytest.mark.parametrize("condition,fee", [
    ("Damaged-Minor", 50),
    ("Damaged-Moderate", 100),
    ("Damaged-Major", 200),
])
def test_damaged_return_charges_fee(engine, borrow, book_of, reservation_of, member_of, database, now,
                                    condition, fee):
    reservation_id, user_id, book_id = borrow(engine)
    assert engine.process_return(reservation_id, condition, now=now)

    assert reservation_of(reservation_id)["status"] == "Damaged"
    assert book_of(book_id)["available_copies"] == 1
    [penalty] = penalties_of(database, user_id)
    assert penalty["penalty_type"] == "Damage"
    assert penalty["amount"] == fee
    member = member_of(user_id)
    assert member["has_pending_penalties"] is True
    assert member["total_pending_penalties"] == fee


def test_damage_fee_can_be_overridden(engine, borrow, database, now):
    reservation_id, user_id, _ = borrow(engine)
    engine.process_return(reservation_id, "Damaged-Major", damage_penalty=75, now=now)
    assert penalties_of(database, user_id)[0]["amount"] == 75


def test_lost_book_leaves_circulation(engine, borrow, make_member, book_of, reservation_of, database, now):
    reservation_id, user_id, book_id = borrow(engine)
    waiting = engine.create_reservation(make_member(), book_id, now=now)

    assert engine.process_return(reservation_id, "Lost", now=now)
    assert reservation_of(reservation_id)["status"] == "Lost"
    book = book_of(book_id)
    assert book["total_copies"] == 0
    assert book["available_copies"] == 0
    [penalty] = penalties_of(database, user_id)
    assert penalty["penalty_type"] == "Lost"
    assert penalty["amount"] == 2000
    assert reservation_of(waiting.reservation_id)["status"] == "Pending"


def test_late_return_without_accrued_overdue(engine, borrow, database, now):
    reservation_id, user_id, _ = borrow(engine)
    engine.process_return(reservation_id, "Good", now=now + timedelta(seconds=90))

    [penalty] = penalties_of(database, user_id)
    assert penalty["penalty_type"] == "Late"
    assert penalty["amount"] == 20


def test_late_return_finalises_overdue_penalty(engine, borrow, database, member_of, now):
    reservation_id, user_id, _ = borrow(engine)
    engine.run_overdue_accrual_sweep(now=now + timedelta(minutes=5))
    engine.process_return(reservation_id, "Good", now=now + timedelta(minutes=7))

    [penalty] = penalties_of(database, user_id)
    assert penalty["penalty_type"] == "Overdue"
    assert penalty["amount"] == 70
    assert member_of(user_id)["total_pending_penalties"] == 70


def test_return_requires_borrowed(engine, make_book, make_member, now):
    result = engine.create_reservation(make_member(), make_book(), now=now)
    assert not engine.process_return(result.reservation_id, "Good", now=now)


def test_second_return_is_refused(engine, borrow, book_of, now):
    reservation_id, _, book_id = borrow(engine)
    assert engine.process_return(reservation_id, "Good", now=now)
    assert not engine.process_return(reservation_id, "Good", now=now)
    assert book_of(book_id)["available_copies"] == 1


def test_unknown_condition_is_rejected(engine, borrow, now):
    reservation_id, _, _ = borrow(engine)
    with pytest.raises(ValueError):
        engine.process_return(reservation_id, "Soggy", now=now)
