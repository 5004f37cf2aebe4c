from datetime import timedelta

from bson import ObjectId

from schemas import ErrorCode, NotificationKind


def test_paying_clears_member_flags(engine, borrow, make_book, member_of, database, sink, now):
    reservation_id, user_id, _ = borrow(engine)
    engine.process_return(reservation_id, "Damaged-Minor", now=now)
    penalty = database["penalty"].find_one({"user_id": user_id})
    assert engine.create_reservation(user_id, make_book("Emma"), now=now + timedelta(minutes=1)).error_code \
        == ErrorCode.UNPAID_PENALTIES

    assert engine.pay_penalty(str(penalty["_id"]), now=now)
    paid = database["penalty"].find_one({"_id": penalty["_id"]})
    assert paid["is_paid"] is True
    assert paid["payment_date"] == now
    member = member_of(user_id)
    assert member["has_pending_penalties"] is False
    assert member["total_pending_penalties"] == 0
    assert member["penalty_restriction_date"] is None
    assert NotificationKind.PENALTY_PAID in sink.kinds_for(user_id)
    assert engine.create_reservation(user_id, make_book("Emma"), now=now + timedelta(minutes=2)).success


def test_penalty_can_only_be_paid_once(engine, borrow, database, now):
    reservation_id, user_id, _ = borrow(engine)
    engine.process_return(reservation_id, "Lost", now=now)
    penalty_id = str(database["penalty"].find_one({"user_id": user_id})["_id"])
    assert engine.pay_penalty(penalty_id, now=now)
    assert not engine.pay_penalty(penalty_id, now=now)


def test_pay_unknown_penalty(engine):
    assert not engine.pay_penalty("bad-id")
    assert not engine.pay_penalty(str(ObjectId()))


def test_total_pending_counts_unpaid_only(engine, borrow, make_book, database, now):
    first_id, user_id, _ = borrow(engine)
    second_id, _, _ = borrow(engine, user_id=user_id, book_id=make_book("Emma"), at=now + timedelta(minutes=1))
    engine.process_return(first_id, "Damaged-Minor", now=now)
    engine.process_return(second_id, "Damaged-Major", now=now + timedelta(minutes=1))
    assert engine.penalties.total_pending(user_id) == 250

    cheapest = database["penalty"].find_one({"user_id": user_id, "amount": 50})
    engine.pay_penalty(str(cheapest["_id"]), now=now)
    assert engine.penalties.total_pending(user_id) == 200
    assert len(engine.member_penalties(user_id)) == 2


def test_penalty_issued_notification_carries_amount(engine, borrow, sink, now):
    reservation_id, user_id, _ = borrow(engine)
    engine.process_return(reservation_id, "Lost", now=now)
    [issued] = [n for n in sink.sent if n.kind == NotificationKind.PENALTY_ISSUED]
    assert issued.user_id == user_id
    assert issued.payload["amount"] == "2,000.00"
    assert "2,000.00" in issued.message
