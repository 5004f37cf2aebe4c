import itertools
from dataclasses import replace
from datetime import datetime

import mongomock
import pytest
from bson import ObjectId

from config import Settings
from database import create_document
from engine import ReservationEngine
from schemas import Book, Member, MemberRole

NOW = datetime(2026, 1, 15, 9, 0, 0)


class RecordingSink:
    """Keeps every delivered notification in memory."""

    def __init__(self):
        self.sent = []

    def deliver(self, notification):
        self.sent.append(notification)

    def kinds_for(self, user_id):
        return [n.kind for n in self.sent if n.user_id == str(user_id)]


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def database():
    client = mongomock.MongoClient()
    return client["library_test"]


@pytest.fixture
def settings():
    return Settings(
        database_url=None,
        database_name=None,
        pickup_window_minutes=2,
        loan_period_minutes=0,
        renewal_period_days=14,
        overdue_rate_per_minute=10,
        lost_book_fee=2000,
        suspicious_window_seconds=10,
        suspicious_threshold=3,
        enable_sweeps=False,
    )


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def engine(database, settings, sink):
    return ReservationEngine(database, settings, sink=sink)


@pytest.fixture
def engine_with_loan(database, settings, sink):
    """Engine whose loans run for an hour, for renewal and on-time return cases."""
    return ReservationEngine(database, replace(settings, loan_period_minutes=60), sink=sink)


@pytest.fixture
def make_book(database):
    def _make(title="Dune", copies=1, **extra):
        book = Book(title=title, total_copies=copies, available_copies=copies, **extra)
        return create_document("book", book, database=database)
    return _make


@pytest.fixture
def make_member(database):
    counter = itertools.count(1)

    def _make(role=MemberRole.STUDENT, **extra):
        n = next(counter)
        extra.setdefault("name", f"Member {n}")
        extra.setdefault("email", f"member{n}@example.edu")
        if role == MemberRole.STUDENT:
            extra.setdefault("student_number", f"2026-{n:04d}")
        return create_document("member", Member(role=role, **extra), database=database)
    return _make


@pytest.fixture
def book_of(database):
    def _get(book_id):
        return database["book"].find_one({"_id": ObjectId(book_id)})
    return _get


@pytest.fixture
def reservation_of(database):
    def _get(reservation_id):
        return database["reservation"].find_one({"_id": ObjectId(reservation_id)})
    return _get


@pytest.fixture
def member_of(database):
    def _get(member_id):
        return database["member"].find_one({"_id": ObjectId(member_id)})
    return _get


@pytest.fixture
def borrow(make_member, make_book):
    """Walk a fresh member through reserve, approve and pickup at ``at``."""
    def _borrow(engine, book_id=None, user_id=None, at=NOW):
        user_id = user_id or make_member()
        book_id = book_id or make_book()
        result = engine.create_reservation(user_id, book_id, now=at)
        assert result.success, result.message
        assert engine.approve_reservation(result.reservation_id, now=at)
        assert engine.mark_as_borrowed(result.reservation_id, now=at)
        return result.reservation_id, user_id, book_id
    return _borrow
