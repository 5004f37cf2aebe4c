import threading
import time

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main
from engine import ReservationEngine


@pytest.fixture
def client(engine_with_loan):
    main.app.dependency_overrides[main.get_engine] = lambda: engine_with_loan
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()


@pytest.fixture
def book(client):
    response = client.post("/books", json={"title": "Dune", "author": "Frank Herbert", "total_copies": 1})
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def member(client):
    response = client.post("/members", json={"name": "Ada", "email": "ada@example.edu"})
    assert response.status_code == 200
    return response.json()


def reserve(client, member, book):
    return client.post("/reservations", json={"user_id": member["id"], "book_id": book["id"]})


def test_root(client):
    assert client.get("/").json() == {"message": "Library Reservation Backend is running"}


def test_create_book_starts_fully_available(book):
    assert book["total_copies"] == 1
    assert book["available_copies"] == 1


def test_member_is_created_once_per_email(client, member):
    again = client.post("/members", json={"name": "Ada L.", "email": "ada@example.edu"})
    assert again.json()["id"] == member["id"]
    assert member["role"] == "student"


def test_lifecycle_over_http(client, member, book):
    created = reserve(client, member, book)
    assert created.status_code == 200
    reservation = created.json()
    assert reservation["status"] == "Pending"
    rid = reservation["id"]

    assert client.post(f"/reservations/{rid}/approve", json={"staff_id": "lib-1"}).json()["status"] == "Approved"
    assert client.post(f"/reservations/{rid}/approve", json={}).status_code == 409

    borrowed = client.post(f"/reservations/{rid}/borrow", json={}).json()
    assert borrowed["status"] == "Borrowed"
    assert client.get(f"/books/{book['id']}").json()["available_copies"] == 0

    assert client.get(f"/reservations/{rid}/renewal").json()["is_valid"] is True
    assert client.post(f"/reservations/{rid}/renewal", json={"user_id": member["id"]}).json()["status"] \
        == "RenewalRequested"
    assert [r["id"] for r in client.get("/reservations/renewals").json()] == [rid]
    assert client.post(f"/reservations/{rid}/renewal/approve", json={}).json()["status"] == "Borrowed"

    returned = client.post(f"/reservations/{rid}/return", json={"condition": "Damaged-Minor"})
    assert returned.json()["status"] == "Damaged"

    penalties = client.get(f"/members/{member['id']}/penalties").json()
    assert penalties["total_pending"] == 50
    [penalty] = penalties["penalties"]
    paid = client.post(f"/penalties/{penalty['id']}/pay")
    assert paid.json()["is_paid"] is True
    assert client.post(f"/penalties/{penalty['id']}/pay").status_code == 409


def test_reservation_errors_map_to_status_codes(client, member, book):
    assert client.post("/reservations", json={"user_id": member["id"], "book_id": str(ObjectId())}).status_code == 404
    assert client.post("/reservations", json={"user_id": "nope", "book_id": book["id"]}).status_code == 400

    assert reserve(client, member, book).status_code == 200
    duplicate = reserve(client, member, book)
    assert duplicate.status_code == 400
    assert duplicate.json()["detail"]["error_code"] == "DUPLICATE_RESERVATION"


def test_burst_of_requests_is_throttled(client, member):
    codes = []
    for i in range(3):
        book = client.post("/books", json={"title": f"Book {i}"}).json()
        codes.append(reserve(client, member, book).status_code)
    assert codes == [200, 200, 429]


def test_unknown_and_malformed_ids(client):
    assert client.get(f"/reservations/{ObjectId()}").status_code == 404
    assert client.get("/reservations/not-an-id").status_code == 400
    assert client.get(f"/books/{ObjectId()}").status_code == 404
    assert client.post(f"/penalties/{ObjectId()}/pay").status_code == 404


def test_add_copies_serves_waitlist(client, member, book):
    other = client.post("/members", json={"name": "Grace", "email": "grace@example.edu"}).json()
    rid = reserve(client, member, book).json()["id"]
    client.post(f"/reservations/{rid}/approve", json={})
    client.post(f"/reservations/{rid}/borrow", json={})
    waiting = reserve(client, other, book).json()

    response = client.post(f"/books/{book['id']}/copies", json={"count": 1})
    assert response.json()["held_for_waitlist"] == 1
    assert client.get(f"/reservations/{waiting['id']}").json()["status"] == "Approved"


def test_manual_sweeps(client):
    expiry = client.post("/sweeps/expiry").json()
    assert expiry == {"skipped": False, "cancelled": 0, "reminders": 0, "errors": 0}
    overdue = client.post("/sweeps/overdue").json()
    assert overdue["skipped"] is False
    assert overdue["evaluated"] == 0


def test_engine_is_built_once_under_concurrent_requests(database, settings, monkeypatch):
    built = []

    def slow_engine(db, engine_settings):
        time.sleep(0.05)
        built.append(True)
        return ReservationEngine(db, engine_settings)

    monkeypatch.setattr(main, "db", database)
    monkeypatch.setattr(main, "_engine", None)
    monkeypatch.setattr(main, "ReservationEngine", slow_engine)

    results = []
    threads = [threading.Thread(target=lambda: results.append(main.get_engine())) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(built) == 1
    assert len(results) == 4
    assert all(result is results[0] for result in results)
