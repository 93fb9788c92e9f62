"""
End-to-end tests for the seat booking HTTP API.
Covers catalog setup, allocation, cancellation, invalid input and store failure.
"""

from conftest import PRICES, SEAT_COUNT
from errors import StoreUnavailableError
from models import MAX_ID


def book(client, customer, counts, adjoining=False):
    return client.post("/bookings", json={"customer": customer, "counts": counts, "adjoining": adjoining})


def seat_status(client):
    resp = client.get("/seats")
    assert resp.status_code == 200
    return resp.get_json()


def verify_seat_invariant(client):
    status = seat_status(client)
    assert status["available_seats"] + status["booked_seats"] == status["total_seats"]
    assert status["invariants_valid"]
    return status


# ============================================================================
# TEST CATEGORY 1: Catalog & Availability
# ============================================================================

def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "healthy"


def test_price_list(client):
    data = client.get("/catalog/prices").get_json()
    assert data["prices"] == PRICES
    assert [c["id"] for c in data["categories"]] == [0, 1, 2]


def test_initialize_catalog(client):
    resp = client.post("/catalog/initialize", json={"seat_count": 5, "prices": [30, 15]})

    assert resp.status_code == 201
    assert client.get("/seats/available").get_json() == {"seats": [1, 2, 3, 4, 5], "count": 5}
    assert client.get("/catalog/prices").get_json()["prices"] == [30.0, 15.0]


def test_initialize_catalog_invalid(client):
    assert client.post("/catalog/initialize", json={"seat_count": "10", "prices": [1]}).status_code == 400
    assert client.post("/catalog/initialize", json={"seat_count": 10, "prices": []}).status_code == 400
    assert client.post("/catalog/initialize", json={"seat_count": 0, "prices": [1]}).status_code == 400
    assert client.post("/catalog/initialize", json={"seat_count": 10, "prices": [1], "names": "a"}).status_code == 400


def test_available_seats(client):
    data = client.get("/seats/available").get_json()
    assert data["seats"] == list(range(1, SEAT_COUNT + 1))


# ============================================================================
# TEST CATEGORY 2: Booking
# ============================================================================

def test_basic_booking(client):
    resp = book(client, "alice", [1, 1])

    assert resp.status_code == 201
    bookings = resp.get_json()["bookings"]
    assert [(b["seat"], b["category"], b["price"]) for b in bookings] == [(1, 0, 12.5), (2, 1, 8.0)]

    status = verify_seat_invariant(client)
    assert status["booked_seats"] == 2


def test_adjoining_booking(client):
    client.post("/bookings", json={"customer": "setup", "seats": [[1, 2, 6, 7, 12]]})

    resp = book(client, "bob", [4], adjoining=True)

    assert resp.status_code == 201
    assert [b["seat"] for b in resp.get_json()["bookings"]] == [8, 9, 10, 11]


def test_explicit_seat_booking(client):
    resp = client.post("/bookings", json={"customer": "carol", "seats": [[5], [3]]})

    assert resp.status_code == 201
    assert [(b["seat"], b["category"]) for b in resp.get_json()["bookings"]] == [(3, 1), (5, 0)]


def test_insufficient_seats(client):
    resp = book(client, "dave", [SEAT_COUNT + 1])

    assert resp.status_code == 409
    assert resp.get_json()["reason"] == "insufficient_seats"
    assert seat_status(client)["booked_seats"] == 0


def test_no_adjoining_block(client):
    client.post("/bookings", json={"customer": "setup", "seats": [[4, 8, 12]]})

    resp = book(client, "erin", [4], adjoining=True)

    assert resp.status_code == 409
    assert resp.get_json()["reason"] == "no_adjoining_block"


def test_explicit_seat_taken(client):
    client.post("/bookings", json={"customer": "frank", "seats": [[2]]})

    resp = client.post("/bookings", json={"customer": "gina", "seats": [[1, 2]]})

    assert resp.status_code == 409
    assert resp.get_json()["reason"] == "seat_unavailable"
    assert client.get("/bookings?customer=gina").get_json()["bookings"] == []


def test_zero_seat_booking(client):
    resp = book(client, "hank", [0, 0])
    assert resp.status_code == 201
    assert resp.get_json()["bookings"] == []


def test_invalid_booking_inputs(client):
    # not JSON
    assert client.post("/bookings", data="nope").status_code == 400
    # counts not an array
    assert client.post("/bookings", json={"customer": "x", "counts": 3}).status_code == 400
    # boolean count
    assert client.post("/bookings", json={"customer": "x", "counts": [True]}).status_code == 400
    # adjoining not a boolean
    assert client.post("/bookings", json={"customer": "x", "counts": [1], "adjoining": "yes"}).status_code == 400
    # seats entry not an array
    assert client.post("/bookings", json={"customer": "x", "seats": [1, 2]}).status_code == 400
    # customer missing
    assert client.post("/bookings", json={"counts": [1]}).status_code == 400

    resp = book(client, "", [1])
    assert resp.status_code == 400
    assert resp.get_json()["reason"] == "invalid_request"

    resp = book(client, "x", [1, -1])
    assert resp.status_code == 400

    resp = client.post("/bookings", json={"customer": "x", "seats": [[3, 3]]})
    assert resp.get_json()["reason"] == "duplicate_seat"

    assert seat_status(client)["booked_seats"] == 0


def test_get_bookings(client):
    book(client, "ivy", [2])
    book(client, "jack", [1])

    ivy = client.get("/bookings?customer=ivy").get_json()["bookings"]
    everyone = client.get("/bookings").get_json()["bookings"]

    assert [b["seat"] for b in ivy] == [1, 2]
    assert [b["seat"] for b in everyone] == [1, 2, 3]


# ============================================================================
# TEST CATEGORY 3: Cancellation
# ============================================================================

def test_cancel_bookings(client):
    bookings = book(client, "kim", [1, 1]).get_json()["bookings"]

    resp = client.post("/bookings/cancel", json={"bookings": bookings})

    assert resp.status_code == 200
    assert resp.get_json()["seats"] == [1, 2]
    assert client.get("/bookings?customer=kim").get_json()["bookings"] == []
    verify_seat_invariant(client)


def test_cancel_wrong_customer(client):
    bookings = book(client, "lee", [1]).get_json()["bookings"]
    forged = [dict(bookings[0], customer="mallory")]

    resp = client.post("/bookings/cancel", json={"bookings": forged})

    assert resp.status_code == 409
    assert resp.get_json()["reason"] == "booking_mismatch"
    assert client.get("/bookings?customer=lee").get_json()["bookings"] == bookings


def test_cancel_invalid_inputs(client):
    assert client.post("/bookings/cancel", json={"bookings": "all"}).status_code == 400
    assert client.post("/bookings/cancel", json={"bookings": [{"seat": "1", "customer": "a", "category": 0}]}).status_code == 400
    assert client.post("/bookings/cancel", json={"bookings": [{"seat": 1, "category": 0}]}).status_code == 400


def test_cancel_nothing(client):
    resp = client.post("/bookings/cancel", json={"bookings": []})
    assert resp.status_code == 200
    assert resp.get_json()["seats"] == []


# ============================================================================
# TEST CATEGORY 4: Administration & Failure
# ============================================================================

def test_reset(client):
    book(client, "ned", [3])

    resp = client.post("/reset")

    assert resp.status_code == 200
    assert resp.get_json()["bookings_cleared"] == 3
    assert seat_status(client)["available_seats"] == SEAT_COUNT


def test_reset_rejects_payload(client):
    assert client.post("/reset", json={"everything": True}).status_code == 400


def test_store_unavailable(client, db, monkeypatch):
    def broken():
        raise StoreUnavailableError("connection lost")

    monkeypatch.setattr(db, "get_seat_status", broken)

    resp = client.get("/seats")

    assert resp.status_code == 503
    assert resp.get_json()["error"] == "store unavailable"


def test_out_of_range_seat_ids(client):
    resp = client.post("/bookings", json={"customer": "omar", "seats": [[2 ** 64]]})
    assert resp.status_code == 400

    resp = client.post("/bookings", json={"customer": "omar", "seats": [[MAX_ID + 1]]})
    assert resp.status_code == 400

    resp = client.post("/bookings/cancel", json={"bookings": [{"seat": 2 ** 64, "customer": "omar", "category": 0}]})
    assert resp.status_code == 400

    resp = client.post("/bookings/cancel", json={"bookings": [{"seat": 1, "customer": "omar", "category": 2 ** 64}]})
    assert resp.status_code == 400

    assert seat_status(client)["booked_seats"] == 0


def test_default_app_seeds_demo_catalog(tmp_path, monkeypatch):
    import app as app_module

    monkeypatch.setattr(app_module, "DATABASE_URL", f"sqlite:///{tmp_path / 'default.db'}")
    flask_app = app_module.create_app()
    try:
        resp = flask_app.test_client().get("/seats/available")
        assert resp.status_code == 200
        assert resp.get_json()["count"] == app_module.DEMO_SEAT_COUNT
    finally:
        flask_app.extensions["seat_db"].close()
