"""
Full endpoint test suite for /bookings and /vehicles.

Testing strategy:
  - Auth/scope deps are overridden via conftest.build_app()
  - The store is an InMemoryBookingStore (no DB); gateway and notifier are fakes
  - Redis is patched out for every test by the autouse no_slots_cache fixture
"""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

from fastapi.testclient import TestClient

from app.deps import get_current_user
from app.schemas import BookingSlot
from app.scopes import BookingScope

from .factories import (
    BOOKING_ID,
    CUSTOMER_ID,
    OTHER_USER_ID,
    OTHER_VEHICLE_ID,
    PICKUP,
    RETURN,
    VEHICLE_ID,
    at,
    booking,
    callback_payload,
    make_customer,
    make_other_customer,
    order_payload,
    provider_order,
    vehicle,
    window_payload,
)
from .fakes import FakeGateway

# ---------------------------------------------------------------------------
# GET /vehicles/search
# ---------------------------------------------------------------------------


class TestVehicleSearch:
    def test_free_vehicles_listed(self, customer_client, store):
        store.vehicles[OTHER_VEHICLE_ID] = vehicle(id=OTHER_VEHICLE_ID, name="TVS Jupiter")
        store.bookings[BOOKING_ID] = booking()
        resp = customer_client.get("/vehicles/search", params=window_payload())
        assert resp.status_code == 200
        assert [v["id"] for v in resp.json()] == [str(OTHER_VEHICLE_ID)]

    def test_reversed_window_returns_422(self, customer_client):
        resp = customer_client.get(
            "/vehicles/search", params=window_payload(pickup=RETURN, return_=PICKUP)
        )
        assert resp.status_code == 422
        assert resp.json()["code"] == "validation_error"


# ---------------------------------------------------------------------------
# GET /bookings/slots, /bookings/availability, POST /bookings/quote
# ---------------------------------------------------------------------------


class TestSlotsAndAvailability:
    def test_slots_hide_user_identity(self, customer_client, store):
        store.bookings[BOOKING_ID] = booking(user_id=OTHER_USER_ID)
        resp = customer_client.get("/bookings/slots", params={"vehicle_id": str(VEHICLE_ID)})
        assert resp.status_code == 200
        data = resp.json()
        assert len(data) == 1
        assert "user_id" not in data[0]

    def test_returned_rentals_are_not_listed(self, customer_client, store):
        store.bookings[BOOKING_ID] = booking(pickup_at=at(-30), return_at=at(-27))
        resp = customer_client.get("/bookings/slots", params={"vehicle_id": str(VEHICLE_ID)})
        assert resp.json() == []

    def test_cached_slots_served(self, customer_client):
        from unittest.mock import AsyncMock, patch

        cached = [BookingSlot(vehicle_id=VEHICLE_ID, pickup_at=PICKUP, return_at=RETURN)]
        with patch("app.routers.booking.get_slots_cache", AsyncMock(return_value=cached)):
            resp = customer_client.get(
                "/bookings/slots", params={"vehicle_id": str(VEHICLE_ID)}
            )
        assert resp.status_code == 200
        assert len(resp.json()) == 1

    def test_available(self, customer_client):
        resp = customer_client.get(
            "/bookings/availability",
            params={"vehicle_id": str(VEHICLE_ID), **window_payload()},
        )
        assert resp.status_code == 200
        assert resp.json() == {"vehicle_id": str(VEHICLE_ID), "available": True}

    def test_unavailable(self, customer_client, store):
        store.bookings[BOOKING_ID] = booking()
        resp = customer_client.get(
            "/bookings/availability",
            params={"vehicle_id": str(VEHICLE_ID), **window_payload()},
        )
        assert resp.json()["available"] is False

    def test_store_outage_returns_503_not_unavailable(self, customer_client, store):
        store.broken = True
        resp = customer_client.get(
            "/bookings/availability",
            params={"vehicle_id": str(VEHICLE_ID), **window_payload()},
        )
        assert resp.status_code == 503
        assert resp.json()["code"] == "store_error"

    def test_quote(self, customer_client):
        resp = customer_client.post(
            "/bookings/quote",
            json={"vehicle_id": str(VEHICLE_ID), **window_payload(PICKUP, at(75.5))},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["hours"] == 4
        assert data["currency"] == "INR"

    def test_quote_unknown_vehicle_404(self, customer_client):
        resp = customer_client.post(
            "/bookings/quote", json={"vehicle_id": str(uuid4()), **window_payload()}
        )
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# POST /bookings/orders and /bookings/confirm
# ---------------------------------------------------------------------------


class TestOrders:
    def test_order_created(self, customer_client):
        resp = customer_client.post("/bookings/orders", json=order_payload())
        assert resp.status_code == 201
        data = resp.json()
        assert data["order_id"] == "order_1"
        assert data["amount"] == 30000
        assert data["key_id"] == "rzp_test_key"

    def test_taken_slot_returns_409_before_any_order(self, customer_client, store, gateway):
        store.bookings[BOOKING_ID] = booking(user_id=OTHER_USER_ID)
        resp = customer_client.post("/bookings/orders", json=order_payload())
        assert resp.status_code == 409
        assert resp.json()["code"] == "availability_conflict"
        assert gateway.orders == []

    def test_short_window_returns_422(self, customer_client):
        payload = order_payload(return_at=(PICKUP + timedelta(hours=2)).isoformat())
        resp = customer_client.post("/bookings/orders", json=payload)
        assert resp.status_code == 422

    def test_naive_datetime_returns_422(self, customer_client):
        payload = order_payload(pickup_at=PICKUP.replace(tzinfo=None).isoformat())
        resp = customer_client.post("/bookings/orders", json=payload)
        assert resp.status_code == 422

    def test_gateway_down_returns_502(self, client_factory):
        client = client_factory(make_customer(), gateway=FakeGateway(fail=True))
        resp = client.post("/bookings/orders", json=order_payload())
        assert resp.status_code == 502

    def test_release_unknown_order(self, customer_client):
        resp = customer_client.post("/bookings/orders/order_x/release")
        assert resp.status_code == 200
        assert resp.json() == {"released": False}

    def test_missing_write_scope_returns_403(self, anon_app):
        async def _read_only():
            return make_customer(scopes=[BookingScope.READ])

        anon_app.dependency_overrides[get_current_user] = _read_only
        with TestClient(anon_app) as c:
            resp = c.post("/bookings/orders", json=order_payload())
        assert resp.status_code == 403


class TestConfirm:
    def test_confirmed_and_notified(self, customer_client, store, gateway, notifier):
        gateway.orders.append(provider_order())
        resp = customer_client.post("/bookings/confirm", json=callback_payload())
        assert resp.status_code == 200
        data = resp.json()
        assert data["state"] == "confirmed"
        assert data["conflict_error"] is False
        assert data["booking"]["status"] == "confirmed"
        assert data["booking"]["user_id"] == str(CUSTOMER_ID)
        assert len(store.bookings) == 1
        assert [kind for kind, _ in notifier.sent] == ["booking_confirmed"]

    def test_tampered_signature_returns_400(self, customer_client, store):
        resp = customer_client.post(
            "/bookings/confirm", json=callback_payload(signature="0" * 64)
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "payment_verification_failed"
        assert store.bookings == {}

    def test_lost_race_returns_409_with_refund_message(
        self, customer_client, store, gateway, notifier
    ):
        gateway.orders.append(provider_order())
        store.bookings[BOOKING_ID] = booking(user_id=OTHER_USER_ID)
        resp = customer_client.post("/bookings/confirm", json=callback_payload())
        assert resp.status_code == 409
        data = resp.json()
        assert data["conflict_error"] is True
        assert data["payment_id"] == "pay_1"
        assert "refunded" in data["message"]
        assert notifier.sent == []

    def test_callback_for_a_longer_window_than_ordered_returns_400(
        self, customer_client, store, gateway
    ):
        gateway.orders.append(provider_order())
        resp = customer_client.post(
            "/bookings/confirm",
            json=callback_payload(return_at=(PICKUP + timedelta(hours=100)).isoformat()),
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "payment_verification_failed"
        assert store.bookings == {}

    def test_second_customer_after_first_commits(self, store, notifier, client_factory):
        first = client_factory(make_customer())
        second = client_factory(make_other_customer())

        # Both opened orders while the slot was free
        assert first.post("/bookings/orders", json=order_payload()).status_code == 201
        assert second.post("/bookings/orders", json=order_payload()).status_code == 201

        ok = first.post("/bookings/confirm", json=callback_payload(order_id="order_1"))
        lost = second.post(
            "/bookings/confirm",
            json=callback_payload(order_id="order_2", payment_id="pay_2"),
        )
        assert ok.status_code == 200
        assert lost.status_code == 409
        assert len(store.bookings) == 1


# ---------------------------------------------------------------------------
# GET /bookings, GET /bookings/{id}
# ---------------------------------------------------------------------------


class TestReadBookings:
    def test_customer_sees_only_own(self, customer_client, store):
        store.bookings[BOOKING_ID] = booking()
        other = booking(id=uuid4(), user_id=OTHER_USER_ID, vehicle_id=OTHER_VEHICLE_ID)
        store.bookings[other.id] = other
        resp = customer_client.get("/bookings/")
        assert resp.status_code == 200
        assert [b["id"] for b in resp.json()] == [str(BOOKING_ID)]

    def test_admin_sees_all(self, admin_client, store):
        store.bookings[BOOKING_ID] = booking()
        other = booking(id=uuid4(), user_id=OTHER_USER_ID, vehicle_id=OTHER_VEHICLE_ID)
        store.bookings[other.id] = other
        resp = admin_client.get("/bookings/")
        assert len(resp.json()) == 2

    def test_status_filter(self, customer_client, store):
        store.bookings[BOOKING_ID] = booking()
        resp = customer_client.get("/bookings/", params={"status": "cancelled"})
        assert resp.json() == []

    def test_get_own_booking(self, customer_client, store):
        store.bookings[BOOKING_ID] = booking()
        resp = customer_client.get(f"/bookings/{BOOKING_ID}")
        assert resp.status_code == 200
        assert resp.json()["id"] == str(BOOKING_ID)

    def test_other_users_booking_404(self, client_factory, store):
        store.bookings[BOOKING_ID] = booking()
        resp = client_factory(make_other_customer()).get(f"/bookings/{BOOKING_ID}")
        assert resp.status_code == 404

    def test_missing_auth_headers_returns_422(self, anon_app):
        with TestClient(anon_app) as c:
            resp = c.get("/bookings/")
        assert resp.status_code == 422

    def test_no_relevant_scope_returns_403(self, anon_app):
        async def _no_scope_user():
            return make_customer(scopes=["vehicles:read"])

        anon_app.dependency_overrides[get_current_user] = _no_scope_user
        with TestClient(anon_app) as c:
            resp = c.get("/bookings/")
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestCancelEndpoint:
    def test_cancel_with_reason(self, customer_client, store, notifier):
        store.bookings[BOOKING_ID] = booking()
        resp = customer_client.post(
            f"/bookings/{BOOKING_ID}/cancel", json={"reason": "trip postponed"}
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["booking"]["status"] == "cancelled"
        assert data["refund"]["percent"] == 100
        assert [kind for kind, _ in notifier.sent] == ["booking_cancelled"]

    def test_cancel_without_body(self, customer_client, store):
        store.bookings[BOOKING_ID] = booking()
        resp = customer_client.post(f"/bookings/{BOOKING_ID}/cancel")
        assert resp.status_code == 200

    def test_too_late_returns_400(self, customer_client, store):
        store.bookings[BOOKING_ID] = booking(pickup_at=at(1), return_at=at(4))
        resp = customer_client.post(f"/bookings/{BOOKING_ID}/cancel")
        assert resp.status_code == 400
        assert resp.json()["code"] == "policy_violation"

    def test_other_users_booking_404(self, client_factory, store):
        store.bookings[BOOKING_ID] = booking()
        resp = client_factory(make_other_customer()).post(f"/bookings/{BOOKING_ID}/cancel")
        assert resp.status_code == 404


class TestModifyEndpoint:
    def test_extend_rental(self, customer_client, store):
        store.bookings[BOOKING_ID] = booking()
        resp = customer_client.patch(
            f"/bookings/{BOOKING_ID}",
            json=window_payload(PICKUP, PICKUP + timedelta(hours=4)),
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["amount_difference"] == "100.00"
        assert data["booking"]["status"] == "pending"

    def test_conflict_returns_409(self, customer_client, store):
        store.bookings[BOOKING_ID] = booking()
        other = booking(
            id=uuid4(), user_id=OTHER_USER_ID, pickup_at=RETURN, return_at=RETURN + timedelta(hours=3)
        )
        store.bookings[other.id] = other
        resp = customer_client.patch(
            f"/bookings/{BOOKING_ID}",
            json=window_payload(PICKUP, RETURN + timedelta(hours=1)),
        )
        assert resp.status_code == 409

    def test_one_date_only_returns_422(self, customer_client, store):
        store.bookings[BOOKING_ID] = booking()
        resp = customer_client.patch(
            f"/bookings/{BOOKING_ID}", json={"pickup_at": PICKUP.isoformat()}
        )
        assert resp.status_code == 422


class TestStatusEndpoint:
    def test_admin_marks_picked_up(self, admin_client, store):
        store.bookings[BOOKING_ID] = booking()
        resp = admin_client.patch(f"/bookings/{BOOKING_ID}/status", json={"status": "active"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "active"

    def test_invalid_transition_returns_400(self, admin_client, store):
        store.bookings[BOOKING_ID] = booking(status="cancelled")
        resp = admin_client.patch(
            f"/bookings/{BOOKING_ID}/status", json={"status": "confirmed"}
        )
        assert resp.status_code == 400

    def test_customer_without_admin_scope_403(self, anon_app, store):
        store.bookings[BOOKING_ID] = booking()

        async def _customer():
            return make_customer()

        anon_app.dependency_overrides[get_current_user] = _customer
        with TestClient(anon_app) as c:
            resp = c.patch(f"/bookings/{BOOKING_ID}/status", json={"status": "active"})
        assert resp.status_code == 403
