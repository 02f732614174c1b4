import re
from datetime import timedelta

import pytest

import booking_service
import models_sqlalchemy as models

# ---------- TEST DATA HELPERS ----------

API = "/api/v1"

def create_booking_dict(hours_ahead=240, passengers=2, transport_type="bus", from_id="tar-1", to_id="ng-1", **extra):
    data = {
        "from_location_id": from_id,
        "to_location_id": to_id,
        "departure_date": (models.utcnow() + timedelta(hours=hours_ahead)).isoformat(),
        "passengers": passengers,
        "trip_type": "one-way",
        "transport_type": transport_type,
        "contact_info": {"email": "ada.travel@example.com", "phone": "08031234567"},
    }
    data.update(extra)
    return data

def book(client, headers, **kwargs):
    r = client.post(f"{API}/bookings", headers=headers, json=create_booking_dict(**kwargs))
    assert r.status_code == 201, r.text
    return r.json()["data"]["booking"]

# ---------- HAPPY PATH TESTS ----------

def test_create_booking(client, user, user_headers):
    r = client.post(f"{API}/bookings", headers=user_headers, json=create_booking_dict(special_requests="Window seat"))
    assert r.status_code == 201
    booking = r.json()["data"]["booking"]
    assert booking["user_id"] == user.id
    assert booking["route_id"] == "tar-jalingo-abuja"
    assert booking["status"] == "pending"
    assert booking["payment_status"] == "pending"
    assert booking["total_price"] == 17000
    assert booking["selected_transport"]["operator"] == "ABC Transport"
    assert booking["special_requests"] == "Window seat"
    assert re.fullmatch(r"\d{8}[0-9A-Z]{4}", booking["booking_reference"])
    assert booking["formatted_reference"] == f"STAYA-{booking['booking_reference']}"

def test_booking_found_in_reverse_direction(client, user_headers):
    booking = book(client, user_headers, from_id="ng-1", to_id="tar-1")
    assert booking["route_id"] == "tar-jalingo-abuja"
    assert booking["from_location_id"] == "ng-1"

def test_booking_with_operator_and_round_trip(client, user_headers):
    departure = models.utcnow() + timedelta(days=5)
    data = create_booking_dict(
        transport_type="flight",
        operator_name="Air Peace",
        passengers=1,
        trip_type="round-trip",
        return_date=(departure + timedelta(days=3)).isoformat(),
    )
    data["departure_date"] = departure.isoformat()
    r = client.post(f"{API}/bookings", headers=user_headers, json=data)
    assert r.status_code == 201
    booking = r.json()["data"]["booking"]
    assert booking["total_price"] == 45000
    assert booking["trip_type"] == "round-trip"
    assert booking["return_date"] is not None

def test_my_bookings_and_status_filter(client, user_headers, stranger_headers):
    first = book(client, user_headers)
    book(client, user_headers, transport_type="car", passengers=1)
    book(client, stranger_headers)
    client.post(f"{API}/bookings/{first['id']}/cancel", headers=user_headers)

    r = client.get(f"{API}/bookings/my-bookings", headers=user_headers)
    assert r.status_code == 200
    assert len(r.json()["data"]["bookings"]) == 2

    r2 = client.get(f"{API}/bookings/my-bookings", headers=user_headers, params={"status": "cancelled"})
    assert [b["id"] for b in r2.json()["data"]["bookings"]] == [first["id"]]

def test_get_booking(client, user_headers):
    booking = book(client, user_headers)
    r = client.get(f"{API}/bookings/{booking['id']}", headers=user_headers)
    assert r.status_code == 200
    assert r.json()["data"]["booking"]["booking_reference"] == booking["booking_reference"]

def test_admin_can_read_any_booking(client, user_headers, admin_headers):
    booking = book(client, user_headers)
    r = client.get(f"{API}/bookings/{booking['id']}", headers=admin_headers)
    assert r.status_code == 200

def test_update_pending_booking_merges_contact_info(client, user_headers):
    booking = book(client, user_headers)
    r = client.put(f"{API}/bookings/{booking['id']}", headers=user_headers, json={
        "special_requests": "Extra legroom",
        "contact_info": {"emergency_contact": "07061234567"},
    })
    assert r.status_code == 200
    updated = r.json()["data"]["booking"]
    assert updated["special_requests"] == "Extra legroom"
    assert updated["contact_info"]["emergency_contact"] == "07061234567"
    assert updated["contact_info"]["email"] == "ada.travel@example.com"

def test_cancel_well_ahead_gives_full_refund(client, user_headers, sent_emails):
    booking = book(client, user_headers, hours_ahead=50)
    r = client.post(f"{API}/bookings/{booking['id']}/cancel", headers=user_headers)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["refund_percentage"] == 100
    assert data["refund_amount"] == 17000
    assert data["booking"]["status"] == "cancelled"
    assert data["booking"]["cancelled_at"] is not None
    assert sent_emails[-1]["template"] == "booking_cancellation"
    assert sent_emails[-1]["to"] == "ada.travel@example.com"

def test_cancel_between_one_and_two_days_gives_partial_refund(client, user_headers):
    booking = book(client, user_headers, hours_ahead=30)
    r = client.post(f"{API}/bookings/{booking['id']}/cancel", headers=user_headers)
    assert r.status_code == 200
    assert r.json()["data"]["refund_percentage"] == 75
    assert r.json()["data"]["refund_amount"] == 12750

def test_admin_moves_booking_through_status_machine(client, user_headers, admin_headers):
    booking = book(client, user_headers)
    url = f"{API}/bookings/{booking['id']}/status"
    r = client.put(url, headers=admin_headers, json={"status": "confirmed"})
    assert r.status_code == 200
    assert r.json()["data"]["booking"]["status"] == "confirmed"
    r2 = client.put(url, headers=admin_headers, json={"status": "completed"})
    assert r2.json()["data"]["booking"]["status"] == "completed"

def test_admin_lists_bookings_with_pagination(client, user_headers, stranger_headers, admin_headers):
    book(client, user_headers)
    book(client, user_headers, transport_type="car", passengers=1)
    book(client, stranger_headers)
    r = client.get(f"{API}/bookings", headers=admin_headers, params={"limit": 2})
    assert r.status_code == 200
    body = r.json()
    assert len(body["data"]["bookings"]) == 2
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}

    r2 = client.get(f"{API}/bookings", headers=admin_headers, params={"status": "confirmed"})
    assert r2.json()["data"]["bookings"] == []

def test_admin_booking_stats(client, db_session, user_headers, admin_headers):
    paid = book(client, user_headers)
    book(client, user_headers, transport_type="car", passengers=1)
    stored = db_session.get(models.Booking, paid["id"])
    stored.payment_status = "paid"
    stored.status = "confirmed"
    db_session.commit()

    r = client.get(f"{API}/bookings/stats/overview", headers=admin_headers)
    assert r.status_code == 200
    stats = r.json()["data"]
    assert stats["total_bookings"] == 2
    assert stats["by_status"]["pending"] == 1
    assert stats["by_status"]["confirmed"] == 1
    assert stats["by_status"]["cancelled"] == 0
    assert stats["total_revenue"] == 17000

# ---------- EDGE CASE TESTS ----------

def test_create_booking_requires_login(client):
    r = client.post(f"{API}/bookings", json=create_booking_dict())
    assert r.status_code == 401

def test_create_booking_in_the_past(client, user_headers):
    r = client.post(f"{API}/bookings", headers=user_headers, json=create_booking_dict(hours_ahead=-2))
    assert r.status_code == 400
    assert r.json()["error"] == "VALIDATION_ERROR"

def test_create_booking_return_before_departure(client, user_headers):
    data = create_booking_dict(trip_type="round-trip")
    data["return_date"] = (models.utcnow() + timedelta(hours=1)).isoformat()
    r = client.post(f"{API}/bookings", headers=user_headers, json=data)
    assert r.status_code == 400

def test_create_booking_same_origin_and_destination(client, user_headers):
    r = client.post(f"{API}/bookings", headers=user_headers, json=create_booking_dict(to_id="tar-1"))
    assert r.status_code == 400

def test_create_booking_unknown_route(client, user_headers):
    r = client.post(f"{API}/bookings", headers=user_headers, json=create_booking_dict(from_id="ng-2", to_id="ng-3"))
    assert r.status_code == 400
    assert r.json()["error"] == "ROUTE_NOT_FOUND"

def test_create_booking_transport_not_on_route(client, user_headers):
    r = client.post(f"{API}/bookings", headers=user_headers, json=create_booking_dict(transport_type="train"))
    assert r.status_code == 400
    assert r.json()["error"] == "TRANSPORT_NOT_AVAILABLE"

def test_create_booking_unknown_operator(client, user_headers):
    r = client.post(f"{API}/bookings", headers=user_headers,
                    json=create_booking_dict(transport_type="bus", operator_name="Nobody Motors"))
    assert r.status_code == 400
    assert r.json()["error"] == "TRANSPORT_NOT_AVAILABLE"

def test_create_booking_passenger_bounds(client, user_headers):
    for passengers in (0, 11):
        r = client.post(f"{API}/bookings", headers=user_headers, json=create_booking_dict(passengers=passengers))
        assert r.status_code == 400

def test_create_booking_invalid_contact_phone(client, user_headers):
    data = create_booking_dict()
    data["contact_info"]["phone"] = "12345"
    r = client.post(f"{API}/bookings", headers=user_headers, json=data)
    assert r.status_code == 400

def test_other_users_booking_is_not_found(client, user_headers, stranger_headers):
    booking = book(client, user_headers)
    r = client.get(f"{API}/bookings/{booking['id']}", headers=stranger_headers)
    assert r.status_code == 404
    assert r.json()["error"] == "BOOKING_NOT_FOUND"
    r2 = client.post(f"{API}/bookings/{booking['id']}/cancel", headers=stranger_headers)
    assert r2.status_code == 404

def test_update_non_pending_booking(client, user_headers, admin_headers):
    booking = book(client, user_headers)
    client.put(f"{API}/bookings/{booking['id']}/status", headers=admin_headers, json={"status": "confirmed"})
    r = client.put(f"{API}/bookings/{booking['id']}", headers=user_headers, json={"special_requests": "Late change"})
    assert r.status_code == 400
    assert r.json()["error"] == "BOOKING_UPDATE_NOT_ALLOWED"

def test_cancel_too_close_to_departure(client, user_headers):
    booking = book(client, user_headers, hours_ahead=10)
    r = client.post(f"{API}/bookings/{booking['id']}/cancel", headers=user_headers)
    assert r.status_code == 400
    assert r.json()["error"] == "CANCELLATION_NOT_ALLOWED"

def test_cancel_twice(client, user_headers):
    booking = book(client, user_headers)
    client.post(f"{API}/bookings/{booking['id']}/cancel", headers=user_headers)
    r = client.post(f"{API}/bookings/{booking['id']}/cancel", headers=user_headers)
    assert r.status_code == 400
    assert r.json()["error"] == "BOOKING_NOT_CANCELLABLE"

def test_admin_status_change_rejects_invalid_transition(client, user_headers, admin_headers):
    booking = book(client, user_headers)
    url = f"{API}/bookings/{booking['id']}/status"
    r = client.put(url, headers=admin_headers, json={"status": "completed"})
    assert r.status_code == 400
    assert r.json()["error"] == "INVALID_STATUS_TRANSITION"
    r2 = client.put(url, headers=admin_headers, json={"status": "shipped"})
    assert r2.status_code == 400
    assert r2.json()["error"] == "VALIDATION_ERROR"

def test_unknown_status_filter(client, user_headers, admin_headers):
    r = client.get(f"{API}/bookings/my-bookings", headers=user_headers, params={"status": "lost"})
    assert r.status_code == 400
    r2 = client.get(f"{API}/payments", headers=admin_headers, params={"status": "lost"})
    assert r2.status_code == 400

def test_admin_booking_endpoints_forbidden_for_users(client, user_headers):
    assert client.get(f"{API}/bookings", headers=user_headers).status_code == 403
    assert client.get(f"{API}/bookings/stats/overview", headers=user_headers).status_code == 403

def test_booking_reference_collisions_are_retried(db_session, user, monkeypatch):
    references = iter(["20300101AAAA", "20300101AAAA", "20300101BBBB"])
    monkeypatch.setattr(booking_service, "generate_booking_reference", lambda now=None: next(references))
    payload = booking_service.schemas.BookingCreate(**create_booking_dict())
    first = booking_service.create_booking(db_session, user, payload)
    second = booking_service.create_booking(db_session, user, payload)
    assert first.booking_reference == "20300101AAAA"
    assert second.booking_reference == "20300101BBBB"

def test_booking_reference_collisions_give_up(db_session, user, monkeypatch):
    monkeypatch.setattr(booking_service, "generate_booking_reference", lambda now=None: "20300101AAAA")
    payload = booking_service.schemas.BookingCreate(**create_booking_dict())
    booking_service.create_booking(db_session, user, payload)
    with pytest.raises(booking_service.BusinessRuleViolation) as exc:
        booking_service.create_booking(db_session, user, payload)
    assert exc.value.error == "BOOKING_CREATE_ERROR"
    assert exc.value.status_code == 500

def test_booking_on_deactivated_location(client, user_headers, admin_headers):
    client.delete(f"{API}/locations/ng-1", headers=admin_headers)
    r = client.post(f"{API}/bookings", headers=user_headers, json=create_booking_dict())
    assert r.status_code == 400
    assert r.json()["error"] == "LOCATION_NOT_AVAILABLE"
    r2 = client.post(f"{API}/bookings", headers=user_headers, json=create_booking_dict(from_id="tar-1", to_id="nowhere"))
    assert r2.status_code == 400
    assert r2.json()["error"] == "LOCATION_NOT_AVAILABLE"

def test_booking_reports_hours_until_departure(client, db_session, user_headers):
    booking = book(client, user_headers, hours_ahead=72)
    assert 71.9 < booking["hours_until_departure"] <= 72
    stored = db_session.get(models.Booking, booking["id"])
    assert 71.9 < stored.hours_until_departure <= 72

# ---------- CANCELLATION WINDOW ----------

def _stored_booking(db_session, user):
    payload = booking_service.schemas.BookingCreate(**create_booking_dict())
    return booking_service.create_booking(db_session, user, payload)

def test_cancel_exactly_two_days_out_gives_full_refund(db_session, user):
    booking = _stored_booking(db_session, user)
    now = booking.departure_date - timedelta(hours=48)
    result = booking_service.cancel_booking(db_session, booking.id, user, now=now)
    assert result["refund_percentage"] == 100
    assert result["refund_amount"] == 17000
    assert result["booking"].cancelled_at == now

def test_cancel_exactly_one_day_out_gives_partial_refund(db_session, user):
    booking = _stored_booking(db_session, user)
    result = booking_service.cancel_booking(db_session, booking.id, user, now=booking.departure_date - timedelta(hours=24))
    assert result["refund_percentage"] == 75
    assert result["refund_amount"] == 12750

def test_admin_cannot_cancel_inside_one_day(db_session, user, admin):
    booking = _stored_booking(db_session, user)
    with pytest.raises(booking_service.BusinessRuleViolation) as exc:
        booking_service.cancel_booking(db_session, booking.id, admin, now=booking.departure_date - timedelta(hours=20))
    assert exc.value.error == "CANCELLATION_NOT_ALLOWED"
    db_session.refresh(booking)
    assert booking.status == "pending"

# ---------- END OF TEST SUITE ----------
