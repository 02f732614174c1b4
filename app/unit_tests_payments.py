import hashlib
import hmac
import json
import re
from datetime import timedelta

import models_sqlalchemy as models

# ---------- TEST DATA HELPERS ----------

API = "/api/v1"

def create_booking(client, headers, hours_ahead=240, passengers=2):
    r = client.post(f"{API}/bookings", headers=headers, json={
        "from_location_id": "tar-1",
        "to_location_id": "ng-1",
        "departure_date": (models.utcnow() + timedelta(hours=hours_ahead)).isoformat(),
        "passengers": passengers,
        "trip_type": "one-way",
        "transport_type": "bus",
        "contact_info": {"email": "ada.travel@example.com", "phone": "08031234567"},
    })
    assert r.status_code == 201, r.text
    return r.json()["data"]["booking"]

def initialize(client, headers, booking_id, **metadata):
    return client.post(f"{API}/payments/initialize", headers=headers,
                       json={"booking_id": booking_id, "metadata": metadata})

def paid_booking(client, headers):
    booking = create_booking(client, headers)
    reference = initialize(client, headers, booking["id"]).json()["data"]["reference"]
    r = client.get(f"{API}/payments/verify/{reference}", headers=headers)
    assert r.status_code == 200, r.text
    return booking, r.json()["data"]["payment"]

def signed(event, secret="sk_test_secret"):
    body = json.dumps(event).encode()
    signature = hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()
    return body, {"x-paystack-signature": signature, "Content-Type": "application/json"}

# ---------- HAPPY PATH TESTS ----------

def test_initialize_payment(client, user_headers, gateway):
    booking = create_booking(client, user_headers)
    r = initialize(client, user_headers, booking["id"], channel="web")
    assert r.status_code == 200
    data = r.json()["data"]
    assert re.fullmatch(r"STAYA_\d+_[0-9a-f]{8}", data["reference"])
    assert data["authorization_url"].endswith(data["reference"])
    assert data["access_code"]
    assert data["payment"]["status"] == "pending"
    assert data["payment"]["amount"] == 17000
    assert data["payment"]["currency"] == "NGN"
    assert data["payment"]["metadata"]["channel"] == "web"

    call = gateway.initialized[0]
    assert call["amount_kobo"] == 1700000
    assert call["email"] == "ada.travel@example.com"
    assert call["callback_url"] == "http://frontend.test/payment/callback"
    assert call["metadata"]["booking_id"] == booking["id"]

def test_verify_payment_confirms_booking(client, db_session, user_headers, sent_emails):
    booking, payment = paid_booking(client, user_headers)
    assert payment["status"] == "success"

    stored = db_session.get(models.Booking, booking["id"])
    db_session.refresh(stored)
    assert stored.status == "confirmed"
    assert stored.payment_status == "paid"
    assert stored.payment_reference == payment["payment_reference"]
    templates = [e["template"] for e in sent_emails]
    assert "payment_confirmation" in templates
    assert "booking_confirmation" in templates

def test_verify_payment_twice_is_idempotent(client, user_headers, gateway, sent_emails):
    booking, payment = paid_booking(client, user_headers)
    emails_before = len(sent_emails)
    r = client.get(f"{API}/payments/verify/{payment['payment_reference']}", headers=user_headers)
    assert r.status_code == 200
    assert r.json()["data"]["payment"]["status"] == "success"
    assert gateway.verified == [payment["payment_reference"]]
    assert len(sent_emails) == emails_before

def test_webhook_charge_success(client, db_session, user_headers, gateway):
    booking = create_booking(client, user_headers)
    reference = initialize(client, user_headers, booking["id"]).json()["data"]["reference"]
    body, headers = signed({"event": "charge.success", "data": {"reference": reference}})
    r = client.post(f"{API}/payments/webhook/paystack", content=body, headers=headers)
    assert r.status_code == 200
    assert r.json()["success"] is True

    payment = db_session.query(models.Payment).filter_by(payment_reference=reference).one()
    db_session.refresh(payment)
    assert payment.status == "success"
    assert payment.booking.status == "confirmed"

def test_my_payments_and_lookup_by_reference(client, user_headers):
    booking, payment = paid_booking(client, user_headers)
    r = client.get(f"{API}/payments/my-payments", headers=user_headers)
    assert r.status_code == 200
    assert [p["id"] for p in r.json()["data"]["payments"]] == [payment["id"]]

    r2 = client.get(f"{API}/payments/reference/{payment['payment_reference']}", headers=user_headers)
    assert r2.status_code == 200
    assert r2.json()["data"]["payment"]["booking_id"] == booking["id"]

def test_admin_full_refund(client, db_session, user_headers, admin_headers):
    booking, payment = paid_booking(client, user_headers)
    r = client.post(f"{API}/payments/{payment['id']}/refund", headers=admin_headers, json={})
    assert r.status_code == 200
    refunded = r.json()["data"]["payment"]
    assert refunded["status"] == "refunded"
    assert refunded["metadata"]["refund_amount"] == 17000
    assert refunded["metadata"]["gateway_refund"] == "not_requested"
    assert "refund_date" in refunded["metadata"]

    stored = db_session.get(models.Booking, booking["id"])
    db_session.refresh(stored)
    assert stored.status == "cancelled"
    assert stored.payment_status == "refunded"
    assert stored.refund_amount == 17000

def test_admin_partial_refund(client, user_headers, admin_headers):
    booking, payment = paid_booking(client, user_headers)
    r = client.post(f"{API}/payments/{payment['id']}/refund", headers=admin_headers, json={"amount": 5000})
    assert r.status_code == 200
    assert r.json()["data"]["payment"]["metadata"]["refund_amount"] == 5000

def test_admin_lists_payments_and_stats(client, user_headers, admin_headers, gateway):
    paid_booking(client, user_headers)
    pending = create_booking(client, user_headers)
    initialize(client, user_headers, pending["id"])

    r = client.get(f"{API}/payments", headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["pagination"]["total"] == 2
    r2 = client.get(f"{API}/payments", headers=admin_headers, params={"status": "success"})
    assert len(r2.json()["data"]["payments"]) == 1

    stats = client.get(f"{API}/payments/stats/overview", headers=admin_headers).json()["data"]
    assert stats["total_payments"] == 2
    assert stats["successful_payments"] == 1
    assert stats["pending_payments"] == 1
    assert stats["total_amount"] == 17000

# ---------- EDGE CASE TESTS ----------

def test_initialize_for_someone_elses_booking(client, user_headers, stranger_headers):
    booking = create_booking(client, user_headers)
    r = initialize(client, stranger_headers, booking["id"])
    assert r.status_code == 404
    assert r.json()["error"] == "BOOKING_NOT_FOUND"

def test_initialize_already_paid_booking(client, user_headers):
    booking, payment = paid_booking(client, user_headers)
    r = initialize(client, user_headers, booking["id"])
    assert r.status_code == 400
    assert r.json()["error"] == "BOOKING_ALREADY_PAID"

def test_initialize_cancelled_booking(client, user_headers):
    booking = create_booking(client, user_headers)
    client.post(f"{API}/bookings/{booking['id']}/cancel", headers=user_headers)
    r = initialize(client, user_headers, booking["id"])
    assert r.status_code == 400
    assert r.json()["error"] == "BOOKING_NOT_PAYABLE"

def test_initialize_gateway_failure(client, db_session, user_headers, gateway):
    gateway.fail_initialize = True
    booking = create_booking(client, user_headers)
    r = initialize(client, user_headers, booking["id"])
    assert r.status_code == 502
    assert r.json()["error"] == "PAYSTACK_ERROR"
    payment = db_session.query(models.Payment).filter_by(booking_id=booking["id"]).one()
    db_session.refresh(payment)
    assert payment.status == "failed"

def test_verify_failed_charge(client, db_session, user_headers, gateway):
    booking = create_booking(client, user_headers)
    reference = initialize(client, user_headers, booking["id"]).json()["data"]["reference"]
    gateway.verify_status = "failed"
    r = client.get(f"{API}/payments/verify/{reference}", headers=user_headers)
    assert r.status_code == 400
    assert r.json()["error"] == "PAYMENT_FAILED"

    stored = db_session.get(models.Booking, booking["id"])
    db_session.refresh(stored)
    assert stored.status == "pending"
    assert stored.payment_status == "pending"

def test_verify_unknown_reference(client, user_headers):
    r = client.get(f"{API}/payments/verify/STAYA_0_deadbeef", headers=user_headers)
    assert r.status_code == 404

def test_payment_lookup_by_stranger_is_forbidden(client, user_headers, stranger_headers):
    booking, payment = paid_booking(client, user_headers)
    r = client.get(f"{API}/payments/reference/{payment['payment_reference']}", headers=stranger_headers)
    assert r.status_code == 403

def test_webhook_rejects_bad_signature(client, user_headers):
    booking = create_booking(client, user_headers)
    reference = initialize(client, user_headers, booking["id"]).json()["data"]["reference"]
    body, headers = signed({"event": "charge.success", "data": {"reference": reference}}, secret="wrong")
    r = client.post(f"{API}/payments/webhook/paystack", content=body, headers=headers)
    assert r.status_code == 401
    r2 = client.post(f"{API}/payments/webhook/paystack", content=body,
                     headers={"Content-Type": "application/json"})
    assert r2.status_code == 401

def test_webhook_ignores_other_events(client):
    body, headers = signed({"event": "transfer.success", "data": {"reference": "whatever"}})
    r = client.post(f"{API}/payments/webhook/paystack", content=body, headers=headers)
    assert r.status_code == 400
    assert r.json()["success"] is False

def test_webhook_unknown_reference(client):
    body, headers = signed({"event": "charge.success", "data": {"reference": "STAYA_0_00000000"}})
    r = client.post(f"{API}/payments/webhook/paystack", content=body, headers=headers)
    assert r.status_code == 400

def test_refund_more_than_paid(client, user_headers, admin_headers):
    booking, payment = paid_booking(client, user_headers)
    r = client.post(f"{API}/payments/{payment['id']}/refund", headers=admin_headers, json={"amount": 99999})
    assert r.status_code == 400
    assert r.json()["error"] == "VALIDATION_ERROR"

def test_refund_pending_payment(client, db_session, user_headers, admin_headers):
    booking = create_booking(client, user_headers)
    payment_id = initialize(client, user_headers, booking["id"]).json()["data"]["payment"]["id"]
    r = client.post(f"{API}/payments/{payment_id}/refund", headers=admin_headers, json={})
    assert r.status_code == 400
    assert r.json()["error"] == "PAYMENT_NOT_REFUNDABLE"

def test_refunded_payment_cannot_be_verified(client, user_headers, admin_headers):
    booking, payment = paid_booking(client, user_headers)
    client.post(f"{API}/payments/{payment['id']}/refund", headers=admin_headers, json={})
    r = client.get(f"{API}/payments/verify/{payment['payment_reference']}", headers=user_headers)
    assert r.status_code == 400
    assert r.json()["error"] == "PAYMENT_NOT_VERIFIABLE"

def test_refund_requires_admin(client, user_headers):
    booking, payment = paid_booking(client, user_headers)
    r = client.post(f"{API}/payments/{payment['id']}/refund", headers=user_headers, json={})
    assert r.status_code == 403

# ---------- LATE AND DUPLICATE CHARGES ----------

def test_charge_after_cancellation_is_flagged_for_refund(client, db_session, user_headers, sent_emails):
    booking = create_booking(client, user_headers)
    reference = initialize(client, user_headers, booking["id"]).json()["data"]["reference"]
    assert client.post(f"{API}/bookings/{booking['id']}/cancel", headers=user_headers).status_code == 200
    emails_before = len(sent_emails)

    body, headers = signed({"event": "charge.success", "data": {"reference": reference}})
    r = client.post(f"{API}/payments/webhook/paystack", content=body, headers=headers)
    assert r.status_code == 200

    payment = db_session.query(models.Payment).filter_by(payment_reference=reference).one()
    db_session.refresh(payment)
    assert payment.status == "success"
    assert payment.payment_metadata["needs_refund"] is True
    assert payment.payment_metadata["refund_reason"] == "booking_cancelled"
    stored = db_session.get(models.Booking, booking["id"])
    db_session.refresh(stored)
    assert stored.status == "cancelled"
    assert stored.payment_status == "pending"
    assert stored.payment_reference is None
    assert len(sent_emails) == emails_before

def test_second_charge_on_paid_booking_is_flagged(client, db_session, user_headers, admin_headers, sent_emails):
    booking = create_booking(client, user_headers)
    first = initialize(client, user_headers, booking["id"]).json()["data"]["reference"]
    second = initialize(client, user_headers, booking["id"]).json()["data"]["reference"]

    assert client.get(f"{API}/payments/verify/{first}", headers=user_headers).status_code == 200
    r = client.get(f"{API}/payments/verify/{second}", headers=user_headers)
    assert r.status_code == 200
    duplicate = r.json()["data"]["payment"]
    assert duplicate["status"] == "success"
    assert duplicate["metadata"]["needs_refund"] is True
    assert duplicate["metadata"]["refund_reason"] == "duplicate_payment"
    assert [e["template"] for e in sent_emails].count("booking_confirmation") == 1

    stored = db_session.get(models.Booking, booking["id"])
    db_session.refresh(stored)
    assert stored.status == "confirmed"
    assert stored.payment_reference == first

    # refunding the extra charge leaves the paid booking alone
    r2 = client.post(f"{API}/payments/{duplicate['id']}/refund", headers=admin_headers, json={})
    assert r2.status_code == 200
    assert r2.json()["data"]["payment"]["metadata"]["needs_refund"] is False
    db_session.refresh(stored)
    assert stored.status == "confirmed"
    assert stored.payment_status == "paid"
    assert stored.refund_amount is None

# ---------- END OF TEST SUITE ----------
