import hashlib
import hmac
import re
from datetime import datetime, timedelta
from unittest.mock import patch, MagicMock

import pytest
import requests

import booking_service
import config
import email_service
import models_sqlalchemy as models
import rate_limit
from errors import RateLimited
from paystack import PaystackClient, PaystackError
from travel_service import (
    TravelService, TARABA_ROUTES, demand_multiplier, round_to_increment, MIN_MULTIPLIER, MAX_MULTIPLIER,
)

NOW = datetime(2030, 6, 1, 12, 0, 0)

# ---------- PRICING ----------

def test_price_is_positive_multiple_of_increment():
    service = TravelService()
    for route in TARABA_ROUTES:
        for mode in route.transport_modes:
            for passengers in (1, 3, 10):
                for hours in (None, 5, 100, 1000):
                    departure = NOW + timedelta(hours=hours) if hours is not None else None
                    price = service.calculate_price(route.from_id, route.to_id, passengers, mode.type, departure, NOW)
                    assert price > 0
                    assert price % 500 == 0

def test_price_is_symmetric_and_deterministic():
    service = TravelService()
    departure = NOW + timedelta(days=10)
    forward = service.calculate_price("tar-1", "ng-2", 2, "flight", departure, NOW)
    backward = service.calculate_price("ng-2", "tar-1", 2, "flight", departure, NOW)
    assert forward == backward
    assert forward == service.calculate_price("tar-1", "ng-2", 2, "flight", departure, NOW)

def test_price_for_unknown_route_is_zero():
    assert TravelService().calculate_price("ng-2", "ng-3", 1) == 0

def test_price_for_inactive_route_is_zero():
    route = TARABA_ROUTES[0]
    inactive = type(route)(**{**route.__dict__, "is_active": False})
    service = TravelService([inactive])
    assert service.calculate_price(route.from_id, route.to_id, 1) == 0
    assert not service.is_route_available(route.from_id, route.to_id)

def test_price_uses_base_price_without_transport_type():
    # 3500 on an ordinary route, no date adjustment
    assert TravelService().calculate_price("tar-1", "tar-2", 1) == 3500

def test_demand_multiplier_adjustments():
    assert demand_multiplier("tar-jalingo-wukari") == 1.0
    assert demand_multiplier("tar-jalingo-abuja") == 1.1
    assert demand_multiplier("tar-jalingo-wukari", hours_until_departure=24) == 1.1
    assert demand_multiplier("tar-jalingo-wukari", hours_until_departure=24 * 40) == 0.9
    assert demand_multiplier("tar-jalingo-abuja", hours_until_departure=10, availability="limited") == 1.25

def test_demand_multiplier_bounds():
    for route in TARABA_ROUTES:
        for hours in (None, 1, 100, 5000):
            for availability in (None, "available", "limited"):
                value = demand_multiplier(route.id, hours, availability)
                assert MIN_MULTIPLIER <= value <= MAX_MULTIPLIER

def test_round_to_increment():
    assert round_to_increment(18700) == 18500
    assert round_to_increment(18750) == 19000
    assert round_to_increment(100) == 500

def test_transport_modes_and_duration_sentinels():
    service = TravelService()
    assert service.get_available_transport_modes("ng-2", "ng-3") == []
    assert service.get_estimated_duration("ng-2", "ng-3") == "N/A"
    assert [m.type for m in service.get_available_transport_modes("ng-1", "tar-1")] == ["bus", "flight", "car"]
    assert service.get_estimated_duration("tar-1", "ng-1", "flight") == "1h 15m"
    assert len(service.get_routes_from("tar-1")) == len(TARABA_ROUTES)

def test_service_reads_routes_from_database(db_session):
    service = TravelService.from_session(db_session)
    assert {r.id for r in service.routes} == {r.id for r in TARABA_ROUTES}
    assert service.find_route("ng-8", "tar-1").id == "tar-jalingo-yola"

# ---------- BOOKING RULES ----------

def test_booking_reference_format():
    reference = booking_service.generate_booking_reference(NOW)
    assert re.fullmatch(r"20300601[0-9A-Z]{4}", reference)

def test_refund_percentage_boundaries():
    assert booking_service.refund_percentage(100) == 100
    assert booking_service.refund_percentage(48) == 100
    assert booking_service.refund_percentage(47.9) == 75
    assert booking_service.refund_percentage(24) == 75
    assert booking_service.refund_percentage(23.9) == 0

def test_status_transitions():
    assert booking_service.can_transition("pending", "confirmed")
    assert booking_service.can_transition("pending", "cancelled")
    assert booking_service.can_transition("confirmed", "completed")
    assert not booking_service.can_transition("pending", "completed")
    assert not booking_service.can_transition("cancelled", "confirmed")
    assert not booking_service.can_transition("completed", "cancelled")

# ---------- PAYSTACK CLIENT ----------

def test_signature_verification():
    client = PaystackClient(secret_key="sk_live_abc", base_url="https://api.paystack.test")
    body = b'{"event":"charge.success"}'
    good = hmac.new(b"sk_live_abc", body, hashlib.sha512).hexdigest()
    assert client.verify_signature(body, good)
    assert not client.verify_signature(body, "0" * 128)
    assert not client.verify_signature(body, "")
    assert not PaystackClient(secret_key="", base_url="https://api.paystack.test").verify_signature(body, good)

def test_initialize_transaction_request():
    client = PaystackClient(secret_key="sk_test_1", base_url="https://api.paystack.test/")
    response = MagicMock(ok=True, status_code=200)
    response.json.return_value = {"status": True, "data": {"authorization_url": "https://checkout", "reference": "R1"}}
    with patch("paystack.requests.request", return_value=response) as mock_request:
        data = client.initialize_transaction("a@example.com", 1700000, "R1", "https://cb", {"k": "v"})
    assert data["reference"] == "R1"
    method, url = mock_request.call_args.args
    assert (method, url) == ("POST", "https://api.paystack.test/transaction/initialize")
    kwargs = mock_request.call_args.kwargs
    assert kwargs["headers"]["Authorization"] == "Bearer sk_test_1"
    assert kwargs["json"]["amount"] == 1700000

def test_gateway_errors_become_paystack_errors():
    client = PaystackClient(secret_key="sk_test_1", base_url="https://api.paystack.test")
    rejected = MagicMock(ok=False, status_code=400)
    rejected.json.return_value = {"status": False, "message": "Invalid key"}
    with patch("paystack.requests.request", return_value=rejected):
        with pytest.raises(PaystackError, match="Invalid key"):
            client.verify_transaction("R1")
    with patch("paystack.requests.request", side_effect=requests.ConnectionError("down")):
        with pytest.raises(PaystackError):
            client.verify_transaction("R1")

# ---------- EMAIL ----------

def test_email_templates_render():
    subject, text, html = email_service.render_template(
        "booking_cancellation", {"name": "Ada", "booking_reference": "20300601ABCD", "refund_amount": 12750}
    )
    assert "20300601ABCD" in subject
    assert "12,750.00" in text
    assert "<html>" in html
    with pytest.raises(ValueError):
        email_service.render_template("newsletter", {})

# ---------- CONFIG ----------

def test_missing_required_env_vars(monkeypatch):
    monkeypatch.delenv("EMAIL_HOST", raising=False)
    monkeypatch.setenv("JWT_SECRET", "")
    assert set(config.missing_required_env_vars()) == {"EMAIL_HOST", "JWT_SECRET"}
    with pytest.raises(SystemExit):
        config.validate_environment()

def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("API_VERSION", "v2")
    monkeypatch.setenv("EMAIL_PORT", "not-a-number")
    config.get_settings.cache_clear()
    try:
        settings = config.get_settings()
        assert settings.api_prefix == "/api/v2"
        assert settings.email_port == 587
        assert settings.jwt_refresh_secret == "test-refresh-secret"
    finally:
        config.get_settings.cache_clear()

# ---------- RATE LIMIT ----------

def test_rate_limit_window(db_session):
    for expected in range(1, 4):
        assert rate_limit.hit(db_session, "sensitive:u1", max_operations=3, window_seconds=60, now=NOW) == expected
    with pytest.raises(RateLimited):
        rate_limit.hit(db_session, "sensitive:u1", max_operations=3, window_seconds=60, now=NOW)
    # other keys are counted separately
    assert rate_limit.hit(db_session, "sensitive:u2", max_operations=3, window_seconds=60, now=NOW) == 1
    later = NOW + timedelta(seconds=61)
    assert rate_limit.hit(db_session, "sensitive:u1", max_operations=3, window_seconds=60, now=later) == 1

# ---------- AUTH DEPENDENCIES ----------

def test_optional_user(db_session, make_user):
    from fastapi.security import HTTPAuthorizationCredentials
    from auth_service import create_access_token, get_optional_user

    assert get_optional_user(None, db_session) is None
    bad = HTTPAuthorizationCredentials(scheme="Bearer", credentials="garbage")
    assert get_optional_user(bad, db_session) is None
    user = make_user()
    good = HTTPAuthorizationCredentials(scheme="Bearer", credentials=create_access_token(user))
    assert get_optional_user(good, db_session).id == user.id

# ---------- LOCATIONS ----------

def test_location_distance(db_session):
    jalingo = db_session.get(models.Location, "tar-1")
    abuja = db_session.get(models.Location, "ng-1")
    assert 400 < jalingo.distance_to(abuja) < 470
    assert jalingo.distance_to(jalingo) == 0
