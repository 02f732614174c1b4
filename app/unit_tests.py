import models_sqlalchemy as models
from conftest import TEST_PASSWORD

# ---------- TEST DATA HELPERS ----------

API = "/api/v1"

def create_user_dict(name="Chidi Okeke", email="chidi@example.com", password="secret123", phone=None):
    data = {"name": name, "email": email, "password": password}
    if phone:
        data["phone"] = phone
    return data

def create_location_dict(name="Zing", state="Taraba", latitude=8.99, longitude=11.75, **extra):
    data = {
        "name": name,
        "state": state,
        "latitude": latitude,
        "longitude": longitude,
        "image": "https://images.example.com/zing.jpg",
        "description": "Town in northern Taraba",
    }
    data.update(extra)
    return data

def create_route_dict(from_location_id="tar-2", to_location_id="tar-3", modes=None):
    return {
        "from_location_id": from_location_id,
        "to_location_id": to_location_id,
        "distance": 130,
        "estimated_duration": "2h 30m",
        "base_price": 3000,
        "transport_modes": modes or [
            {"type": "bus", "operator": "Taraba Line Transport", "price": 3000, "duration": "2h 30m"},
            {"type": "car", "operator": "Private Hire", "price": 12000, "duration": "2h"},
        ],
    }

def register_and_verify(client, db_session, **kwargs):
    data = create_user_dict(**kwargs)
    r = client.post(f"{API}/auth/register", json=data)
    assert r.status_code == 201
    token = db_session.query(models.User).filter_by(email=data["email"]).one().verification_token
    assert client.get(f"{API}/auth/verify-email/{token}").status_code == 200
    return data

def login(client, email, password):
    return client.post(f"{API}/auth/login", json={"email": email, "password": password})

# ---------- HAPPY PATH TESTS ----------

def test_health(client):
    r = client.get(f"{API}/health")
    assert r.status_code == 200
    assert r.json()["success"] is True

def test_register_sends_verification_email(client, db_session, sent_emails):
    r = client.post(f"{API}/auth/register", json=create_user_dict(phone="08031234567"))
    assert r.status_code == 201
    body = r.json()
    assert body["success"] is True
    user = body["data"]["user"]
    assert user["email"] == "chidi@example.com"
    assert user["is_verified"] is False
    assert user["role"] == "user"
    assert "password_hash" not in user

    stored = db_session.query(models.User).filter_by(email="chidi@example.com").one()
    assert len(sent_emails) == 1
    assert sent_emails[0]["template"] == "verification"
    assert sent_emails[0]["data"]["verification_url"].endswith(stored.verification_token)

def test_register_verify_and_login(client, db_session):
    data = register_and_verify(client, db_session)
    r = login(client, data["email"], data["password"])
    assert r.status_code == 200
    body = r.json()["data"]
    assert body["token"]
    assert body["refresh_token"]
    assert body["user"]["is_verified"] is True

    me = client.get(f"{API}/auth/me", headers={"Authorization": f"Bearer {body['token']}"})
    assert me.status_code == 200
    assert me.json()["data"]["user"]["email"] == data["email"]

def test_login_email_is_case_insensitive(client, db_session):
    data = register_and_verify(client, db_session)
    r = login(client, data["email"].upper(), data["password"])
    assert r.status_code == 200

def test_refresh_token_issues_new_pair(client, db_session):
    data = register_and_verify(client, db_session)
    refresh = login(client, data["email"], data["password"]).json()["data"]["refresh_token"]
    r = client.post(f"{API}/auth/refresh-token", json={"refresh_token": refresh})
    assert r.status_code == 200
    pair = r.json()["data"]
    me = client.get(f"{API}/auth/me", headers={"Authorization": f"Bearer {pair['token']}"})
    assert me.status_code == 200

def test_forgot_and_reset_password(client, db_session, sent_emails):
    data = register_and_verify(client, db_session)
    r = client.post(f"{API}/auth/forgot-password", json={"email": data["email"]})
    assert r.status_code == 200
    assert sent_emails[-1]["template"] == "password_reset"

    token = db_session.query(models.User).filter_by(email=data["email"]).one().reset_password_token
    r2 = client.post(f"{API}/auth/reset-password/{token}", json={"password": "brandnew1"})
    assert r2.status_code == 200
    assert login(client, data["email"], "brandnew1").status_code == 200
    assert login(client, data["email"], data["password"]).status_code == 401

    # Reset tokens are single use
    r3 = client.post(f"{API}/auth/reset-password/{token}", json={"password": "another1"})
    assert r3.status_code == 400
    assert r3.json()["error"] == "INVALID_TOKEN"

def test_resend_verification(client, db_session, sent_emails):
    client.post(f"{API}/auth/register", json=create_user_dict())
    first = db_session.query(models.User).filter_by(email="chidi@example.com").one().verification_token
    r = client.post(f"{API}/auth/resend-verification", json={"email": "chidi@example.com"})
    assert r.status_code == 200
    db_session.expire_all()
    second = db_session.query(models.User).filter_by(email="chidi@example.com").one().verification_token
    assert second != first
    assert [e["template"] for e in sent_emails] == ["verification", "verification"]

def test_change_password(client, user, user_headers):
    r = client.post(f"{API}/auth/change-password", headers=user_headers,
                    json={"current_password": TEST_PASSWORD, "new_password": "changed99"})
    assert r.status_code == 200
    assert login(client, user.email, "changed99").status_code == 200

def test_logout(client, user_headers):
    r = client.post(f"{API}/auth/logout", headers=user_headers)
    assert r.status_code == 200
    assert r.json()["success"] is True

def test_get_and_update_profile(client, user_headers):
    r = client.get(f"{API}/users/profile", headers=user_headers)
    assert r.status_code == 200
    assert r.json()["data"]["user"]["name"] == "Ada Obi"

    r2 = client.put(f"{API}/users/profile", headers=user_headers,
                    json={"name": "Ada Obi-Eze", "phone": "+2348031234567"})
    assert r2.status_code == 200
    assert r2.json()["data"]["user"]["name"] == "Ada Obi-Eze"
    assert r2.json()["data"]["user"]["phone"] == "+2348031234567"

def test_admin_lists_users(client, user, admin_headers):
    r = client.get(f"{API}/users", headers=admin_headers)
    assert r.status_code == 200
    body = r.json()
    assert body["pagination"]["total"] == 2
    assert {u["email"] for u in body["data"]["users"]} == {"ada@example.com", "admin@staya.com"}

    r2 = client.get(f"{API}/users/{user.id}", headers=admin_headers)
    assert r2.status_code == 200
    assert r2.json()["data"]["user"]["id"] == user.id

def test_list_locations(client):
    r = client.get(f"{API}/locations")
    assert r.status_code == 200
    locations = r.json()["data"]["locations"]
    assert len(locations) == 18
    names = [loc["name"] for loc in locations]
    assert names == sorted(names)
    jalingo = next(loc for loc in locations if loc["id"] == "tar-1")
    assert jalingo["full_name"] == "Jalingo, Taraba"

def test_filter_locations(client):
    r = client.get(f"{API}/locations", params={"state": "taraba"})
    assert len(r.json()["data"]["locations"]) == 8
    r2 = client.get(f"{API}/locations", params={"search": "jal"})
    assert [loc["id"] for loc in r2.json()["data"]["locations"]] == ["tar-1"]
    r3 = client.get(f"{API}/locations", params={"limit": 3})
    assert len(r3.json()["data"]["locations"]) == 3

def test_locations_by_state(client):
    r = client.get(f"{API}/locations/state/Lagos")
    assert r.status_code == 200
    assert [loc["id"] for loc in r.json()["data"]["locations"]] == ["ng-2"]

def test_get_location(client):
    r = client.get(f"{API}/locations/ng-1")
    assert r.status_code == 200
    assert r.json()["data"]["location"]["name"] == "Abuja"

def test_nearby_locations_sorted_by_distance(client):
    # Jalingo's own coordinates
    r = client.get(f"{API}/locations/nearby/8.8833/11.3667", params={"radius": 150})
    assert r.status_code == 200
    nearby = r.json()["data"]["locations"]
    assert nearby[0]["id"] == "tar-1"
    assert nearby[0]["distance_km"] == 0
    distances = [loc["distance_km"] for loc in nearby]
    assert distances == sorted(distances)
    assert all(d <= 150 for d in distances)
    assert "ng-2" not in {loc["id"] for loc in nearby}

def test_admin_creates_updates_and_deactivates_location(client, admin_headers):
    r = client.post(f"{API}/locations", headers=admin_headers, json=create_location_dict(id="tar-9"))
    assert r.status_code == 201
    assert r.json()["data"]["location"]["id"] == "tar-9"

    r2 = client.put(f"{API}/locations/tar-9", headers=admin_headers, json={"description": "Tea plantation town"})
    assert r2.status_code == 200
    assert r2.json()["data"]["location"]["description"] == "Tea plantation town"

    r3 = client.delete(f"{API}/locations/tar-9", headers=admin_headers)
    assert r3.status_code == 200
    assert client.get(f"{API}/locations/tar-9").status_code == 404

def test_list_routes_by_popularity(client):
    r = client.get(f"{API}/routes", params={"limit": 5})
    assert r.status_code == 200
    body = r.json()
    assert body["pagination"] == {"page": 1, "limit": 5, "total": 9, "pages": 2}
    scores = [route["popularity_score"] for route in body["data"]["routes"]]
    assert scores == sorted(scores, reverse=True)

def test_search_routes_either_direction(client):
    r = client.get(f"{API}/routes/search", params={"from": "ng-1", "to": "tar-1"})
    assert r.status_code == 200
    routes = r.json()["data"]["routes"]
    assert [route["id"] for route in routes] == ["tar-jalingo-abuja"]
    assert routes[0]["cheapest_price"] == 8500
    assert routes[0]["fastest_duration"] == "1h 15m"
    assert set(routes[0]["available_transport_types"]) == {"bus", "flight", "car"}

def test_popular_routes_and_routes_from_location(client):
    r = client.get(f"{API}/routes/popular", params={"limit": 3})
    assert len(r.json()["data"]["routes"]) == 3
    r2 = client.get(f"{API}/routes/from/tar-1")
    assert len(r2.json()["data"]["routes"]) == 9
    r3 = client.get(f"{API}/routes/from/ng-2")
    assert [route["id"] for route in r3.json()["data"]["routes"]] == ["tar-jalingo-lagos"]

def test_get_route(client):
    r = client.get(f"{API}/routes/tar-jalingo-wukari")
    assert r.status_code == 200
    assert r.json()["data"]["route"]["distance"] == 195

def test_calculate_price(client):
    r = client.post(f"{API}/routes/calculate-price", json={
        "from_location_id": "ng-1", "to_location_id": "tar-1", "passengers": 2, "transport_type": "bus",
    })
    assert r.status_code == 200
    quote = r.json()["data"]
    assert quote["available"] is True
    assert quote["currency"] == "NGN"
    assert quote["price"] % 500 == 0
    # 8500 x 2 on a popular route
    assert quote["price"] == 18500
    assert quote["duration"] == "7h 30m"

def test_calculate_price_with_or_without_valid_token(client, user_headers):
    data = {"from_location_id": "ng-1", "to_location_id": "tar-1", "passengers": 2, "transport_type": "bus"}
    signed_in = client.post(f"{API}/routes/calculate-price", headers=user_headers, json=data)
    assert signed_in.status_code == 200
    # a bad token is ignored on public endpoints
    garbage = client.post(f"{API}/routes/calculate-price", headers={"Authorization": "Bearer garbage"}, json=data)
    assert garbage.status_code == 200
    assert signed_in.json()["data"]["price"] == garbage.json()["data"]["price"] == 18500

def test_routes_from_location_skips_deactivated_routes(client, admin_headers):
    client.delete(f"{API}/routes/tar-jalingo-lagos", headers=admin_headers)
    assert client.get(f"{API}/routes/from/ng-2").json()["data"]["routes"] == []
    ids = [route["id"] for route in client.get(f"{API}/routes/from/tar-1").json()["data"]["routes"]]
    assert len(ids) == 8
    assert "tar-jalingo-lagos" not in ids

def test_admin_creates_route(client, db_session, admin_headers):
    r = client.post(f"{API}/routes", headers=admin_headers, json=create_route_dict())
    assert r.status_code == 201
    route = r.json()["data"]["route"]
    assert route["is_active"] is True
    assert route["cheapest_price"] == 3000
    # two modes, base price 3000
    assert route["popularity_score"] == 117

    r2 = client.put(f"{API}/routes/{route['id']}", headers=admin_headers, json={"base_price": 3500})
    assert r2.status_code == 200
    assert r2.json()["data"]["route"]["base_price"] == 3500

    r3 = client.delete(f"{API}/routes/{route['id']}", headers=admin_headers)
    assert r3.status_code == 200
    stored = db_session.get(models.Route, route["id"])
    db_session.refresh(stored)
    assert stored.is_active is False

# ---------- EDGE CASE TESTS ----------

def test_register_duplicate_email(client):
    client.post(f"{API}/auth/register", json=create_user_dict())
    r = client.post(f"{API}/auth/register", json=create_user_dict(name="Other Person"))
    assert r.status_code == 400
    assert r.json()["error"] == "USER_EXISTS"
    assert r.json()["success"] is False

def test_register_validation_errors(client):
    r = client.post(f"{API}/auth/register", json=create_user_dict(email="not-an-email", password="123"))
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "VALIDATION_ERROR"
    assert "email" in body["message"]
    assert "password" in body["message"]

def test_register_rejects_non_nigerian_phone(client):
    r = client.post(f"{API}/auth/register", json=create_user_dict(phone="+15551234567"))
    assert r.status_code == 400
    assert r.json()["error"] == "VALIDATION_ERROR"

def test_login_before_verification(client):
    client.post(f"{API}/auth/register", json=create_user_dict())
    r = login(client, "chidi@example.com", "secret123")
    assert r.status_code == 401
    assert r.json()["error"] == "EMAIL_NOT_VERIFIED"

def test_login_wrong_password(client, user):
    r = login(client, user.email, "wrong-password")
    assert r.status_code == 401
    assert r.json()["error"] == "INVALID_CREDENTIALS"

def test_login_unknown_email(client):
    r = login(client, "nobody@example.com", "whatever")
    assert r.status_code == 401
    assert r.json()["error"] == "INVALID_CREDENTIALS"

def test_verify_email_invalid_token(client):
    r = client.get(f"{API}/auth/verify-email/not-a-token")
    assert r.status_code == 400
    assert r.json()["error"] == "INVALID_TOKEN"

def test_resend_verification_errors(client, user):
    r = client.post(f"{API}/auth/resend-verification", json={"email": user.email})
    assert r.status_code == 400
    assert r.json()["error"] == "ALREADY_VERIFIED"
    r2 = client.post(f"{API}/auth/resend-verification", json={"email": "ghost@example.com"})
    assert r2.status_code == 404

def test_forgot_password_unknown_email(client):
    r = client.post(f"{API}/auth/forgot-password", json={"email": "ghost@example.com"})
    assert r.status_code == 404
    assert r.json()["error"] == "USER_NOT_FOUND"

def test_forgot_password_email_failure_clears_token(client, db_session, user, monkeypatch):
    import email_service

    def broken_send(*args, **kwargs):
        raise OSError("SMTP unreachable")

    monkeypatch.setattr(email_service, "send_email", broken_send)
    r = client.post(f"{API}/auth/forgot-password", json={"email": user.email})
    assert r.status_code == 500
    assert r.json()["error"] == "EMAIL_ERROR"
    db_session.refresh(user)
    assert user.reset_password_token is None

def test_registration_survives_email_failure(client, monkeypatch):
    import email_service

    def broken_send(*args, **kwargs):
        raise OSError("SMTP unreachable")

    monkeypatch.setattr(email_service, "send_email", broken_send)
    r = client.post(f"{API}/auth/register", json=create_user_dict())
    assert r.status_code == 201

def test_reset_password_expired_token(client, db_session, user):
    user.reset_password_token = "expired-token"
    user.reset_password_expire = models.utcnow().replace(year=2000)
    db_session.commit()
    r = client.post(f"{API}/auth/reset-password/expired-token", json={"password": "brandnew1"})
    assert r.status_code == 400
    assert r.json()["error"] == "INVALID_TOKEN"

def test_protected_routes_require_token(client):
    r = client.get(f"{API}/auth/me")
    assert r.status_code == 401
    assert r.json()["error"] == "UNAUTHORIZED"
    r2 = client.get(f"{API}/auth/me", headers={"Authorization": "Bearer garbage"})
    assert r2.status_code == 401

def test_unverified_user_token_rejected(client, make_user, headers_for):
    pending = make_user(email="pending@example.com", verified=False)
    r = client.get(f"{API}/auth/me", headers=headers_for(pending))
    assert r.status_code == 401
    assert r.json()["error"] == "EMAIL_NOT_VERIFIED"

def test_access_token_is_not_a_refresh_token(client, user_headers):
    access = user_headers["Authorization"].split(" ", 1)[1]
    r = client.post(f"{API}/auth/refresh-token", json={"refresh_token": access})
    assert r.status_code == 401

def test_change_password_wrong_current(client, user_headers):
    r = client.post(f"{API}/auth/change-password", headers=user_headers,
                    json={"current_password": "nope", "new_password": "changed99"})
    assert r.status_code == 400
    assert r.json()["error"] == "INVALID_PASSWORD"

def test_change_password_is_rate_limited(client, user_headers):
    payload = {"current_password": "nope", "new_password": "changed99"}
    for _ in range(5):
        r = client.post(f"{API}/auth/change-password", headers=user_headers, json=payload)
        assert r.status_code == 400
    r = client.post(f"{API}/auth/change-password", headers=user_headers, json=payload)
    assert r.status_code == 429
    assert r.json()["error"] == "RATE_LIMITED"

def test_admin_endpoints_forbidden_for_users(client, user_headers):
    r = client.get(f"{API}/users", headers=user_headers)
    assert r.status_code == 403
    assert r.json()["error"] == "FORBIDDEN"
    r2 = client.post(f"{API}/locations", headers=user_headers, json=create_location_dict())
    assert r2.status_code == 403
    r3 = client.post(f"{API}/routes", headers=user_headers, json=create_route_dict())
    assert r3.status_code == 403

def test_get_nonexistent_user(client, admin_headers):
    r = client.get(f"{API}/users/999", headers=admin_headers)
    assert r.status_code == 404

def test_get_nonexistent_location(client):
    r = client.get(f"{API}/locations/999")
    assert r.status_code == 404
    assert r.json()["error"] == "LOCATION_NOT_FOUND"

def test_create_location_duplicate_id(client, admin_headers):
    r = client.post(f"{API}/locations", headers=admin_headers, json=create_location_dict(id="tar-1"))
    assert r.status_code == 400
    assert r.json()["error"] == "LOCATION_EXISTS"

def test_create_location_invalid_coordinates(client, admin_headers):
    r = client.post(f"{API}/locations", headers=admin_headers, json=create_location_dict(latitude=120))
    assert r.status_code == 400
    assert r.json()["error"] == "VALIDATION_ERROR"

def test_nearby_invalid_coordinates(client):
    r = client.get(f"{API}/locations/nearby/95/11")
    assert r.status_code == 400

def test_get_nonexistent_route(client):
    r = client.get(f"{API}/routes/999")
    assert r.status_code == 404
    assert r.json()["error"] == "ROUTE_NOT_FOUND"

def test_calculate_price_unknown_route(client):
    r = client.post(f"{API}/routes/calculate-price", json={"from_location_id": "ng-2", "to_location_id": "ng-3"})
    assert r.status_code == 400
    assert r.json()["error"] == "ROUTE_NOT_FOUND"

def test_calculate_price_too_many_passengers(client):
    r = client.post(f"{API}/routes/calculate-price", json={
        "from_location_id": "tar-1", "to_location_id": "ng-1", "passengers": 11,
    })
    assert r.status_code == 400

def test_create_route_existing_pair_in_reverse(client, admin_headers):
    r = client.post(f"{API}/routes", headers=admin_headers,
                    json=create_route_dict(from_location_id="ng-1", to_location_id="tar-1"))
    assert r.status_code == 400
    assert r.json()["error"] == "ROUTE_EXISTS"

def test_create_route_unknown_location(client, admin_headers):
    r = client.post(f"{API}/routes", headers=admin_headers,
                    json=create_route_dict(to_location_id="nowhere"))
    assert r.status_code == 404
    assert r.json()["error"] == "LOCATION_NOT_FOUND"

def test_create_route_same_endpoints(client, admin_headers):
    r = client.post(f"{API}/routes", headers=admin_headers,
                    json=create_route_dict(from_location_id="tar-2", to_location_id="tar-2"))
    assert r.status_code == 400

def test_create_route_requires_a_transport_mode(client, admin_headers):
    data = create_route_dict()
    data["transport_modes"] = []
    r = client.post(f"{API}/routes", headers=admin_headers, json=data)
    assert r.status_code == 400
    assert r.json()["error"] == "VALIDATION_ERROR"

def test_deactivated_route_is_hidden_from_search(client, admin_headers):
    client.delete(f"{API}/routes/tar-jalingo-abuja", headers=admin_headers)
    r = client.get(f"{API}/routes/search", params={"from": "tar-1", "to": "ng-1"})
    assert r.json()["data"]["routes"] == []
    r2 = client.post(f"{API}/routes/calculate-price", json={"from_location_id": "tar-1", "to_location_id": "ng-1"})
    assert r2.status_code == 400
    assert r2.json()["error"] == "ROUTE_NOT_FOUND"

def test_unknown_path_uses_error_envelope(client):
    r = client.get(f"{API}/does-not-exist")
    assert r.status_code == 404
    assert r.json()["success"] is False

# ---------- END OF TEST SUITE ----------
