from datetime import datetime, timedelta, timezone

import auth

REGISTRATION = {
    "username": "brian",
    "email": "brian@campus.ac.ke",
    "password": "secret123",
    "first_name": "Brian",
    "last_name": "Otieno",
}


def test_register_logs_in_and_hides_password(client, store):
    resp = client.post("/api/auth/register", json=REGISTRATION)
    assert resp.status_code == 201
    body = resp.json()
    assert "password" not in body
    assert body["is_admin"] is False
    assert len(body["referral_code"]) == 12

    stored = store.users.get(body["id"])
    assert stored.password != "secret123"
    assert auth.verify_password("secret123", stored.password)

    me = client.get("/api/auth/me")
    assert me.status_code == 200
    assert me.json()["username"] == "brian"


def test_referral_codes_are_unique(client, store):
    client.post("/api/auth/register", json=REGISTRATION)
    client.post("/api/auth/register", json={**REGISTRATION, "username": "brenda", "email": "brenda@campus.ac.ke"})
    codes = {u.referral_code for u in store.users.list()}
    assert len(codes) == 2


def test_register_rejects_duplicates_and_bad_data(client):
    assert client.post("/api/auth/register", json=REGISTRATION).status_code == 201

    resp = client.post("/api/auth/register", json={**REGISTRATION, "email": "other@campus.ac.ke"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Username already exists"

    resp = client.post("/api/auth/register", json={**REGISTRATION, "username": "BRIAN2", "email": "Brian@Campus.ac.ke"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Email already exists"

    resp = client.post("/api/auth/register", json={"username": "x"})
    assert resp.status_code == 400
    assert resp.json() == {"detail": "Invalid data"}


def test_login_and_logout(client, make_user):
    make_user("jane", password="hunter22")

    assert client.post("/api/auth/login", json={"username": "jane", "password": "wrong"}).status_code == 401
    assert client.post("/api/auth/login", json={"username": "ghost", "password": "hunter22"}).status_code == 401
    assert client.post("/api/auth/login", json={"username": "jane"}).status_code == 400

    resp = client.post("/api/auth/login", json={"username": "JANE", "password": "hunter22"})
    assert resp.status_code == 200
    assert "password" not in resp.json()
    assert client.get("/api/auth/me").status_code == 200

    assert client.post("/api/auth/logout").status_code == 200
    assert client.get("/api/auth/me").status_code == 401


def test_forged_session_cookie_is_rejected(client):
    client.cookies.set(auth.SESSION_COOKIE, "not-a-token")
    assert client.get("/api/auth/me").status_code == 401


def test_session_for_unknown_sid_is_rejected(client):
    token = auth.encode_session_token({"sid": "gone", "expires_at": datetime.now(timezone.utc) + timedelta(hours=1)})
    client.cookies.set(auth.SESSION_COOKIE, token)
    assert client.get("/api/auth/me").status_code == 401


def test_me_returns_404_for_deleted_user(user_client, store):
    store.users.delete(user_client.user.id)
    assert user_client.get("/api/auth/me").status_code == 404


def test_login_rate_limit(client, make_user, monkeypatch):
    make_user("jane")
    monkeypatch.setattr(auth, "RATE_LIMIT_MAX_ATTEMPTS", 3)
    for _ in range(3):
        client.post("/api/auth/login", json={"username": "jane", "password": "wrong"})
    resp = client.post("/api/auth/login", json={"username": "jane", "password": "secret123"})
    assert resp.status_code == 429


def test_admin_gate(client, user_client, admin_client):
    assert client.get("/api/users").status_code == 401
    assert user_client.get("/api/users").status_code == 403
    resp = admin_client.get("/api/users")
    assert resp.status_code == 200
    assert all("password" not in u for u in resp.json())


def test_user_update_rules(user_client, admin_client, make_user, store):
    other = make_user("otis")
    me = user_client.user.id

    assert user_client.put(f"/api/users/{other.id}", json={"first_name": "X"}).status_code == 403
    assert user_client.put(f"/api/users/{me}", json={"username": "otis"}).status_code == 400

    resp = user_client.put(f"/api/users/{me}", json={"first_name": "Janet", "is_admin": True, "password": "newpass1"})
    assert resp.status_code == 200
    assert resp.json()["first_name"] == "Janet"
    assert resp.json()["is_admin"] is False
    assert auth.verify_password("newpass1", store.users.get(me).password)

    resp = admin_client.put(f"/api/users/{other.id}", json={"is_admin": True})
    assert resp.json()["is_admin"] is True
    assert admin_client.get(f"/api/users/{other.id}").json()["username"] == "otis"
    assert admin_client.get("/api/users/999").status_code == 404


def test_referral_code_cannot_be_changed(user_client, store):
    before = store.users.get(user_client.user.id).referral_code
    user_client.put(f"/api/users/{user_client.user.id}", json={"referral_code": "MINE"})
    assert store.users.get(user_client.user.id).referral_code == before


def test_expired_sessions_are_pruned_on_create(monkeypatch):
    monkeypatch.setattr(auth, "SESSION_MAX_AGE_HOURS", 0)
    expired = auth.sessions.create(1)
    monkeypatch.setattr(auth, "SESSION_MAX_AGE_HOURS", 24)
    live = auth.sessions.create(2)

    assert len(auth.sessions) == 1
    assert auth.sessions.get(expired["sid"]) is None
    assert auth.sessions.get(live["sid"])["user_id"] == 2
