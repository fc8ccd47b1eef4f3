import pytest
from fastapi.testclient import TestClient

import app.core.database as database
from app.core.database import get_db
from app.main import app
from app.models.audit import AuditEventType, AuditLog


@pytest.fixture
def client(monkeypatch, session_factory):
    # Background writes (audit) resolve the session factory lazily.
    monkeypatch.setattr(database, "SessionLocal", session_factory)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _csrf(client):
    response = client.get("/api/v1/auth/csrf")
    assert response.status_code == 200
    return {"x-csrf-token": response.json()["csrf_token"]}


def _login(client, email="alice@example.com", password="correct-horse"):
    headers = _csrf(client)
    response = client.post(
        "/api/v1/auth/login",
        json={"email": email, "password": password},
        headers=headers,
    )
    return response, headers


def test_login_requires_csrf_header(client, make_user):
    make_user()
    client.get("/api/v1/auth/csrf")
    response = client.post(
        "/api/v1/auth/login",
        json={"email": "alice@example.com", "password": "correct-horse"},
    )
    assert response.status_code == 403
    assert response.json()["success"] is False


def test_login_sets_cookies_and_authenticates(client, make_user):
    user = make_user()
    response, _ = _login(client)

    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["id"] == user.id
    assert "access_token" in response.cookies
    assert "refresh_token" in response.cookies
    assert response.headers["cache-control"] == "no-store"

    me = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.status_code == 200
    assert me.json()["email"] == "alice@example.com"


def test_me_requires_authentication(client):
    assert client.get("/api/v1/auth/me").status_code == 401
    response = client.get("/api/v1/auth/me", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 401


def test_bad_credentials_return_generic_401(client, make_user):
    make_user()
    response, _ = _login(client, password="wrong")
    assert response.status_code == 401
    unknown, _ = _login(client, email="nobody@example.com", password="wrong")
    assert unknown.status_code == 401
    assert response.json()["error"] == unknown.json()["error"]


def test_refresh_from_cookie_rotates_session(client, make_user):
    make_user()
    login, headers = _login(client)
    old_refresh = login.cookies["refresh_token"]

    refreshed = client.post("/api/v1/auth/refresh", headers=headers)
    assert refreshed.status_code == 200
    assert refreshed.cookies["refresh_token"] != old_refresh
    assert refreshed.json()["access_token"]


def test_sessions_marks_current_and_revoke_all_keeps_it(client, make_user):
    make_user()
    other, _ = _login(client)
    current, headers = _login(client)
    bearer = {"Authorization": f"Bearer {current.json()['access_token']}", **headers}

    sessions = client.get("/api/v1/auth/sessions", headers=bearer).json()
    assert len(sessions) == 2
    assert [s["current"] for s in sessions].count(True) == 1

    revoked = client.post("/api/v1/auth/sessions/revoke-all", headers=bearer)
    assert revoked.json()["sessions_revoked"] == 1

    remaining = client.get("/api/v1/auth/sessions", headers=bearer).json()
    assert len(remaining) == 1
    assert remaining[0]["current"] is True


def test_logout_revokes_refresh_token(client, make_user):
    make_user()
    login, headers = _login(client)
    refresh_token = login.cookies["refresh_token"]

    response = client.post("/api/v1/auth/logout", headers=headers)
    assert response.status_code == 200
    assert response.json()["session_revoked"] is True

    again = client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token}, headers=headers)
    assert again.status_code == 401


def test_rate_limited_login_returns_retry_after(client):
    headers = _csrf(client)
    for n in range(5):
        response = client.post(
            "/api/v1/auth/login",
            json={"email": f"user{n}@example.com", "password": "whatever"},
            headers=headers,
        )
        assert response.status_code == 401

    blocked = client.post(
        "/api/v1/auth/login",
        json={"email": "fresh@example.com", "password": "whatever"},
        headers=headers,
    )
    assert blocked.status_code == 429
    assert int(blocked.headers["retry-after"]) > 0


def test_password_reset_request_response_is_constant(client, make_user):
    make_user()
    headers = _csrf(client)
    known = client.post("/api/v1/auth/password-reset/request", json={"email": "alice@example.com"}, headers=headers)
    unknown = client.post("/api/v1/auth/password-reset/request", json={"email": "ghost@example.com"}, headers=headers)
    assert known.status_code == unknown.status_code == 202
    assert known.json() == unknown.json()


def test_admin_routes_require_admin(client, make_user, session_factory):
    make_user()
    make_user(email="admin@example.com", password="admin-password", role="admin")

    user_login, _ = _login(client)
    user_auth = {"Authorization": f"Bearer {user_login.json()['access_token']}"}
    assert client.get("/api/v1/admin/audit-logs", headers=user_auth).status_code == 403

    admin_login, _ = _login(client, email="admin@example.com", password="admin-password")
    admin_auth = {"Authorization": f"Bearer {admin_login.json()['access_token']}"}
    logs = client.get(
        "/api/v1/admin/audit-logs",
        params={"event_type": AuditEventType.LOGIN_SUCCESS.value},
        headers=admin_auth,
    )
    assert logs.status_code == 200
    assert len(logs.json()) == 2

    stats = client.get("/api/v1/admin/sessions/stats", headers=admin_auth).json()
    assert stats["active"] == 2

    db = session_factory()
    try:
        assert db.query(AuditLog).filter(AuditLog.event_type == AuditEventType.LOGIN_SUCCESS.value).count() == 2
    finally:
        db.close()
