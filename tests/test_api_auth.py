"""Integration tests for the /api/v1/auth/* endpoints.

Uses the api_client fixture: real routes, real AuthService, a temp SQLite
database, max_login_attempts=3 and login_rate_limit=4 (see conftest.py).

Covers:
- register / login / refresh / logout / profile happy paths and wire format
- Error envelope and status mapping (409, 422, 401, 423, 429, 500)
- Cache-Control: no-store on credential responses
- Storage failures never leak driver detail
"""

from __future__ import annotations

from sqlalchemy.exc import OperationalError

from auth.errors import StorageError
from auth.store import UserStore

PASSWORD = "s3cret-password"


def _register(client, email="ann@example.com", name="Ann", password=PASSWORD):
    return client.post("/api/v1/auth/register", json={"email": email, "name": name, "password": password})


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Register
# ---------------------------------------------------------------------------


def test_register_returns_201_with_tokens(api_client):
    resp = _register(api_client)
    assert resp.status_code == 201
    data = resp.json()
    assert data["user"]["email"] == "ann@example.com"
    assert data["user"]["name"] == "Ann"
    assert "password" not in data["user"]
    assert data["accessToken"].count(".") == 2
    assert len(data["refreshToken"]) == 64
    assert data["tokenType"] == "bearer"
    assert data["expiresIn"] == 900
    assert resp.headers["Cache-Control"] == "no-store"


def test_register_duplicate_email_returns_409(api_client):
    _register(api_client)
    resp = _register(api_client, email="ANN@example.com")
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "duplicate_email"


def test_register_short_password_returns_422(api_client):
    resp = _register(api_client, password="short")
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "validation_error"


def test_register_missing_field_returns_422(api_client):
    resp = api_client.post("/api/v1/auth/register", json={"email": "ann@example.com"})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "validation_error"


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


def test_login_returns_tokens(api_client):
    _register(api_client)
    resp = api_client.post("/api/v1/auth/login", json={"email": "ann@example.com", "password": PASSWORD})
    assert resp.status_code == 200
    assert resp.json()["user"]["email"] == "ann@example.com"
    assert resp.headers["Cache-Control"] == "no-store"


def test_login_failures_share_one_response(api_client):
    _register(api_client)
    wrong = api_client.post("/api/v1/auth/login", json={"email": "ann@example.com", "password": "wrong-pass"})
    unknown = api_client.post("/api/v1/auth/login", json={"email": "bob@example.com", "password": PASSWORD})
    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json() == unknown.json()
    assert wrong.json()["error"]["code"] == "invalid_credentials"


def test_locked_account_returns_423(api_client):
    _register(api_client)
    for _ in range(3):
        api_client.post("/api/v1/auth/login", json={"email": "ann@example.com", "password": "wrong-pass"})
    resp = api_client.post("/api/v1/auth/login", json={"email": "ann@example.com", "password": PASSWORD})
    assert resp.status_code == 423
    assert resp.json()["error"]["code"] == "account_locked"


def test_login_rate_limit_returns_429_with_retry_after(api_client):
    body = {"email": "nobody@example.com", "password": PASSWORD}
    for _ in range(4):
        assert api_client.post("/api/v1/auth/login", json=body).status_code == 401
    resp = api_client.post("/api/v1/auth/login", json=body)
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "rate_limited"
    assert int(resp.headers["Retry-After"]) > 0


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


def test_refresh_rotates_token(api_client):
    tokens = _register(api_client).json()
    resp = api_client.post("/api/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert resp.status_code == 200
    assert resp.json()["refreshToken"] != tokens["refreshToken"]

    replay = api_client.post("/api/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert replay.status_code == 401
    assert replay.json()["error"]["code"] == "refresh_token_not_found"


def test_refresh_with_empty_token_returns_422(api_client):
    resp = api_client.post("/api/v1/auth/refresh", json={"refreshToken": ""})
    assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


def test_profile_requires_bearer_token(api_client):
    resp = api_client.get("/api/v1/auth/profile")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_profile_rejects_garbage_token(api_client):
    resp = api_client.get("/api/v1/auth/profile", headers=_bearer("not.a.token"))
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"


def test_profile_returns_current_user(api_client):
    tokens = _register(api_client).json()
    resp = api_client.get("/api/v1/auth/profile", headers=_bearer(tokens["accessToken"]))
    assert resp.status_code == 200
    data = resp.json()
    assert data["email"] == "ann@example.com"
    assert data["activeSessions"] == 1
    assert data["createdAt"]


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------


def test_logout_revokes_refresh_token(api_client):
    tokens = _register(api_client).json()
    resp = api_client.post(
        "/api/v1/auth/logout",
        json={"refreshToken": tokens["refreshToken"]},
        headers=_bearer(tokens["accessToken"]),
    )
    assert resp.status_code == 200
    refreshed = api_client.post("/api/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert refreshed.status_code == 401


def test_logout_revoke_all(api_client):
    first = _register(api_client).json()
    second = api_client.post("/api/v1/auth/login", json={"email": "ann@example.com", "password": PASSWORD}).json()
    resp = api_client.post("/api/v1/auth/logout", json={"revokeAll": True}, headers=_bearer(first["accessToken"]))
    assert resp.status_code == 200

    profile = api_client.get("/api/v1/auth/profile", headers=_bearer(first["accessToken"]))
    assert profile.json()["activeSessions"] == 0
    for token in (first["refreshToken"], second["refreshToken"]):
        assert api_client.post("/api/v1/auth/refresh", json={"refreshToken": token}).status_code == 401


def test_logout_accepts_null_refresh_token(api_client):
    tokens = _register(api_client).json()
    resp = api_client.post(
        "/api/v1/auth/logout",
        json={"refreshToken": None},
        headers=_bearer(tokens["accessToken"]),
    )
    assert resp.status_code == 200
    profile = api_client.get("/api/v1/auth/profile", headers=_bearer(tokens["accessToken"]))
    assert profile.json()["activeSessions"] == 1
    assert profile.json()["lastLogin"] is None


def test_logout_requires_authentication(api_client):
    resp = api_client.post("/api/v1/auth/logout", json={"revokeAll": True})
    assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Internal errors
# ---------------------------------------------------------------------------


def test_storage_failure_returns_generic_500(api_client, monkeypatch):
    def broken(self, email):
        try:
            raise OperationalError("SELECT users", {}, Exception("disk I/O error at /var/lib/coco"))
        except OperationalError as exc:
            raise StorageError() from exc

    monkeypatch.setattr(UserStore, "get_by_email", broken)
    resp = api_client.post("/api/v1/auth/login", json={"email": "ann@example.com", "password": PASSWORD})
    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "internal_error"
    assert "disk" not in resp.text
    assert "SELECT" not in resp.text
