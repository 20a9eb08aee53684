"""
tests/test_api_routes.py -- Integration tests for the /api/v1 surface.

These tests exercise the full stack: middleware (CSRF, trusted host, rate
limiter) -> routing -> auth dependency -> LoginFlow / stores -> exception
handlers. Unit tests of the components would miss the status mapping and the
error envelope, which are what clients actually see.

Fixtures used (from conftest.py):
  - api_client: (client, credential_id) -- one credential "coach" / "Str0ng!Passw0rd"
  - csrf_headers: helper that fetches a CSRF pair and returns the header dict
"""

from __future__ import annotations

from collections.abc import Generator
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

import api.limiter
from api.limiter import limiter

USERNAME = "coach"
PASSWORD = "Str0ng!Passw0rd"
ADMIN_KEY = "adm1n-Key-for-tests-9Qz"
GENERIC_401 = {"error": {"code": "unauthorized", "message": "Not authorized."}}


def _login(client: TestClient, headers: dict, password: str = PASSWORD):
    return client.post("/api/v1/auth/login", json={"username": USERNAME, "password": password}, headers=headers)


class TestHealth:
    def test_health_reports_database(self, api_client: tuple[TestClient, int]) -> None:
        client, _cid = api_client
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["components"] == {"app": "ok", "database": "ok"}


class TestCsrfMiddleware:
    """Every non-safe request needs a cookie/header pair from GET /auth/csrf-token."""

    def test_csrf_token_endpoint_sets_cookie(self, api_client: tuple[TestClient, int]) -> None:
        client, _cid = api_client
        resp = client.get("/api/v1/auth/csrf-token")
        assert resp.status_code == 200
        assert resp.json()["header_name"] == "X-CSRF-Token"
        assert len(resp.json()["csrf_token"]) == 64
        assert "authcore.x-csrf-token" in resp.cookies
        assert resp.headers["Cache-Control"] == "no-store"

    def test_post_without_pair_rejected(self, api_client: tuple[TestClient, int]) -> None:
        client, _cid = api_client
        resp = _login(client, headers={})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "invalid_csrf_token"
        assert resp.json()["error"]["message"] == "Invalid or missing CSRF token."

    def test_post_with_wrong_token_rejected(self, api_client: tuple[TestClient, int], csrf_headers) -> None:
        client, _cid = api_client
        csrf_headers(client)
        resp = _login(client, headers={"X-CSRF-Token": "0" * 64})
        assert resp.status_code == 403

    def test_post_with_pair_accepted(self, api_client: tuple[TestClient, int], csrf_headers) -> None:
        client, _cid = api_client
        resp = _login(client, csrf_headers(client))
        assert resp.status_code == 200

    def test_rejection_carries_cors_headers(self, api_client: tuple[TestClient, int]) -> None:
        """A cross-origin browser client must be able to read the 403 body."""
        client, _cid = api_client
        resp = _login(client, headers={"Origin": "http://localhost"})
        assert resp.status_code == 403
        assert resp.headers["access-control-allow-origin"] == "http://localhost"
        assert resp.json()["error"]["code"] == "invalid_csrf_token"


class TestLogin:
    def test_login_success(self, api_client: tuple[TestClient, int], csrf_headers) -> None:
        client, cid = api_client
        resp = _login(client, csrf_headers(client))
        assert resp.status_code == 200
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 604800
        assert data["subject_id"] == str(cid)
        assert data["username"] == USERNAME
        assert resp.cookies.get("access_token") == data["access_token"]
        assert resp.headers["Cache-Control"] == "no-store"

    def test_wrong_password_is_generic_401(self, api_client: tuple[TestClient, int], csrf_headers) -> None:
        client, _cid = api_client
        resp = _login(client, csrf_headers(client), password="wrong-password")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_unknown_user_matches_wrong_password(self, api_client: tuple[TestClient, int], csrf_headers) -> None:
        client, _cid = api_client
        headers = csrf_headers(client)
        unknown = client.post("/api/v1/auth/login", json={"username": "nobody", "password": PASSWORD}, headers=headers)
        wrong = _login(client, headers, password="wrong-password")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()

    def test_lockout_sequence(self, api_client: tuple[TestClient, int], csrf_headers) -> None:
        client, _cid = api_client
        headers = csrf_headers(client)
        for _ in range(5):
            assert _login(client, headers, password="wrong-password").status_code == 401

        resp = _login(client, headers)
        assert resp.status_code == 423
        error = resp.json()["error"]
        assert error["code"] == "account_locked"
        assert error["remaining_minutes"] == 15
        assert "Please try again in 15 minutes." in error["message"]
        assert resp.headers["Retry-After"] == "900"

    def test_missing_password_is_422(self, api_client: tuple[TestClient, int], csrf_headers) -> None:
        client, _cid = api_client
        resp = client.post("/api/v1/auth/login", json={"username": USERNAME}, headers=csrf_headers(client))
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestSession:
    def test_me_requires_auth(self, api_client: tuple[TestClient, int]) -> None:
        client, _cid = api_client
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json() == GENERIC_401

    def test_garbage_bearer_is_generic_401(self, api_client: tuple[TestClient, int]) -> None:
        client, _cid = api_client
        resp = client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not.a.jwt"})
        assert resp.status_code == 401
        assert resp.json() == GENERIC_401

    def test_me_with_bearer(self, api_client: tuple[TestClient, int], csrf_headers) -> None:
        client, cid = api_client
        token = _login(client, csrf_headers(client)).json()["access_token"]
        client.cookies.clear()
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json()["subject_id"] == str(cid)
        assert resp.json()["username"] == USERNAME

    def test_me_with_cookie(self, api_client: tuple[TestClient, int], csrf_headers) -> None:
        client, _cid = api_client
        _login(client, csrf_headers(client))
        assert client.get("/api/v1/auth/me").status_code == 200

    def test_logout_revokes_token(self, api_client: tuple[TestClient, int], csrf_headers) -> None:
        client, _cid = api_client
        headers = csrf_headers(client)
        token = _login(client, headers).json()["access_token"]
        bearer = {"Authorization": f"Bearer {token}"}

        resp = client.post("/api/v1/auth/logout", headers={**headers, **bearer})
        assert resp.status_code == 200

        client.cookies.delete("access_token")
        resp = client.get("/api/v1/auth/me", headers=bearer)
        assert resp.status_code == 401
        assert resp.json() == GENERIC_401


class TestPassword:
    def test_evaluate(self, api_client: tuple[TestClient, int], csrf_headers) -> None:
        client, _cid = api_client
        resp = client.post("/api/v1/auth/password/evaluate", json={"password": "abc"}, headers=csrf_headers(client))
        assert resp.status_code == 200
        data = resp.json()
        assert data["valid"] is False
        assert len(data["errors"]) == 4
        assert [r["code"] for r in data["requirements"]] == [
            "min_length",
            "uppercase",
            "lowercase",
            "digit",
            "special_char",
        ]
        assert [r["met"] for r in data["requirements"]] == [False, False, True, False, False]

    def test_weak_new_password_is_400(self, api_client: tuple[TestClient, int], csrf_headers) -> None:
        client, _cid = api_client
        headers = csrf_headers(client)
        _login(client, headers)
        resp = client.post(
            "/api/v1/auth/password",
            json={"current_password": PASSWORD, "new_password": "abc"},
            headers=headers,
        )
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "weak_password"
        assert len(error["violations"]) == 4

    def test_change_password_rotates_token(self, api_client: tuple[TestClient, int], csrf_headers) -> None:
        client, _cid = api_client
        headers = csrf_headers(client)
        old_token = _login(client, headers).json()["access_token"]

        resp = client.post(
            "/api/v1/auth/password",
            json={"current_password": PASSWORD, "new_password": "N3w!Passw0rd-2026"},
            headers=headers,
        )
        assert resp.status_code == 200
        new_token = resp.json()["access_token"]
        assert new_token != old_token

        client.cookies.delete("access_token")
        assert client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {old_token}"}).status_code == 401
        assert client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {new_token}"}).status_code == 200

    def test_password_longer_than_bcrypt_limit(self, api_client: tuple[TestClient, int], csrf_headers) -> None:
        client, _cid = api_client
        headers = csrf_headers(client)
        _login(client, headers)
        long_password = "Aa1!" + "x" * 80
        resp = client.post(
            "/api/v1/auth/password",
            json={"current_password": PASSWORD, "new_password": long_password},
            headers=headers,
        )
        assert resp.status_code == 200
        assert _login(client, headers, password=long_password).status_code == 200


class TestAdmin:
    def test_admin_key_required(self, api_client: tuple[TestClient, int]) -> None:
        client, cid = api_client
        assert client.get(f"/api/v1/auth/credentials/{cid}/lockout").status_code == 403
        resp = client.get(f"/api/v1/auth/credentials/{cid}/lockout", headers={"X-Admin-Key": "wrong"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_status_and_unlock(self, api_client: tuple[TestClient, int], csrf_headers) -> None:
        client, cid = api_client
        headers = csrf_headers(client)
        for _ in range(5):
            _login(client, headers, password="wrong-password")

        admin = {"X-Admin-Key": ADMIN_KEY}
        status = client.get(f"/api/v1/auth/credentials/{cid}/lockout", headers=admin)
        assert status.status_code == 200
        assert status.json()["is_locked"] is True
        assert status.json()["failed_attempts"] == 5
        assert status.json()["remaining_minutes"] == 15

        unlocked = client.post(f"/api/v1/auth/credentials/{cid}/unlock", headers={**headers, **admin})
        assert unlocked.status_code == 200
        assert unlocked.json()["is_locked"] is False
        assert unlocked.json()["failed_attempts"] == 0
        assert _login(client, headers).status_code == 200

    def test_revoke_sessions(self, api_client: tuple[TestClient, int], csrf_headers) -> None:
        client, cid = api_client
        headers = csrf_headers(client)
        token = _login(client, headers).json()["access_token"]
        client.cookies.delete("access_token")

        resp = client.post(
            f"/api/v1/auth/credentials/{cid}/revoke-sessions",
            headers={**headers, "X-Admin-Key": ADMIN_KEY},
        )
        assert resp.status_code == 200
        assert resp.json()["credential_id"] == cid
        assert client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"}).status_code == 401

    def test_unknown_credential_is_404(self, api_client: tuple[TestClient, int]) -> None:
        client, _cid = api_client
        resp = client.get("/api/v1/auth/credentials/9999/lockout", headers={"X-Admin-Key": ADMIN_KEY})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"


@pytest.fixture
def tight_login_limit(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Drop LOGIN_RATE_LIMIT to 3/minute with a clean counter store."""
    monkeypatch.setattr(api.limiter, "get_settings", lambda: SimpleNamespace(login_rate_limit="3/minute"))
    limiter.reset()
    yield
    limiter.reset()


class TestRateLimit:
    def test_fourth_login_in_a_minute_is_429(
        self, api_client: tuple[TestClient, int], csrf_headers, tight_login_limit
    ) -> None:
        client, _cid = api_client
        headers = csrf_headers(client)
        for _ in range(3):
            assert _login(client, headers).status_code == 200

        resp = _login(client, headers)
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert "Retry-After" in resp.headers

    def test_limit_applies_only_to_login(
        self, api_client: tuple[TestClient, int], csrf_headers, tight_login_limit
    ) -> None:
        client, _cid = api_client
        headers = csrf_headers(client)
        for _ in range(5):
            resp = client.post("/api/v1/auth/password/evaluate", json={"password": "abc"}, headers=headers)
            assert resp.status_code == 200
