"""
tests/test_api_routes.py -- Integration tests for the /api/v1/users routes.

These tests exercise the full stack: FastAPI routing -> token dependency
injection -> AuthService -> CredentialStore -> response model serialization.

Coverage:
  - create: 201, email_verified dropped, password policy 422, duplicates 409
  - login: token body, signed cookie, Cache-Control, LOGIN_FAILED, injection 400
  - token transport: X-Access-Token, base64 Bearer, query param, signed cookie,
    forged (unsigned) cookie ignored
  - owner checks (403), session revocation through PATCH and change-password
  - logout, delete, password reset flow with a scoped token

Fixtures used (from conftest.py):
  - api_client: TestClient against an isolated per-test SQLite store.
"""

from __future__ import annotations

import base64

from fastapi.testclient import TestClient

from api.main import app

PASSWORD = "correct horse battery"


def _create(client: TestClient, email: str = "a@example.com", password: str = PASSWORD, **extra) -> dict:
    resp = client.post("/api/v1/users", json={"email": email, "password": password, **extra})
    assert resp.status_code == 201, f"Expected 201, got {resp.status_code}: {resp.text}"
    return resp.json()


def _login(client: TestClient, email: str = "a@example.com", password: str = PASSWORD) -> str:
    """Log in and return the token id. Drops the cookie so only explicit headers authenticate."""
    resp = client.post("/api/v1/users/login", json={"email": email, "password": password})
    assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
    client.cookies.clear()
    return resp.json()["id"]


def _auth(token_id: str) -> dict:
    return {"X-Access-Token": token_id}


def _error_code(resp) -> str:
    return resp.json()["error"]["code"]


class TestCreateUser:
    def test_create_returns_public_view(self, api_client: TestClient) -> None:
        data = _create(api_client, emailVerified=True)
        assert data["email"] == "a@example.com"
        assert data["email_verified"] is False
        assert "password" not in data

    def test_password_too_long(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/users", json={"email": "a@example.com", "password": "p" * 73})
        assert resp.status_code == 422
        assert _error_code(resp) == "PASSWORD_TOO_LONG"

    def test_duplicate_email(self, api_client: TestClient) -> None:
        _create(api_client)
        resp = api_client.post("/api/v1/users", json={"email": "a@example.com", "password": PASSWORD})
        assert resp.status_code == 409
        assert _error_code(resp) == "USER_EXISTS"

    def test_unknown_field_rejected(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/users", json={"email": "a@example.com", "password": PASSWORD, "role": "x"})
        assert resp.status_code == 422
        assert _error_code(resp) == "VALIDATION_ERROR"


class TestLogin:
    def test_login_sets_signed_cookie_and_no_store(self, api_client: TestClient) -> None:
        _create(api_client)
        resp = api_client.post("/api/v1/users/login", json={"email": "a@example.com", "password": PASSWORD})
        assert resp.status_code == 200
        token_id = resp.json()["id"]
        assert len(token_id) == 64
        assert resp.headers["Cache-Control"] == "no-store"
        cookie = resp.cookies["access_token"]
        assert cookie != token_id
        assert cookie.startswith(token_id + ".")

    def test_include_user(self, api_client: TestClient) -> None:
        user = _create(api_client)
        resp = api_client.post(
            "/api/v1/users/login?include=user", json={"email": "a@example.com", "password": PASSWORD}
        )
        assert resp.json()["user"]["id"] == user["id"]

    def test_bad_password(self, api_client: TestClient) -> None:
        _create(api_client)
        resp = api_client.post("/api/v1/users/login", json={"email": "a@example.com", "password": "wrong"})
        assert resp.status_code == 401
        assert _error_code(resp) == "LOGIN_FAILED"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_operator_object_rejected(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/users/login", json={"email": {"neq": ""}, "password": "x"})
        assert resp.status_code == 400
        assert _error_code(resp) == "INVALID_EMAIL"


class TestTokenTransport:
    def test_access_token_header(self, api_client: TestClient) -> None:
        user = _create(api_client)
        token_id = _login(api_client)
        resp = api_client.get("/api/v1/users/me", headers=_auth(token_id))
        assert resp.status_code == 200
        assert resp.json()["id"] == user["id"]

    def test_base64_bearer(self, api_client: TestClient) -> None:
        _create(api_client)
        token_id = _login(api_client)
        bearer = base64.b64encode(token_id.encode()).decode()
        resp = api_client.get("/api/v1/users/me", headers={"Authorization": f"Bearer {bearer}"})
        assert resp.status_code == 200

    def test_query_param(self, api_client: TestClient) -> None:
        _create(api_client)
        token_id = _login(api_client)
        assert api_client.get(f"/api/v1/users/me?access_token={token_id}").status_code == 200

    def test_signed_cookie_from_login(self, api_client: TestClient) -> None:
        _create(api_client)
        api_client.post("/api/v1/users/login", json={"email": "a@example.com", "password": PASSWORD})
        assert api_client.get("/api/v1/users/me").status_code == 200

    def test_forged_cookie_ignored(self, api_client: TestClient) -> None:
        _create(api_client)
        token_id = _login(api_client)
        api_client.cookies.set("access_token", token_id)
        resp = api_client.get("/api/v1/users/me")
        assert resp.status_code == 401
        assert _error_code(resp) == "AUTHORIZATION_REQUIRED"

    def test_no_token(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/users/me")
        assert resp.status_code == 401
        assert _error_code(resp) == "AUTHORIZATION_REQUIRED"


class TestOwnedRoutes:
    def test_other_users_record_forbidden(self, api_client: TestClient) -> None:
        _create(api_client)
        other = _create(api_client, email="b@example.com")
        token_id = _login(api_client)
        resp = api_client.get(f"/api/v1/users/{other['id']}", headers=_auth(token_id))
        assert resp.status_code == 403
        assert _error_code(resp) == "ACCESS_DENIED"

    def test_patch_password_keeps_only_acting_session(self, api_client: TestClient) -> None:
        user = _create(api_client)
        acting = _login(api_client)
        other = _login(api_client)
        resp = api_client.patch(f"/api/v1/users/{user['id']}", json={"password": "new password"}, headers=_auth(acting))
        assert resp.status_code == 200
        assert api_client.get("/api/v1/users/me", headers=_auth(acting)).status_code == 200
        assert api_client.get("/api/v1/users/me", headers=_auth(other)).status_code == 401

    def test_patch_name_keeps_all_sessions(self, api_client: TestClient) -> None:
        user = _create(api_client)
        acting = _login(api_client)
        other = _login(api_client)
        resp = api_client.patch(f"/api/v1/users/{user['id']}", json={"name": "Alice"}, headers=_auth(acting))
        assert resp.json()["name"] == "Alice"
        assert api_client.get("/api/v1/users/me", headers=_auth(other)).status_code == 200

    def test_change_password(self, api_client: TestClient) -> None:
        _create(api_client)
        acting = _login(api_client)
        other = _login(api_client)
        resp = api_client.post(
            "/api/v1/users/change-password",
            json={"oldPassword": PASSWORD, "newPassword": "new password"},
            headers=_auth(acting),
        )
        assert resp.status_code == 204
        assert api_client.get("/api/v1/users/me", headers=_auth(other)).status_code == 401
        assert _login(api_client, password="new password")

    def test_change_password_wrong_current(self, api_client: TestClient) -> None:
        _create(api_client)
        token_id = _login(api_client)
        resp = api_client.post(
            "/api/v1/users/change-password",
            json={"old_password": "nope", "new_password": "new password"},
            headers=_auth(token_id),
        )
        assert resp.status_code == 400
        assert _error_code(resp) == "INVALID_PASSWORD"

    def test_delete_user_removes_tokens(self, api_client: TestClient) -> None:
        user = _create(api_client)
        token_id = _login(api_client)
        assert api_client.delete(f"/api/v1/users/{user['id']}", headers=_auth(token_id)).status_code == 204
        assert api_client.get("/api/v1/users/me", headers=_auth(token_id)).status_code == 401
        resp = api_client.post("/api/v1/users/login", json={"email": "a@example.com", "password": PASSWORD})
        assert resp.status_code == 401


class TestLogout:
    def test_logout_then_token_unusable(self, api_client: TestClient) -> None:
        _create(api_client)
        token_id = _login(api_client)
        assert api_client.post("/api/v1/users/logout", headers=_auth(token_id)).status_code == 204
        assert api_client.get("/api/v1/users/me", headers=_auth(token_id)).status_code == 401

    def test_logout_without_token(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/users/logout")
        assert resp.status_code == 401
        assert _error_code(resp) == "AUTHORIZATION_REQUIRED"


class TestPasswordReset:
    def _reset_token(self, api_client: TestClient, email: str = "a@example.com") -> str:
        service = app.state.auth_service
        reset = api_client.portal.call(service.reset_password, email)
        return reset.token.id

    def test_request_for_unknown_email_is_204(self, api_client: TestClient) -> None:
        assert api_client.post("/api/v1/users/reset", json={"email": "nobody@example.com"}).status_code == 204

    def test_request_for_known_email_is_204(self, api_client: TestClient) -> None:
        _create(api_client)
        assert api_client.post("/api/v1/users/reset", json={"email": "a@example.com"}).status_code == 204

    def test_reset_flow(self, api_client: TestClient) -> None:
        _create(api_client)
        session = _login(api_client)
        reset_id = self._reset_token(api_client)

        resp = api_client.get("/api/v1/users/me", headers=_auth(reset_id))
        assert resp.status_code == 403
        assert _error_code(resp) == "ACCESS_DENIED"

        resp = api_client.post(
            "/api/v1/users/reset-password", json={"newPassword": "after reset"}, headers=_auth(reset_id)
        )
        assert resp.status_code == 204
        assert api_client.get("/api/v1/users/me", headers=_auth(session)).status_code == 401
        assert api_client.post(
            "/api/v1/users/reset-password", json={"newPassword": "again"}, headers=_auth(reset_id)
        ).status_code == 401
        assert _login(api_client, password="after reset")

    def test_general_token_cannot_reset(self, api_client: TestClient) -> None:
        _create(api_client)
        token_id = _login(api_client)
        resp = api_client.post(
            "/api/v1/users/reset-password", json={"newPassword": "after reset"}, headers=_auth(token_id)
        )
        assert resp.status_code == 403

    def test_reset_password_too_long(self, api_client: TestClient) -> None:
        _create(api_client)
        reset_id = self._reset_token(api_client)
        resp = api_client.post(
            "/api/v1/users/reset-password", json={"newPassword": "p" * 73}, headers=_auth(reset_id)
        )
        assert resp.status_code == 422
        assert _error_code(resp) == "PASSWORD_TOO_LONG"
