"""Integration tests for authentication flows.

Covers:
- Login with generic failures for unknown user and wrong password
- Single active session: a newer login replaces older tokens
- Deactivated accounts (login and already-issued tokens)
- logout-all and password change invalidating the caller's token
- Admin-only identity management
"""

import pytest
from fastapi.testclient import TestClient

from labrecords import app as app_module
from labrecords.service.runtime import get_runtime
from conftest import (
    ADMIN_PASSWORD,
    ADMIN_USERNAME,
    STANDARD_PASSWORD,
    STANDARD_USERNAME,
)


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _login(client, username, password):
    return client.post("/v1/auth/login", json={"username": username, "password": password})


def _token(client, username, password):
    response = _login(client, username, password)
    assert response.status_code == 200, f"Login failed: {response.text}"
    return response.json()["data"]["token"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _error(response):
    body = response.json()
    assert body["status"] == "error"
    return body["error"]


class TestLogin:
    def test_login_returns_token_and_identity(self, client, standard_identity):
        response = _login(client, STANDARD_USERNAME, STANDARD_PASSWORD)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["identity"]["username"] == STANDARD_USERNAME
        assert data["identity"]["company_name"] == "Béton Contrôle"
        assert "X-RateLimit-Limit" in response.headers

    def test_unknown_user_and_wrong_password_look_identical(self, client, standard_identity):
        unknown = _login(client, "nobody", "Whatever123!")
        wrong = _login(client, STANDARD_USERNAME, "WrongPassword123!")

        assert unknown.status_code == wrong.status_code == 401
        assert _error(unknown)["code"] == _error(wrong)["code"] == "unauthorized"
        assert _error(unknown)["message"] == _error(wrong)["message"]

    def test_missing_fields_are_validation_errors(self, client):
        response = client.post("/v1/auth/login", json={"username": "x"})
        assert response.status_code == 422
        assert _error(response)["code"] == "validation_error"

    def test_login_rate_limited_per_username(self, client, standard_identity):
        limit = get_runtime().settings.login_rate_limit_per_minute
        for _ in range(limit):
            _login(client, STANDARD_USERNAME, "WrongPassword123!")

        response = _login(client, STANDARD_USERNAME, STANDARD_PASSWORD)
        assert response.status_code == 429
        assert _error(response)["code"] == "rate_limited"
        assert _error(response)["details"]["retry_after"] > 0


class TestSingleSession:
    def test_second_login_replaces_first_token(self, client, standard_identity):
        first = _token(client, STANDARD_USERNAME, STANDARD_PASSWORD)
        assert client.get("/v1/me", headers=_auth(first)).status_code == 200

        second = _token(client, STANDARD_USERNAME, STANDARD_PASSWORD)

        stale = client.get("/v1/me", headers=_auth(first))
        assert stale.status_code == 401
        assert _error(stale)["code"] == "SESSION_REPLACED"
        assert client.get("/v1/me", headers=_auth(second)).status_code == 200

    def test_missing_and_garbage_tokens_are_generic(self, client):
        missing = client.get("/v1/me")
        garbage = client.get("/v1/me", headers=_auth("not.a.token"))

        assert missing.status_code == garbage.status_code == 401
        assert _error(missing)["code"] == "unauthorized"
        assert _error(garbage)["code"] == "unauthorized"


class TestDeactivation:
    def test_deactivated_login_is_forbidden(self, client, standard_identity):
        get_runtime().store.set_identity_active(standard_identity.id, False)

        response = _login(client, STANDARD_USERNAME, STANDARD_PASSWORD)
        assert response.status_code == 403
        assert _error(response)["code"] == "account_deactivated"

    def test_deactivation_rejects_existing_token(self, client, admin_identity, standard_identity):
        admin_token = _token(client, ADMIN_USERNAME, ADMIN_PASSWORD)
        user_token = _token(client, STANDARD_USERNAME, STANDARD_PASSWORD)

        response = client.post(
            f"/v1/admin/identities/{standard_identity.id}/active",
            json={"active": False},
            headers=_auth(admin_token),
        )
        assert response.status_code == 200
        assert response.json()["data"]["is_active"] is False

        rejected = client.get("/v1/me", headers=_auth(user_token))
        assert rejected.status_code == 403
        assert _error(rejected)["code"] == "account_deactivated"

    def test_reactivation_requires_fresh_login(self, client, admin_identity, standard_identity):
        admin_token = _token(client, ADMIN_USERNAME, ADMIN_PASSWORD)
        user_token = _token(client, STANDARD_USERNAME, STANDARD_PASSWORD)
        path = f"/v1/admin/identities/{standard_identity.id}/active"

        client.post(path, json={"active": False}, headers=_auth(admin_token))
        client.post(path, json={"active": True}, headers=_auth(admin_token))

        stale = client.get("/v1/me", headers=_auth(user_token))
        assert stale.status_code == 401
        assert _error(stale)["code"] == "SESSION_REPLACED"
        fresh = _token(client, STANDARD_USERNAME, STANDARD_PASSWORD)
        assert client.get("/v1/me", headers=_auth(fresh)).status_code == 200

    def test_admin_cannot_toggle_self(self, client, admin_identity):
        admin_token = _token(client, ADMIN_USERNAME, ADMIN_PASSWORD)
        response = client.post(
            f"/v1/admin/identities/{admin_identity.id}/active",
            json={"active": False},
            headers=_auth(admin_token),
        )
        assert response.status_code == 400
        assert _error(response)["code"] == "validation_error"


class TestLogoutAll:
    def test_logout_all_invalidates_callers_token(self, client, standard_identity):
        token = _token(client, STANDARD_USERNAME, STANDARD_PASSWORD)

        response = client.post("/v1/auth/logout-all", headers=_auth(token))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token"] is None
        assert data["session_version"] == 2

        after = client.get("/v1/me", headers=_auth(token))
        assert after.status_code == 401
        assert _error(after)["code"] == "SESSION_REPLACED"

    def test_logout_all_with_reissue(self, client, standard_identity):
        token = _token(client, STANDARD_USERNAME, STANDARD_PASSWORD)

        response = client.post("/v1/auth/logout-all?reissue=true", headers=_auth(token))
        assert response.status_code == 200
        fresh = response.json()["data"]["token"]

        assert client.get("/v1/me", headers=_auth(token)).status_code == 401
        assert client.get("/v1/me", headers=_auth(fresh)).status_code == 200


class TestPasswordChange:
    def test_password_change_reissues_and_logs_out_others(self, client, standard_identity):
        other_device = _token(client, STANDARD_USERNAME, STANDARD_PASSWORD)
        this_device = _token(client, STANDARD_USERNAME, STANDARD_PASSWORD)
        assert client.get("/v1/me", headers=_auth(other_device)).status_code == 401

        response = client.post(
            "/v1/auth/password",
            json={"current_password": STANDARD_PASSWORD, "new_password": "NewTechPassword456!"},
            headers=_auth(this_device),
        )
        assert response.status_code == 200
        new_token = response.json()["data"]["token"]

        assert client.get("/v1/me", headers=_auth(this_device)).status_code == 401
        assert client.get("/v1/me", headers=_auth(new_token)).status_code == 200
        assert _login(client, STANDARD_USERNAME, STANDARD_PASSWORD).status_code == 401
        assert _login(client, STANDARD_USERNAME, "NewTechPassword456!").status_code == 200

    def test_wrong_current_password(self, client, standard_identity):
        token = _token(client, STANDARD_USERNAME, STANDARD_PASSWORD)
        response = client.post(
            "/v1/auth/password",
            json={"current_password": "Nope12345678!", "new_password": "NewTechPassword456!"},
            headers=_auth(token),
        )
        assert response.status_code == 401
        assert client.get("/v1/me", headers=_auth(token)).status_code == 200


class TestAdminIdentities:
    def test_standard_user_gets_forbidden(self, client, standard_identity):
        token = _token(client, STANDARD_USERNAME, STANDARD_PASSWORD)
        response = client.get("/v1/admin/identities", headers=_auth(token))
        assert response.status_code == 403
        assert _error(response)["code"] == "forbidden"

    def test_admin_creates_and_lists_identities(self, client, admin_identity):
        token = _token(client, ADMIN_USERNAME, ADMIN_PASSWORD)

        created = client.post(
            "/v1/admin/identities",
            json={"username": "operator", "password": "OperatorPass123!", "company_name": "Lab Nord"},
            headers=_auth(token),
        )
        assert created.status_code == 201
        assert created.json()["data"]["role"] == "standard"

        duplicate = client.post(
            "/v1/admin/identities",
            json={"username": "operator", "password": "OperatorPass123!"},
            headers=_auth(token),
        )
        assert duplicate.status_code == 409

        listing = client.get("/v1/admin/identities", headers=_auth(token))
        usernames = {item["username"] for item in listing.json()["data"]["items"]}
        assert usernames == {ADMIN_USERNAME, "operator"}

    def test_unknown_identity_toggle(self, client, admin_identity):
        token = _token(client, ADMIN_USERNAME, ADMIN_PASSWORD)
        response = client.post(
            "/v1/admin/identities/missing/active",
            json={"active": False},
            headers=_auth(token),
        )
        assert response.status_code == 404


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert response.headers["API-Version"] == app_module.__version__


def test_unknown_route_uses_envelope(client):
    response = client.get("/v1/nowhere")
    assert response.status_code == 404
    assert response.json()["status"] == "error"
    assert _error(response)["code"] == "not_found"
