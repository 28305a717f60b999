"""
Tests for the Auth service HTTP surface.
"""

import pytest
from fastapi.testclient import TestClient

from shared.models import Tier
from shared.test_helpers import TEST_INTERNAL_TOKEN

from service_auth.app.main import create_app

PASSWORD = "correct horse battery"


@pytest.fixture
def client(engine):
    """Create test client."""
    return TestClient(create_app(engine))


def _signup_and_login(client, email="owner@example.com"):
    client.post("/auth/signup", json={"email": email, "password": PASSWORD})
    response = client.post("/auth/login", json={"email": email, "password": PASSWORD})
    assert response.status_code == 200
    return response.json()


def test_root_endpoint(client):
    """Test root endpoint."""
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["service"] == "auth"
    assert data["version"] == "1.0.0"


def test_health_check(client):
    """Test health check endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["service"] == "auth"
    assert data["status"] == "ok"
    assert data["dependencies"] == {"store": "ok"}


def test_request_id_is_echoed(client):
    response = client.get("/", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


class TestSignupAndLogin:
    """Password signup, login and session cookie."""

    def test_signup_returns_free_standard_account(self, client):
        response = client.post("/auth/signup", json={"email": "owner@example.com", "password": PASSWORD})

        assert response.status_code == 201
        data = response.json()
        assert data["email"] == "owner@example.com"
        assert data["role"] == "standard"
        assert data["tier"] == "free"

    def test_duplicate_signup_conflicts(self, client):
        client.post("/auth/signup", json={"email": "owner@example.com", "password": PASSWORD})
        response = client.post("/auth/signup", json={"email": "owner@example.com", "password": PASSWORD})

        assert response.status_code == 409
        assert response.json()["code"] == "CONFLICT"

    def test_short_password_rejected(self, client):
        response = client.post("/auth/signup", json={"email": "owner@example.com", "password": "short"})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_login_sets_session_cookie(self, client, engine):
        data = _signup_and_login(client)

        assert data["tokenType"] == "Bearer"
        assert data["expiresIn"] == 900
        assert data["principal"]["role"] == "standard"
        assert client.cookies.get(engine.config.session_cookie_name) == data["accessToken"]

    def test_login_with_wrong_password(self, client):
        client.post("/auth/signup", json={"email": "owner@example.com", "password": PASSWORD})

        response = client.post("/auth/login", json={"email": "owner@example.com", "password": "wrong password"})

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid email or password", "code": "INVALID_CREDENTIALS", "details": {}}


class TestRefreshAndLogout:
    """Refresh rotation and logout over HTTP."""

    def test_refresh_rotates(self, client):
        login = _signup_and_login(client)

        response = client.post("/auth/refresh", json={"refreshToken": login["refreshToken"]})

        assert response.status_code == 200
        assert response.json()["refreshToken"] != login["refreshToken"]

        replay = client.post("/auth/refresh", json={"refreshToken": login["refreshToken"]})
        assert replay.status_code == 401
        assert replay.json()["code"] == "INVALID_TOKEN"

    def test_logout_revokes_refresh_token(self, client, engine):
        login = _signup_and_login(client)

        response = client.post("/auth/logout", json={"refreshToken": login["refreshToken"]})

        assert response.status_code == 200
        assert client.cookies.get(engine.config.session_cookie_name) is None

        refresh = client.post("/auth/refresh", json={"refreshToken": login["refreshToken"]})
        assert refresh.status_code == 401
        assert refresh.json()["code"] == "TOKEN_REVOKED"

    def test_logout_without_token_is_a_no_op(self, client):
        response = client.post("/auth/logout", json={})
        assert response.status_code == 200


class TestApiKeyRoutes:
    """API-key management behind the session gate."""

    def test_requires_a_credential(self, client):
        response = client.get("/auth/api-keys")

        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHENTICATED"

    def test_free_tier_key_creation_is_quota_exceeded(self, client):
        _signup_and_login(client)

        response = client.post("/auth/api-keys", json={"name": "ci"})

        assert response.status_code == 403
        data = response.json()
        assert data["code"] == "QUOTA_EXCEEDED"
        assert data["currentTier"] == "free"
        assert data["upgradeRequired"] is True
        assert data["details"] == {"resource": "api_keys", "current": 0, "limit": 0}

    @pytest.mark.asyncio
    async def test_create_list_and_revoke(self, client, engine, factory):
        account = await factory.create_account(tier=Tier.STARTER)
        pair = await engine.tokens.issue_initial_pair(account.id)
        headers = {"Authorization": f"Bearer {pair.access_token}"}

        created = client.post("/auth/api-keys", json={"name": "ci"}, headers=headers)
        assert created.status_code == 201
        key_id = created.json()["keyId"]
        assert created.json()["key"].startswith("ak_")

        listed = client.get("/auth/api-keys", headers=headers).json()["apiKeys"]
        assert [k["keyId"] for k in listed] == [key_id]
        assert "key" not in listed[0]

        revoked = client.delete(f"/auth/api-keys/{key_id}", headers=headers)
        assert revoked.json() == {"keyId": key_id, "status": "disabled"}


class TestInternalRoutes:
    """Service-to-service routes."""

    def test_token_sweep_requires_internal_token(self, client):
        response = client.post("/internal/jobs/token-sweep")

        assert response.status_code == 401
        assert response.json()["code"] == "INTERNAL_TOKEN_REQUIRED"

    def test_token_sweep(self, client, clock):
        _signup_and_login(client)
        clock.advance(days=8)

        response = client.post("/internal/jobs/token-sweep", headers={"X-Internal-Token": TEST_INTERNAL_TOKEN})

        assert response.status_code == 200
        assert response.json() == {"expiredCount": 1}
