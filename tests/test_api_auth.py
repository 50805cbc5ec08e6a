"""HTTP tests for the /v1/auth endpoints and the response envelope."""

import uuid

import pytest
from fastapi.testclient import TestClient

from authcore import app as app_module
from authcore.service.runtime import get_runtime
from authcore.storage.models import Credential, Identity


@pytest.fixture
def client():
    with TestClient(app_module.app) as test_client:
        yield test_client


@pytest.fixture
def add_identity():
    def _add(username="alice", password="Correct1pass", role="viewer"):
        runtime = get_runtime()
        identity = Identity(
            id=str(uuid.uuid4()),
            username=username,
            display_name=username.title(),
            email=f"{username}@example.com",
            role=role,
        )
        salt = runtime.hasher.generate_salt()
        credential = Credential(identity.id, runtime.hasher.hash(password, salt), salt)
        return runtime.store.create_identity(identity, credential)

    return _add


@pytest.fixture
def recording_channel(client, channel):
    runtime = get_runtime()
    runtime.two_factor.channel = channel
    runtime.recovery.channel = channel
    return channel


def _login(client, username="alice", password="Correct1pass", **extra):
    return client.post("/v1/auth/login", json={"username": username, "password": password, **extra})


def _bearer(session_id):
    return {"Authorization": f"Bearer {session_id}"}


class TestLogin:
    def test_login_returns_session_envelope(self, client, add_identity):
        add_identity()
        response = _login(client)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["request_id"]
        session = body["data"]["session"]
        assert session["session_id"]
        assert session["renewable"] is True
        assert session["identity"]["username"] == "alice"
        assert "agenda.view" in session["identity"]["permissions"]
        assert response.headers["Cache-Control"].startswith("no-store")

    def test_wrong_password_is_401(self, client, add_identity):
        add_identity()
        response = _login(client, password="Wrong1pass")
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "invalid_credentials"

    def test_unknown_user_matches_wrong_password(self, client, add_identity):
        add_identity()
        unknown = _login(client, username="ghost").json()["error"]
        wrong = _login(client, password="Wrong1pass").json()["error"]
        assert unknown == wrong

    def test_lockout_returns_retry_after(self, client, add_identity):
        add_identity()
        for _ in range(5):
            _login(client, password="Wrong1pass")
        response = _login(client)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "locked"
        assert int(response.headers["Retry-After"]) > 0
        assert response.json()["error"]["details"]["retry_after_seconds"] > 0

    def test_malformed_username_is_400(self, client):
        response = _login(client, username="bad name!")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "input_invalid"

    def test_missing_field_is_400(self, client):
        response = client.post("/v1/auth/login", json={"username": "alice"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "input_invalid"
        assert "body.password" in body["error"]["details"]["fields"]

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"
        assert response.json()["status"] == "healthy"


class TestTwoFactor:
    def test_manager_gets_pending_id(self, client, add_identity, recording_channel):
        add_identity("maria", role="manager")
        body = _login(client, username="maria").json()
        assert body["data"]["requires_two_factor"] is True
        assert body["data"]["session"] is None
        assert body["data"]["pending_id"]
        assert len(recording_channel.codes) == 1

    def test_verify_issues_session(self, client, add_identity, recording_channel):
        add_identity("maria", role="manager")
        pending_id = _login(client, username="maria").json()["data"]["pending_id"]
        response = client.post(
            "/v1/auth/2fa/verify",
            json={"pending_id": pending_id, "code": recording_channel.last_code},
        )
        assert response.status_code == 200
        assert response.json()["data"]["session"]["identity"]["role"] == "manager"

    def test_wrong_code_keeps_pending_id(self, client, add_identity, recording_channel):
        add_identity("maria", role="manager")
        pending_id = _login(client, username="maria").json()["data"]["pending_id"]
        wrong = "000000" if recording_channel.last_code != "000000" else "111111"
        response = client.post("/v1/auth/2fa/verify", json={"pending_id": pending_id, "code": wrong})
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "invalid_credentials"
        assert error["details"]["pending_id"] == pending_id
        retry = client.post(
            "/v1/auth/2fa/verify",
            json={"pending_id": pending_id, "code": recording_channel.last_code},
        )
        assert retry.status_code == 200

    def test_unknown_pending_id(self, client):
        response = client.post("/v1/auth/2fa/verify", json={"pending_id": "nope", "code": "123456"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "challenge_expired"

    def test_force_two_factor_for_viewer(self, client, add_identity, recording_channel):
        add_identity()
        body = _login(client, force_two_factor=True).json()
        assert body["data"]["requires_two_factor"] is True


class TestSessionEndpoints:
    def test_session_requires_bearer(self, client):
        response = client.get("/v1/auth/session")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_session_and_logout(self, client, add_identity):
        add_identity()
        session_id = _login(client).json()["data"]["session"]["session_id"]
        current = client.get("/v1/auth/session", headers=_bearer(session_id))
        assert current.status_code == 200
        assert current.json()["data"]["session_id"] == session_id

        assert client.post("/v1/auth/logout", headers=_bearer(session_id)).status_code == 200
        after = client.get("/v1/auth/session", headers=_bearer(session_id))
        assert after.status_code == 401

    def test_logout_without_session_is_ok(self, client):
        response = client.post("/v1/auth/logout")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_permission_check(self, client, add_identity):
        add_identity()
        session_id = _login(client).json()["data"]["session"]["session_id"]
        allowed = client.get("/v1/auth/permissions/agenda.view", headers=_bearer(session_id))
        denied = client.get("/v1/auth/permissions/users.view", headers=_bearer(session_id))
        assert allowed.json()["data"]["allowed"] is True
        assert denied.json()["data"]["allowed"] is False


class TestRecovery:
    def test_request_response_is_constant(self, client, add_identity, recording_channel):
        add_identity()
        known = client.post("/v1/auth/recovery/request", json={"email": "alice@example.com"})
        unknown = client.post("/v1/auth/recovery/request", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]
        assert len(recording_channel.tokens) == 1

    def test_full_reset_flow(self, client, add_identity, recording_channel):
        add_identity()
        client.post("/v1/auth/recovery/request", json={"email": "alice@example.com"})
        token = recording_channel.last_token

        validated = client.post("/v1/auth/recovery/validate", json={"token": token})
        assert validated.json()["data"] == {"valid": True, "email": "alice@example.com"}

        reset = client.post(
            "/v1/auth/recovery/reset", json={"token": token, "new_password": "Fresh1password"}
        )
        assert reset.status_code == 200

        again = client.post(
            "/v1/auth/recovery/reset", json={"token": token, "new_password": "Fresh1password"}
        )
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "token_not_found"
        assert _login(client, password="Fresh1password").status_code == 200

    def test_weak_password_rejected(self, client, add_identity, recording_channel):
        add_identity()
        client.post("/v1/auth/recovery/request", json={"email": "alice@example.com"})
        response = client.post(
            "/v1/auth/recovery/reset",
            json={"token": recording_channel.last_token, "new_password": "weak"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "weak_password"

    def test_unknown_token(self, client):
        response = client.post("/v1/auth/recovery/validate", json={"token": "missing"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "token_not_found"
