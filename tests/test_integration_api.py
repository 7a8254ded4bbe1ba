"""End-to-end HTTP flows through the FastAPI app.

Covers sign-up and confirmation, login with and without remember-me,
per-device session management, password reset and the error envelope.
"""

import pytest
from fastapi.testclient import TestClient

from gatehouse import app as app_module
from gatehouse.service.runtime import get_runtime
from gatehouse.service.tokens import TokenPurpose

PASSWORD = "correct-horse-battery"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _outbox():
    return get_runtime().mailer


def _sign_up(client, email="alice@example.com"):
    response = client.post(
        "/v1/users",
        json={"email": email, "password": PASSWORD, "password_confirmation": PASSWORD},
    )
    assert response.status_code == 201
    return response.json()["data"]["user"]


def _confirmed_user(client, email="alice@example.com"):
    user = _sign_up(client, email)
    token = _outbox().last(TokenPurpose.CONFIRM_EMAIL).token
    assert client.get(f"/v1/confirmations/{token}").status_code == 200
    # Confirmation logs the browser in; sign out so the next step starts anonymous
    assert client.delete("/v1/sessions").status_code == 200
    return user


def _login(client, email="alice@example.com", password=PASSWORD, **extra):
    return client.post("/v1/sessions", json={"email": email, "password": password, **extra})


class TestSignUpAndConfirm:
    def test_sign_up_then_confirm_logs_in(self, client):
        user = _sign_up(client)
        assert user["confirmation_state"] == "unconfirmed"

        message = _outbox().last(TokenPurpose.CONFIRM_EMAIL)
        assert message.to == "alice@example.com"

        response = client.get(f"/v1/confirmations/{message.token}")
        assert response.status_code == 200
        assert response.json()["data"]["user"]["confirmation_state"] == "confirmed"

        account = client.get("/v1/account")
        assert account.status_code == 200
        assert account.json()["data"]["email"] == "alice@example.com"

    def test_unconfirmed_login_is_refused(self, client):
        _sign_up(client)
        response = _login(client)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_unconfirmed"

    def test_duplicate_sign_up(self, client):
        _sign_up(client)
        response = client.post(
            "/v1/users",
            json={
                "email": "ALICE@example.com",
                "password": PASSWORD,
                "password_confirmation": PASSWORD,
            },
        )
        assert response.status_code == 422
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"] == {"email": ["has already been taken"]}

    def test_bad_token(self, client):
        response = client.get("/v1/confirmations/garbage")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_or_expired_token"

    def test_confirming_another_account_replaces_remembered_login(self, client):
        _confirmed_user(client)
        _login(client, remember_me=True)
        assert client.cookies.get("remember_token")

        _sign_up(TestClient(app_module.app), "bob@example.com")
        token = _outbox().last(TokenPurpose.CONFIRM_EMAIL).token
        assert client.get(f"/v1/confirmations/{token}").status_code == 200

        assert client.cookies.get("remember_token") is None
        assert client.get("/v1/account").json()["data"]["email"] == "bob@example.com"

    def test_confirmation_request_reveals_nothing(self, client):
        _confirmed_user(client)
        known = client.post("/v1/confirmations", json={"email": "alice@example.com"})
        unknown = client.post("/v1/confirmations", json={"email": "nobody@example.com"})
        assert known.status_code == unknown.status_code == 202
        assert known.json()["data"] == unknown.json()["data"]


class TestLogin:
    def test_wrong_password_and_unknown_email_look_the_same(self, client):
        _confirmed_user(client)
        wrong = _login(client, password="wrong-password")
        unknown = _login(client, email="nobody@example.com")
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]

    def test_login_sets_cookies(self, client):
        _confirmed_user(client)
        response = _login(client, remember_me=True)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["remembered"] is True
        assert "session_id" in response.cookies
        assert "remember_token" in response.cookies

    def test_remember_me_restores_login_without_session_cookie(self, client):
        _confirmed_user(client)
        _login(client, remember_me=True)
        remember = client.cookies.get("remember_token")

        fresh = TestClient(app_module.app)
        fresh.cookies.set("remember_token", remember)
        assert fresh.get("/v1/account").status_code == 200

    def test_already_signed_in_cannot_log_in_again(self, client):
        _confirmed_user(client)
        _login(client)
        response = _login(client)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "already_authenticated"

    def test_logout(self, client):
        _confirmed_user(client)
        _login(client, remember_me=True)
        assert client.delete("/v1/sessions").status_code == 200
        assert client.get("/v1/account").status_code == 401

    def test_return_to_is_offered_after_login(self, client):
        _confirmed_user(client)
        denied = client.get("/v1/account/sessions")
        assert denied.status_code == 401
        assert denied.json()["error"]["code"] == "unauthorized"

        response = _login(client)
        assert response.json()["data"]["return_to"] == "/v1/account/sessions"


class TestSessions:
    def test_revoke_other_device(self, client):
        _confirmed_user(client)
        other = TestClient(app_module.app)
        _login(other)
        _login(client)

        listing = client.get("/v1/account/sessions").json()["data"]["items"]
        assert len(listing) == 2
        current = [item for item in listing if item["current"]]
        assert len(current) == 1
        other_id = next(item["id"] for item in listing if not item["current"])

        response = client.delete(f"/v1/account/sessions/{other_id}")
        assert response.status_code == 200
        assert response.json()["data"]["signed_in"] is True
        assert client.get("/v1/account").status_code == 200
        assert other.get("/v1/account").status_code == 401

    def test_revoke_own_session_signs_out(self, client):
        _confirmed_user(client)
        session_id = _login(client).json()["data"]["active_session_id"]
        response = client.delete(f"/v1/account/sessions/{session_id}")
        assert response.json()["data"]["signed_in"] is False
        assert client.get("/v1/account").status_code == 401

    def test_unknown_session_is_not_found(self, client):
        _confirmed_user(client)
        _login(client)
        response = client.delete("/v1/account/sessions/00000000-0000-0000-0000-000000000000")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_revoke_all(self, client):
        _confirmed_user(client)
        other = TestClient(app_module.app)
        _login(other)
        _login(client)
        response = client.delete("/v1/account/sessions")
        assert response.json()["data"]["revoked"] == 2
        assert client.get("/v1/account").status_code == 401
        assert other.get("/v1/account").status_code == 401


class TestPasswordReset:
    def test_reset_flow(self, client):
        _confirmed_user(client)
        response = client.post("/v1/passwords", json={"email": "alice@example.com"})
        assert response.status_code == 202
        token = _outbox().last(TokenPurpose.RESET_PASSWORD).token

        assert client.get(f"/v1/passwords/{token}").status_code == 200
        response = client.put(
            f"/v1/passwords/{token}",
            json={"password": "a-new-password", "password_confirmation": "a-new-password"},
        )
        assert response.status_code == 200
        assert client.get("/v1/account").status_code == 401
        assert _login(client, password="a-new-password").status_code == 200

    def test_unknown_email_looks_like_success(self, client):
        response = client.post("/v1/passwords", json={"email": "nobody@example.com"})
        assert response.status_code == 202
        assert _outbox().last(TokenPurpose.RESET_PASSWORD) is None

    def test_unconfirmed_email_is_told_to_confirm(self, client):
        _sign_up(client)
        response = client.post("/v1/passwords", json={"email": "alice@example.com"})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_unconfirmed"
        assert _outbox().last(TokenPurpose.RESET_PASSWORD) is None

    def test_mismatched_passwords(self, client):
        _confirmed_user(client)
        client.post("/v1/passwords", json={"email": "alice@example.com"})
        token = _outbox().last(TokenPurpose.RESET_PASSWORD).token
        response = client.put(
            f"/v1/passwords/{token}",
            json={"password": "a-new-password", "password_confirmation": "different"},
        )
        assert response.status_code == 422
        assert "password_confirmation" in response.json()["error"]["details"]


class TestAccount:
    def test_email_change_requires_reconfirmation(self, client):
        _confirmed_user(client)
        _login(client)
        response = client.put(
            "/v1/account",
            json={"current_password": PASSWORD, "email": "alice2@example.com"},
        )
        assert response.status_code == 200
        user = response.json()["data"]["user"]
        assert user["email"] == "alice@example.com"
        assert user["unconfirmed_email"] == "alice2@example.com"
        assert user["confirmation_state"] == "reconfirming"
        assert response.json()["data"]["message"] == "Check your email for confirmation instructions."

        token = _outbox().last(TokenPurpose.CONFIRM_EMAIL).token
        confirmed = client.get(f"/v1/confirmations/{token}")
        assert confirmed.status_code == 200
        assert client.get("/v1/account").json()["data"]["email"] == "alice2@example.com"

    def test_reconfirm_race_returns_conflict(self, client):
        _confirmed_user(client)
        _login(client)
        client.put(
            "/v1/account",
            json={"current_password": PASSWORD, "email": "taken@example.com"},
        )
        token = _outbox().last(TokenPurpose.CONFIRM_EMAIL).token
        get_runtime().store.create_user("taken@example.com", "hash")

        response = client.get(f"/v1/confirmations/{token}")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "email_no_longer_available"
        assert client.get("/v1/account").json()["data"]["email"] == "alice@example.com"

    def test_wrong_current_password(self, client):
        _confirmed_user(client)
        _login(client)
        response = client.put(
            "/v1/account", json={"current_password": "nope", "email": "new@example.com"}
        )
        assert response.status_code == 401

    def test_delete_account(self, client):
        _confirmed_user(client)
        _login(client)
        assert client.delete("/v1/account").status_code == 200
        assert client.get("/v1/account").status_code == 401
        assert _login(client).status_code == 401


class TestEnvelope:
    def test_request_validation_uses_envelope(self, client):
        response = client.post("/v1/users", json={"email": "a@example.com"})
        assert response.status_code == 422
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert "password" in body["error"]["details"]

    def test_request_id_is_echoed(self, client):
        response = client.get("/v1/account", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_health_and_security_headers(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
