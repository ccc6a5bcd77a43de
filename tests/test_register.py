"""HTTP tests for POST /api/auth/register."""

import pytest
from fastapi.testclient import TestClient

from conftest import OLD_PASSWORD, load_cookies
from flashdeck import app as app_module
from flashdeck.storage.errors import StoreError

NEW_USER = {"email": "Bob@Example.com", "password": "Fresh1!pass"}
SESSION_COOKIES = ("access_token", "refresh_token", "user_id", "csrf_token")


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, body=None):
    return client.post("/api/auth/register", json=body or NEW_USER)


class UnwritableProfiles:
    def create_profile(self, user_id):
        raise StoreError("connection refused")


class TestRegister:
    """Public endpoint; no session or CSRF token needed."""

    def test_creates_user_profile_and_session(self, client, runtime):
        response = _register(client)

        assert response.status_code == 201
        user = response.json()["data"]["user"]
        assert user["email"] == "bob@example.com"
        assert runtime.store.get_is_deleted(user["id"]) is False
        assert runtime.identity.verify_password(user["id"], NEW_USER["password"])
        assert {h.split("=", 1)[0] for h in response.headers.get_list("set-cookie")} == set(SESSION_COOKIES)
        assert response.headers["Cache-Control"] == "no-store"
        assert ("register", "success") in runtime.audit_events.actions()

        load_cookies(client, {name: response.cookies[name] for name in SESSION_COOKIES})
        session = client.get("/api/auth/session")
        assert session.status_code == 200
        assert session.json()["data"]["user"]["id"] == user["id"]

    def test_duplicate_email_is_conflict(self, client, runtime, registered_user):
        response = _register(client, {"email": "ALICE@example.com", "password": OLD_PASSWORD})

        assert response.status_code == 409
        assert response.json() == {
            "error": {"code": "EMAIL_ALREADY_EXISTS", "message": "This email is already registered"}
        }
        assert "set-cookie" not in response.headers
        assert ("register", "failure") in runtime.audit_events.actions()
        # The existing account is untouched
        assert runtime.identity.verify_password(registered_user.id, OLD_PASSWORD)

    @pytest.mark.parametrize(
        "password,message",
        [
            ("fresh1!pass", "password must contain at least one uppercase letter"),
            ("Freshpass!", "password must contain at least one number"),
            ("Fresh1pass", "password must contain at least one special character"),
        ],
    )
    def test_weak_password_is_rejected(self, client, runtime, password, message):
        response = _register(client, {"email": "bob@example.com", "password": password})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"] == {"password": [message]}
        assert runtime.store.get_user_by_email("bob@example.com") is None

    def test_invalid_email(self, client):
        response = _register(client, {"email": "bob", "password": NEW_USER["password"]})

        assert response.status_code == 400
        assert set(response.json()["error"]["details"]) == {"email"}


class TestRegisterRollback:
    """A profile row that cannot be written undoes the identity user."""

    def test_profile_failure_deletes_identity_user(self, client, runtime):
        runtime.accounts.profiles = UnwritableProfiles()

        response = _register(client)

        assert response.status_code == 500
        assert response.json() == {
            "error": {"code": "PROFILE_CREATION_ERROR", "message": "Failed to create user profile"}
        }
        assert runtime.store.get_user_by_email("bob@example.com") is None
        assert runtime.store.sessions == {}
        assert "set-cookie" not in response.headers
        assert ("register", "failure") in runtime.audit_events.actions()

    def test_email_is_free_again_after_rollback(self, client, runtime):
        profiles = runtime.accounts.profiles
        runtime.accounts.profiles = UnwritableProfiles()
        assert _register(client).status_code == 500

        runtime.accounts.profiles = profiles
        response = _register(client)

        assert response.status_code == 201
