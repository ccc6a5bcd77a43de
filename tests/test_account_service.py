"""Unit tests for AccountService gate ordering and failure mapping."""

from datetime import datetime, timezone

import pytest

from flashdeck.service.account import AccountService, ChangePasswordRequest, RequestActor, parse_request
from flashdeck.service.audit import MemoryAuditSink, SecurityAuditLog
from flashdeck.service.errors import (
    AuthenticationError,
    EmailAlreadyExistsError,
    InvalidCredentialsError,
    InvalidSessionError,
    PasswordUpdateError,
    ProfileCreationError,
    RateLimitedError,
    RegistrationError,
    SessionMismatchError,
    ValidationError,
)
from flashdeck.service.identity import IdentityError
from flashdeck.service.rate_limit import (
    CHANGE_PASSWORD_POLICY,
    DELETE_ACCOUNT_POLICY,
    InMemoryRateLimiter,
    RateLimitDecision,
)
from flashdeck.storage.memory import MemoryStore
from flashdeck.storage.errors import StoreError
from flashdeck.storage.models import IdentityUser, Session

DELETED_AT = datetime(2026, 3, 1, tzinfo=timezone.utc)
VALID_CHANGE = {"currentPassword": "OldPass1!", "newPassword": "NewPass2@"}


class FakeClient:
    def __init__(self, token_user=None, *, token_error=None, update_error=None):
        self.active_session = None
        self.token_user = token_user or IdentityUser(id="user-1", email="user-1@example.com")
        self.token_error = token_error
        self.update_error = update_error
        self.updated = []

    async def verify_access_token(self, access_token):
        if self.token_error is not None:
            raise self.token_error
        return self.token_user

    async def update_password(self, new_password):
        if self.update_error is not None:
            raise self.update_error
        self.updated.append(new_password)


class FakeVerifier:
    def __init__(self, result=True, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def verify(self, client, email, password):
        self.calls.append((email, password))
        if self.error is not None:
            raise self.error
        return self.result


class DenyingLimiter:
    async def check_and_record_attempt(self, identifier, policy):
        return RateLimitDecision(allowed=False, retry_after_seconds=42)

    async def reset(self, identifier, policy):
        raise AssertionError("reset must not be called")


class ResetFailingLimiter(InMemoryRateLimiter):
    async def reset(self, identifier, policy):
        raise ConnectionError("limiter offline")


@pytest.fixture
def store():
    store = MemoryStore()
    store.create_user("user-1@example.com", user_id="user-1")
    store.create_profile("user-1")
    return store


@pytest.fixture
def sink():
    return MemoryAuditSink()


def _service(store, sink, *, limiter=None, verifier=None):
    return AccountService(
        limiter or InMemoryRateLimiter(),
        SecurityAuditLog([sink]),
        store,
        verifier=verifier or FakeVerifier(),
        clock=lambda: DELETED_AT,
    )


def _actor(client=None, *, user_id="user-1", cookie_user_id="user-1", access_token="access-1"):
    return RequestActor(
        user_id=user_id,
        email="user-1@example.com" if user_id else None,
        cookie_user_id=cookie_user_id,
        access_token=access_token,
        client=client or FakeClient(),
    )


class TestGateOrdering:
    """Session, mismatch and quota checks precede everything else."""

    async def test_no_session(self, store, sink):
        service = _service(store, sink)
        with pytest.raises(AuthenticationError):
            await service.change_password(_actor(user_id=None), VALID_CHANGE)
        assert sink.events == []

    async def test_cookie_mismatch_is_audited_and_not_counted(self, store, sink):
        limiter = InMemoryRateLimiter()
        service = _service(store, sink, limiter=limiter)

        with pytest.raises(SessionMismatchError) as excinfo:
            await service.delete_account(_actor(cookie_user_id="user-2"), {"password": "x"})

        assert excinfo.value.status_code == 403
        assert sink.actions() == [("session_mismatch", "failure")]
        assert limiter.peek("user-1", DELETE_ACCOUNT_POLICY) is None

    async def test_absent_cookie_user_id_is_not_a_mismatch(self, store, sink):
        client = FakeClient()
        service = _service(store, sink)

        await service.change_password(_actor(client, cookie_user_id=None), VALID_CHANGE)

        assert client.updated == ["NewPass2@"]

    async def test_rate_limited_before_validation(self, store, sink):
        service = _service(store, sink, limiter=DenyingLimiter())

        with pytest.raises(RateLimitedError) as excinfo:
            await service.change_password(_actor(), {"bogus": True})

        assert excinfo.value.retry_after == 42
        assert sink.actions() == [("rate_limit_exceeded", "failure")]

    async def test_validation_failure_is_audited(self, store, sink):
        service = _service(store, sink)
        with pytest.raises(ValidationError):
            await service.change_password(_actor(), {"currentPassword": "x", "newPassword": "short"})
        assert sink.actions() == [("change_password", "failure")]


class TestTokenAndPasswordChecks:
    async def test_token_verification_error(self, store, sink):
        client = FakeClient(token_error=IdentityError("jwt expired", status_code=401))
        verifier = FakeVerifier()
        service = _service(store, sink, verifier=verifier)

        with pytest.raises(InvalidSessionError):
            await service.change_password(_actor(client), VALID_CHANGE)

        assert sink.actions() == [("token_verification_failed", "failure")]
        assert verifier.calls == []

    async def test_token_for_another_user(self, store, sink):
        client = FakeClient(IdentityUser(id="user-9", email="user-9@example.com"))
        service = _service(store, sink)

        with pytest.raises(InvalidSessionError):
            await service.delete_account(_actor(client), {"password": "OldPass1!"})

        assert not store.get_is_deleted("user-1")

    async def test_missing_access_token(self, store, sink):
        service = _service(store, sink)
        with pytest.raises(InvalidSessionError):
            await service.change_password(_actor(access_token=None), VALID_CHANGE)

    async def test_wrong_password(self, store, sink):
        client = FakeClient()
        service = _service(store, sink, verifier=FakeVerifier(result=False))

        with pytest.raises(InvalidCredentialsError):
            await service.change_password(_actor(client), VALID_CHANGE)

        assert client.updated == []
        assert sink.actions() == [("change_password", "failure")]

    async def test_session_restore_failure_is_invalid_session(self, store, sink):
        verifier = FakeVerifier(error=IdentityError("refresh token revoked", status_code=400))
        service = _service(store, sink, verifier=verifier)

        with pytest.raises(InvalidSessionError):
            await service.delete_account(_actor(), {"password": "OldPass1!"})

    async def test_verifies_with_token_email(self, store, sink):
        verifier = FakeVerifier()
        service = _service(store, sink, verifier=verifier)

        await service.change_password(_actor(), VALID_CHANGE)

        assert verifier.calls == [("user-1@example.com", "OldPass1!")]


class TestMutations:
    async def test_password_update_failure(self, store, sink):
        client = FakeClient(update_error=IdentityError("weak password", status_code=422))
        service = _service(store, sink)

        with pytest.raises(PasswordUpdateError) as excinfo:
            await service.change_password(_actor(client), VALID_CHANGE)

        assert excinfo.value.status_code == 500
        assert excinfo.value.error_code == "PASSWORD_UPDATE_ERROR"

    async def test_delete_sets_deleted_at_from_clock(self, store, sink):
        service = _service(store, sink)

        result = await service.delete_account(_actor(), {"password": "OldPass1!"})

        assert result == {"message": "Account deactivated successfully"}
        profile = store.get_profile("user-1")
        assert profile.is_deleted
        assert profile.deleted_at == DELETED_AT

    async def test_limiter_reset_failure_does_not_fail_the_request(self, store, sink):
        limiter = ResetFailingLimiter()
        service = _service(store, sink, limiter=limiter)

        result = await service.change_password(_actor(), VALID_CHANGE)

        assert result == {"message": "Password updated successfully"}
        assert sink.actions()[-1] == ("change_password", "success")

    async def test_success_clears_failed_attempts(self, store, sink):
        limiter = InMemoryRateLimiter()
        verifier = FakeVerifier(result=False)
        service = _service(store, sink, limiter=limiter, verifier=verifier)
        for _ in range(2):
            with pytest.raises(InvalidCredentialsError):
                await service.delete_account(_actor(), {"password": "nope"})
        assert limiter.peek("user-1", DELETE_ACCOUNT_POLICY).count == 2

        verifier.result = True
        await service.delete_account(_actor(), {"password": "OldPass1!"})

        assert limiter.peek("user-1", DELETE_ACCOUNT_POLICY) is None
        assert limiter.peek("user-1", CHANGE_PASSWORD_POLICY) is None


class SignUpClient:
    def __init__(self, *, sign_up_error=None, delete_error=None):
        self.active_session = None
        self.sign_up_error = sign_up_error
        self.delete_error = delete_error
        self.deleted = []

    async def sign_up(self, email, password):
        if self.sign_up_error is not None:
            raise self.sign_up_error
        self.active_session = Session(
            user_id="user-2",
            email=email,
            access_token="access-2",
            refresh_token="refresh-2",
            expires_at=DELETED_AT,
        )
        return self.active_session

    async def delete_user(self, user_id):
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(user_id)


class BrokenProfiles:
    def create_profile(self, user_id):
        raise StoreError("connection refused")


class TestRegistration:
    """Sign-up, profile row creation and rollback."""

    async def test_creates_profile_and_audits(self, store, sink):
        session = await _service(store, sink).register(SignUpClient(), "user-2@example.com", "NewPass2@")

        assert session.user_id == "user-2"
        assert store.get_is_deleted("user-2") is False
        assert sink.actions() == [("register", "success")]

    @pytest.mark.parametrize(
        "error",
        [
            IdentityError("user already registered", status_code=422),
            IdentityError("User already registered", status_code=400),
        ],
    )
    async def test_duplicate_email(self, store, sink, error):
        with pytest.raises(EmailAlreadyExistsError) as excinfo:
            await _service(store, sink).register(SignUpClient(sign_up_error=error), "a@example.com", "NewPass2@")

        assert excinfo.value.status_code == 409
        assert sink.actions() == [("register", "failure")]

    async def test_provider_failure(self, store, sink):
        client = SignUpClient(sign_up_error=IdentityError("identity provider unavailable"))
        with pytest.raises(RegistrationError):
            await _service(store, sink).register(client, "a@example.com", "NewPass2@")

    async def test_provider_throttling(self, store, sink):
        client = SignUpClient(sign_up_error=IdentityError("rate limited", status_code=429))
        with pytest.raises(RateLimitedError) as excinfo:
            await _service(store, sink).register(client, "a@example.com", "NewPass2@")
        assert excinfo.value.retry_after == 60

    async def test_profile_failure_deletes_identity_user(self, store, sink):
        service = _service(BrokenProfiles(), sink)
        client = SignUpClient()

        with pytest.raises(ProfileCreationError) as excinfo:
            await service.register(client, "a@example.com", "NewPass2@")

        assert excinfo.value.error_code == "PROFILE_CREATION_ERROR"
        assert client.deleted == ["user-2"]
        assert sink.actions() == [("register", "failure")]

    async def test_rollback_failure_still_reports_profile_error(self, store, sink):
        service = _service(BrokenProfiles(), sink)
        client = SignUpClient(delete_error=IdentityError("identity service key not configured"))

        with pytest.raises(ProfileCreationError):
            await service.register(client, "a@example.com", "NewPass2@")

        assert client.deleted == []


class TestParseRequest:
    def test_rejects_non_object(self):
        with pytest.raises(ValidationError) as excinfo:
            parse_request(ChangePasswordRequest, ["a", "b"])
        assert excinfo.value.detail == {"body": ["request body must be a JSON object"]}

    @pytest.mark.parametrize(
        "new_password,message",
        [
            ("NOLOWER1!", "password must contain at least one lowercase letter"),
            ("NoDigits!!", "password must contain at least one number"),
            ("NoSpecial12", "password must contain at least one special character"),
        ],
    )
    def test_complexity_messages(self, new_password, message):
        with pytest.raises(ValidationError) as excinfo:
            parse_request(ChangePasswordRequest, {"currentPassword": "x", "newPassword": new_password})
        assert excinfo.value.detail == {"newPassword": [message]}

    def test_overlong_password(self):
        body = {"currentPassword": "x" * 129, "newPassword": "NewPass2@"}
        with pytest.raises(ValidationError) as excinfo:
            parse_request(ChangePasswordRequest, body)
        assert "currentPassword" in excinfo.value.detail

    def test_accepts_valid_body(self):
        request = parse_request(ChangePasswordRequest, VALID_CHANGE)
        assert request.new_password == "NewPass2@"
