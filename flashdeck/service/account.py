from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from flashdeck.logging import get_logger
from flashdeck.service.audit import SecurityAction, SecurityAuditLog
from flashdeck.service.errors import (
    AccountUpdateError,
    AlreadyDeletedError,
    AuthenticationError,
    DatabaseError,
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
from flashdeck.service.identity import IdentityClient, IdentityError
from flashdeck.service.rate_limit import (
    CHANGE_PASSWORD_POLICY,
    DELETE_ACCOUNT_POLICY,
    RateLimiter,
    RateLimitPolicy,
)
from flashdeck.service.sessions import SessionContext, random_security_delay
from flashdeck.storage.errors import StoreError
from flashdeck.storage.models import IdentityUser, Session, utcnow

logger = get_logger(__name__)

CHANGE_PASSWORD_SUCCESS = "Password updated successfully"
DELETE_ACCOUNT_SUCCESS = "Account deactivated successfully"

_PASSWORD_RULES = (
    (re.compile(r"[A-Z]"), "password must contain at least one uppercase letter"),
    (re.compile(r"[a-z]"), "password must contain at least one lowercase letter"),
    (re.compile(r"[0-9]"), "password must contain at least one number"),
    (re.compile(r"[^A-Za-z0-9]"), "password must contain at least one special character"),
)


def check_password_complexity(value: str) -> str:
    for pattern, message in _PASSWORD_RULES:
        if not pattern.search(value):
            raise ValueError(message)
    return value


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(..., alias="currentPassword", min_length=1, max_length=128)
    new_password: str = Field(..., alias="newPassword", min_length=8, max_length=128)

    @field_validator("new_password")
    @classmethod
    def _validate_complexity(cls, value: str) -> str:
        return check_password_complexity(value)


class DeleteAccountRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


ModelT = TypeVar("ModelT", bound=BaseModel)


def _field_errors(exc: PydanticValidationError) -> Dict[str, List[str]]:
    details: Dict[str, List[str]] = {}
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ())) or "body"
        message = error.get("msg", "invalid value")
        # pydantic prefixes messages raised from validators with "Value error, "
        details.setdefault(field, []).append(message.removeprefix("Value error, "))
    return details


def parse_request(model: Type[ModelT], body: Any, message: str = "Invalid request data") -> ModelT:
    """Validate a decoded JSON body, raising ``ValidationError`` with per-field messages."""
    if not isinstance(body, dict):
        raise ValidationError(message, detail={"body": ["request body must be a JSON object"]})
    try:
        return model.model_validate(body)
    except PydanticValidationError as exc:
        raise ValidationError(message, detail=_field_errors(exc)) from exc


class ProfileStore(Protocol):
    def get_is_deleted(self, user_id: str) -> bool: ...

    def create_profile(self, user_id: str) -> Any: ...

    def mark_deleted(self, user_id: str, deleted_at: datetime) -> None: ...


@dataclass
class RequestActor:
    """Who is asking, as seen by the session loader and the raw cookies."""

    user_id: Optional[str]
    email: Optional[str]
    cookie_user_id: Optional[str]
    access_token: Optional[str]
    client: IdentityClient

    @classmethod
    def from_context(cls, context: SessionContext, *, cookie_user_id: Optional[str]) -> "RequestActor":
        session = context.session
        return cls(
            user_id=session.user_id if session else None,
            email=session.email if session else None,
            cookie_user_id=cookie_user_id,
            access_token=session.access_token if session else None,
            client=context.identity_client,
        )


class PasswordVerifier(Protocol):
    async def verify(self, client: IdentityClient, email: str, password: str) -> bool: ...


class SignInPasswordVerifier:
    """Checks a password by signing in with it, then restoring the prior session.

    The identity provider has no side-effect-free "check password" call, so a
    full sign-in is used and the active session is snapshotted and put back
    afterwards. This is racy: two concurrent requests sharing a client can
    restore each other's snapshot and leave the wrong session active. Replace
    this class once the provider exposes a verify-only endpoint.

    Once the prior session is back, the session minted by the check is
    revoked so each verification leaves no live tokens behind.
    """

    async def verify(self, client: IdentityClient, email: str, password: str) -> bool:
        snapshot = client.active_session
        try:
            verification = await client.sign_in_with_password(email, password)
        except IdentityError as exc:
            logger.info("password_reverification_failed", error=exc.message)
            return False
        finally:
            if snapshot is not None:
                await client.restore_session(snapshot)
        if snapshot is not None:
            await self._discard(client, verification)
        return True

    async def _discard(self, client: IdentityClient, verification: Session) -> None:
        # The password already checked out; a failed revocation only leaves an idle session.
        try:
            await client.discard_session(verification)
        except IdentityError as exc:
            logger.warning(
                "verification_session_discard_failed",
                user_id=verification.user_id,
                error=exc.message,
            )


class AccountService:
    """Registration, change-password and delete-account flows.

    Change-password and delete-account run the same gate sequence before
    touching anything: session present, cookie user id matches the session,
    attempt budget available, body valid, access token re-verified. Failures
    raise typed ``ServiceError`` subclasses; the API layer renders them.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        audit: SecurityAuditLog,
        profiles: ProfileStore,
        *,
        verifier: Optional[PasswordVerifier] = None,
        change_password_policy: RateLimitPolicy = CHANGE_PASSWORD_POLICY,
        delete_account_policy: RateLimitPolicy = DELETE_ACCOUNT_POLICY,
        security_delay_max_ms: int = 0,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.profiles = profiles
        self.verifier = verifier or SignInPasswordVerifier()
        self.change_password_policy = change_password_policy
        self.delete_account_policy = delete_account_policy
        self.security_delay_max_ms = security_delay_max_ms
        self._clock = clock
        self._sleep = sleep

    async def _authorize(self, actor: RequestActor, policy: RateLimitPolicy, unauthenticated_message: str) -> str:
        if not actor.user_id:
            raise AuthenticationError(unauthenticated_message)
        user_id = actor.user_id

        if actor.cookie_user_id and actor.cookie_user_id != user_id:
            # Tamper signal: audited, never counted against the user's budget.
            logger.error(
                "account_session_mismatch",
                action=policy.action,
                user_id=user_id,
                cookie_user_id=actor.cookie_user_id,
            )
            await self.audit.failure(
                user_id,
                SecurityAction.SESSION_MISMATCH,
                f"cookie user id {actor.cookie_user_id} does not match session user id during {policy.action}",
            )
            await random_security_delay(self.security_delay_max_ms, self._sleep)
            raise SessionMismatchError("Security violation detected")

        decision = await self.rate_limiter.check_and_record_attempt(user_id, policy)
        if not decision.allowed:
            await self.audit.failure(
                user_id, SecurityAction.RATE_LIMIT_EXCEEDED, f"too many {policy.action} attempts"
            )
            raise RateLimitedError(
                "Too many attempts. Please try again later.",
                retry_after=decision.retry_after_seconds or policy.block_seconds,
            )
        return user_id

    async def _verify_access_token(self, actor: RequestActor, user_id: str) -> IdentityUser:
        if not actor.access_token:
            await self.audit.failure(user_id, SecurityAction.TOKEN_VERIFICATION_FAILED, "access token missing")
            raise InvalidSessionError("Your session appears to be invalid. Please log in again.")
        try:
            token_user = await actor.client.verify_access_token(actor.access_token)
        except IdentityError as exc:
            await self.audit.failure(
                user_id,
                SecurityAction.TOKEN_VERIFICATION_FAILED,
                f"token verification error: {exc.message}",
            )
            raise InvalidSessionError("Your session appears to be invalid. Please log in again.") from exc
        if token_user.id != user_id:
            await self.audit.failure(
                user_id,
                SecurityAction.TOKEN_VERIFICATION_FAILED,
                f"token user id mismatch: got {token_user.id}",
            )
            raise InvalidSessionError("Your session appears to be invalid. Please log in again.")
        return token_user

    async def _verify_password(
        self,
        actor: RequestActor,
        user_id: str,
        email: Optional[str],
        password: str,
        action: SecurityAction,
    ) -> None:
        if not email:
            await self.audit.failure(user_id, action, "session has no email address")
            raise InvalidSessionError("Your session appears to be invalid. Please log in again.")
        try:
            verified = await self.verifier.verify(actor.client, email, password)
        except IdentityError as exc:
            logger.error("session_restore_failed", user_id=user_id, error=exc.message)
            await self.audit.failure(user_id, action, "session restore after re-verification failed")
            raise InvalidSessionError("Your session appears to be invalid. Please log in again.") from exc
        if not verified:
            await self.audit.failure(user_id, action, "invalid credentials provided")
            raise InvalidCredentialsError("Invalid credentials")

    async def _reset_attempts(self, user_id: str, policy: RateLimitPolicy) -> None:
        # The mutation already happened; a limiter outage must not turn it into an error.
        try:
            await self.rate_limiter.reset(user_id, policy)
        except Exception as exc:
            logger.error(
                "rate_limit_reset_failed",
                action=policy.action,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def register(self, client: IdentityClient, email: str, password: str) -> Session:
        """Create the identity user and its profile row; the new session is returned signed in.

        When the profile row cannot be written the identity user is deleted
        again, so a failed registration leaves no account without a profile.
        """
        try:
            session = await client.sign_up(email, password)
        except IdentityError as exc:
            if exc.status_code == 422 or "already registered" in exc.message.lower():
                await self.audit.failure(None, SecurityAction.REGISTER, "email already registered")
                raise EmailAlreadyExistsError("This email is already registered") from exc
            logger.error("registration_failed", status_code=exc.status_code, error=exc.message)
            await self.audit.failure(None, SecurityAction.REGISTER, f"sign-up rejected: {exc.message}")
            if exc.status_code == 429:
                raise RateLimitedError(
                    "Too many registration attempts, please try again later", retry_after=60
                ) from exc
            raise RegistrationError("Registration failed") from exc

        try:
            self.profiles.create_profile(session.user_id)
        except StoreError as exc:
            logger.error("profile_create_failed", user_id=session.user_id, error=exc.message)
            await self._roll_back_registration(client, session.user_id)
            await self.audit.failure(session.user_id, SecurityAction.REGISTER, "profile creation failed")
            raise ProfileCreationError("Failed to create user profile") from exc

        await self.audit.success(session.user_id, SecurityAction.REGISTER)
        logger.info("user_registered", user_id=session.user_id)
        return session

    async def _roll_back_registration(self, client: IdentityClient, user_id: str) -> None:
        try:
            await client.delete_user(user_id)
        except IdentityError as exc:
            # Leaves an identity user with no profile; needs manual cleanup.
            logger.error("registration_rollback_failed", user_id=user_id, error=exc.message)
        else:
            logger.info("registration_rolled_back", user_id=user_id)

    async def change_password(self, actor: RequestActor, body: Any) -> Dict[str, str]:
        policy = self.change_password_policy
        user_id = await self._authorize(actor, policy, "You must be logged in to change your password")

        try:
            request = parse_request(ChangePasswordRequest, body, "Invalid password data")
        except ValidationError:
            await self.audit.failure(user_id, SecurityAction.CHANGE_PASSWORD, "validation error")
            raise

        token_user = await self._verify_access_token(actor, user_id)
        await self._verify_password(
            actor,
            user_id,
            token_user.email or actor.email,
            request.current_password,
            SecurityAction.CHANGE_PASSWORD,
        )

        try:
            await actor.client.update_password(request.new_password)
        except IdentityError as exc:
            logger.error("password_update_failed", user_id=user_id, error=exc.message)
            await self.audit.failure(user_id, SecurityAction.CHANGE_PASSWORD, "password update failed")
            raise PasswordUpdateError("Failed to update password") from exc

        await self._reset_attempts(user_id, policy)
        await self.audit.success(user_id, SecurityAction.CHANGE_PASSWORD, CHANGE_PASSWORD_SUCCESS)
        logger.info("password_changed", user_id=user_id)
        return {"message": CHANGE_PASSWORD_SUCCESS}

    async def delete_account(self, actor: RequestActor, body: Any) -> Dict[str, str]:
        """Soft-delete the caller's account after re-verifying their password.

        Session cookies are cleared by the caller once this returns; provider
        tokens are left to expire on their own.
        """
        policy = self.delete_account_policy
        user_id = await self._authorize(actor, policy, "You must be logged in to delete your account")

        try:
            request = parse_request(DeleteAccountRequest, body)
        except ValidationError:
            await self.audit.failure(user_id, SecurityAction.DELETE_ACCOUNT, "validation error")
            raise

        token_user = await self._verify_access_token(actor, user_id)

        try:
            already_deleted = self.profiles.get_is_deleted(user_id)
        except StoreError as exc:
            logger.error("profile_lookup_failed", user_id=user_id, error=exc.message)
            await self.audit.failure(user_id, SecurityAction.DELETE_ACCOUNT, "profile lookup failed")
            raise DatabaseError("Failed to retrieve account status") from exc
        if already_deleted:
            await self.audit.failure(user_id, SecurityAction.DELETE_ACCOUNT, "account already deactivated")
            raise AlreadyDeletedError("This account is already deactivated")

        await self._verify_password(
            actor,
            user_id,
            token_user.email or actor.email,
            request.password,
            SecurityAction.DELETE_ACCOUNT,
        )

        try:
            self.profiles.mark_deleted(user_id, self._clock())
        except StoreError as exc:
            logger.error("account_soft_delete_failed", user_id=user_id, error=exc.message)
            await self.audit.failure(user_id, SecurityAction.DELETE_ACCOUNT, "soft delete failed")
            raise AccountUpdateError("Failed to deactivate account") from exc

        await self._reset_attempts(user_id, policy)
        await self.audit.success(user_id, SecurityAction.DELETE_ACCOUNT, DELETE_ACCOUNT_SUCCESS)
        logger.info("account_deactivated", user_id=user_id)
        return {"message": DELETE_ACCOUNT_SUCCESS}


__all__ = [
    "AccountService",
    "CHANGE_PASSWORD_SUCCESS",
    "ChangePasswordRequest",
    "check_password_complexity",
    "DELETE_ACCOUNT_SUCCESS",
    "DeleteAccountRequest",
    "PasswordVerifier",
    "ProfileStore",
    "RequestActor",
    "SignInPasswordVerifier",
    "parse_request",
]
