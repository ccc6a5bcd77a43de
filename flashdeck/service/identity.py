from __future__ import annotations

import base64
import json
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Protocol

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from flashdeck.logging import get_logger
from flashdeck.storage.errors import ConstraintViolation
from flashdeck.storage.memory import MemoryStore
from flashdeck.storage.models import IdentityUser, Session, User, utcnow

logger = get_logger(__name__)


class IdentityError(Exception):
    """Raised by identity clients for any rejected or failed provider call."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail


class IdentityClient(Protocol):
    """Request-scoped handle on the identity provider.

    ``sign_in_with_password`` replaces ``active_session`` as a side effect and
    ``update_password`` always acts on ``active_session``; callers that sign in
    only to check a password must put the previous session back with
    ``restore_session``.
    """

    active_session: Optional[Session]

    async def verify_session(self, access_token: str, refresh_token: str) -> Session: ...

    async def refresh_session(self, session: Session) -> Session: ...

    async def sign_in_with_password(self, email: str, password: str) -> Session: ...

    async def sign_up(self, email: str, password: str) -> Session: ...

    async def delete_user(self, user_id: str) -> None: ...

    async def verify_access_token(self, access_token: str) -> IdentityUser: ...

    async def update_password(self, new_password: str) -> None: ...

    async def restore_session(self, session: Session) -> None: ...

    async def sign_out(self) -> None: ...

    async def discard_session(self, session: Session) -> None:
        """Revoke one session without touching ``active_session`` or the user's other sessions."""
        ...


class IdentityProvider(Protocol):
    def create_client(self) -> IdentityClient: ...

    async def close(self) -> None: ...


class LocalIdentityProvider:
    """In-process identity provider over ``MemoryStore``.

    Tokens are opaque random strings looked up in the store; there is no token
    cryptography. Intended for development and tests.
    """

    def __init__(
        self,
        store: MemoryStore,
        *,
        token_ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.token_ttl_seconds = token_ttl_seconds
        self.clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def create_client(self) -> "LocalIdentityClient":
        return LocalIdentityClient(self)

    async def close(self) -> None:
        return None

    def _hash_password(self, password: str) -> tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def register_user(self, email: str, password: str, *, user_id: Optional[str] = None) -> User:
        user = self.store.create_user(email, user_id=user_id)
        self.save_password(user.id, password)
        logger.info("identity_user_registered", user_id=user.id)
        return user

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def issue_session(self, user: User, *, ttl_seconds: Optional[int] = None) -> Session:
        ttl = self.token_ttl_seconds if ttl_seconds is None else ttl_seconds
        session = Session(
            user_id=user.id,
            email=user.email,
            access_token=secrets.token_urlsafe(32),
            refresh_token=secrets.token_urlsafe(32),
            expires_at=self.clock() + timedelta(seconds=ttl),
        )
        return self.store.save_session(session)

    def is_expired(self, session: Session) -> bool:
        return session.seconds_until_expiry(self.clock()) <= 0


class LocalIdentityClient:
    def __init__(self, provider: LocalIdentityProvider) -> None:
        self.provider = provider
        self.store = provider.store
        self.active_session: Optional[Session] = None

    async def verify_session(self, access_token: str, refresh_token: str) -> Session:
        session = self.store.get_session_by_access_token(access_token)
        if session is None or session.refresh_token != refresh_token:
            raise IdentityError("invalid session", status_code=401)
        if self.provider.is_expired(session):
            # An expired access token is exchanged with its refresh token.
            session = await self.refresh_session(session)
        self.active_session = session
        return session

    async def refresh_session(self, session: Session) -> Session:
        current = self.store.get_session_by_refresh_token(session.refresh_token)
        if current is None:
            raise IdentityError("invalid refresh token", status_code=400)
        user = self.store.get_user(current.user_id)
        if user is None:
            raise IdentityError("user not found", status_code=404)
        self.store.revoke_session(current.access_token)
        refreshed = self.provider.issue_session(user)
        self.active_session = refreshed
        return refreshed

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        user = self.store.get_user_by_email(email)
        if user is None or not self.provider.verify_password(user.id, password):
            raise IdentityError("invalid login credentials", status_code=400)
        session = self.provider.issue_session(user)
        self.active_session = session
        return session

    async def sign_up(self, email: str, password: str) -> Session:
        try:
            user = self.provider.register_user(email, password)
        except ConstraintViolation as exc:
            raise IdentityError("user already registered", status_code=422) from exc
        session = self.provider.issue_session(user)
        self.active_session = session
        return session

    async def delete_user(self, user_id: str) -> None:
        if not self.store.delete_user(user_id):
            raise IdentityError("user not found", status_code=404)
        if self.active_session is not None and self.active_session.user_id == user_id:
            self.active_session = None

    async def verify_access_token(self, access_token: str) -> IdentityUser:
        session = self.store.get_session_by_access_token(access_token)
        if session is None or self.provider.is_expired(session):
            raise IdentityError("invalid access token", status_code=401)
        return session.user

    async def update_password(self, new_password: str) -> None:
        active = self.active_session
        if active is None or self.store.get_session_by_access_token(active.access_token) is None:
            raise IdentityError("no active session", status_code=401)
        self.provider.save_password(active.user_id, new_password)

    async def restore_session(self, session: Session) -> None:
        await self.verify_session(session.access_token, session.refresh_token)

    async def sign_out(self) -> None:
        if self.active_session is not None:
            self.store.revoke_session(self.active_session.access_token)
        self.active_session = None

    async def discard_session(self, session: Session) -> None:
        self.store.revoke_session(session.access_token)


def _decode_jwt_claims(token: str) -> Dict[str, Any]:
    """Read the payload of a JWT without verifying it; the provider already did."""
    try:
        payload = token.split(".")[1]
        padded = payload + "=" * (-len(payload) % 4)
        claims = json.loads(base64.urlsafe_b64decode(padded.encode()))
    except (IndexError, ValueError) as exc:
        raise IdentityError("malformed access token") from exc
    if not isinstance(claims, dict):
        raise IdentityError("malformed access token")
    return claims


class GoTrueIdentityProvider:
    """Identity provider reached over the GoTrue REST API."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        service_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
            headers=headers,
            transport=transport,
        )

    def create_client(self) -> "GoTrueIdentityClient":
        return GoTrueIdentityClient(self._client, service_key=self.service_key)

    async def close(self) -> None:
        await self._client.aclose()


class GoTrueIdentityClient:
    def __init__(self, http: httpx.AsyncClient, *, service_key: Optional[str] = None) -> None:
        self._http = http
        self._service_key = service_key
        self.active_session: Optional[Session] = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: Optional[str] = None,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else None
        try:
            response = await self._http.request(method, path, params=params, json=json_body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            try:
                body = exc.response.json()
            except ValueError:
                body = {}
            message = body.get("msg") or body.get("error_description") or body.get("message") or "identity request failed"
            logger.warning(
                "identity_request_rejected",
                path=path,
                status_code=exc.response.status_code,
                error=message,
            )
            raise IdentityError(message, status_code=exc.response.status_code, detail=body) from exc
        except httpx.TimeoutException as exc:
            logger.error("identity_request_timeout", path=path, error=str(exc))
            raise IdentityError("identity provider timed out") from exc
        except httpx.HTTPError as exc:
            logger.error("identity_request_failed", path=path, error_type=type(exc).__name__, error=str(exc))
            raise IdentityError("identity provider unavailable") from exc
        if not response.content:
            return {}
        return response.json()

    @staticmethod
    def _session_from_token_response(payload: Dict[str, Any]) -> Session:
        try:
            user = payload["user"]
            access_token = payload["access_token"]
            refresh_token = payload["refresh_token"]
        except KeyError as exc:
            raise IdentityError("incomplete token response") from exc
        if payload.get("expires_at") is not None:
            expires_at = datetime.fromtimestamp(int(payload["expires_at"]), tz=timezone.utc)
        else:
            expires_at = utcnow() + timedelta(seconds=int(payload.get("expires_in", 3600)))
        return Session(
            user_id=str(user["id"]),
            email=user.get("email"),
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )

    async def _token_grant(self, grant_type: str, body: Dict[str, Any]) -> Session:
        payload = await self._request("POST", "/auth/v1/token", params={"grant_type": grant_type}, json_body=body)
        session = self._session_from_token_response(payload)
        self.active_session = session
        return session

    async def verify_session(self, access_token: str, refresh_token: str) -> Session:
        claims = _decode_jwt_claims(access_token)
        exp = claims.get("exp")
        if exp is None or datetime.fromtimestamp(int(exp), tz=timezone.utc) <= utcnow():
            return await self._token_grant("refresh_token", {"refresh_token": refresh_token})
        user = await self.verify_access_token(access_token)
        session = Session(
            user_id=user.id,
            email=user.email,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=datetime.fromtimestamp(int(exp), tz=timezone.utc),
        )
        self.active_session = session
        return session

    async def refresh_session(self, session: Session) -> Session:
        return await self._token_grant("refresh_token", {"refresh_token": session.refresh_token})

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        return await self._token_grant("password", {"email": email, "password": password})

    async def sign_up(self, email: str, password: str) -> Session:
        payload = await self._request(
            "POST", "/auth/v1/signup", json_body={"email": email, "password": password}
        )
        # Without auto-confirm the provider answers with a bare user and no tokens.
        session = self._session_from_token_response(payload)
        self.active_session = session
        return session

    async def delete_user(self, user_id: str) -> None:
        if not self._service_key:
            raise IdentityError("identity service key not configured")
        await self._request("DELETE", f"/auth/v1/admin/users/{user_id}", access_token=self._service_key)
        if self.active_session is not None and self.active_session.user_id == user_id:
            self.active_session = None

    async def verify_access_token(self, access_token: str) -> IdentityUser:
        payload = await self._request("GET", "/auth/v1/user", access_token=access_token)
        if not payload.get("id"):
            raise IdentityError("user not found", status_code=404)
        return IdentityUser(id=str(payload["id"]), email=payload.get("email"))

    async def update_password(self, new_password: str) -> None:
        if self.active_session is None:
            raise IdentityError("no active session", status_code=401)
        await self._request(
            "PUT",
            "/auth/v1/user",
            access_token=self.active_session.access_token,
            json_body={"password": new_password},
        )

    async def restore_session(self, session: Session) -> None:
        await self.verify_session(session.access_token, session.refresh_token)

    async def sign_out(self) -> None:
        active = self.active_session
        self.active_session = None
        if active is not None:
            await self._request("POST", "/auth/v1/logout", access_token=active.access_token)

    async def discard_session(self, session: Session) -> None:
        # Local scope ends only this token's session; the default would end all of them.
        await self._request(
            "POST",
            "/auth/v1/logout",
            access_token=session.access_token,
            params={"scope": "local"},
        )


__all__ = [
    "GoTrueIdentityClient",
    "GoTrueIdentityProvider",
    "IdentityClient",
    "IdentityError",
    "IdentityProvider",
    "LocalIdentityClient",
    "LocalIdentityProvider",
]
