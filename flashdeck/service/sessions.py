from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional

from flashdeck.logging import get_logger
from flashdeck.service.audit import SecurityAction, SecurityAuditLog
from flashdeck.service.cookies import (
    ACCESS_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    USER_ID_COOKIE,
    CookieJar,
)
from flashdeck.service.csrf import CSRF_COOKIE_NAME, issue_csrf_token
from flashdeck.service.identity import IdentityClient
from flashdeck.storage.models import IdentityUser, Session, utcnow

logger = get_logger(__name__)

_system_random = random.SystemRandom()


async def random_security_delay(
    max_ms: int, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> None:
    """Sleep a random 0..max_ms milliseconds before answering an integrity failure."""
    if max_ms > 0:
        await sleep(_system_random.uniform(0, max_ms) / 1000)


@dataclass
class SessionContext:
    """Request-scoped authentication state shared with endpoints."""

    identity_client: IdentityClient
    session: Optional[Session] = None
    user: Optional[IdentityUser] = None


@dataclass
class SessionLoadResult:
    context: SessionContext
    redirect: Optional[str] = None
    # Set when the loader rejected presented credentials, not when they were absent.
    failure: Optional[SecurityAction] = None


def _normalize_path(path: str) -> str:
    if len(path) > 1:
        return path.rstrip("/")
    return path


def is_public_path(path: str, public_paths: Iterable[str]) -> bool:
    normalized = _normalize_path(path)
    return any(normalized == _normalize_path(candidate) for candidate in public_paths)


def protect_route(context: SessionContext, login_path: str = "/login") -> Optional[str]:
    """Return the login path when the request carries no session, else ``None``."""
    if context.session is None:
        return login_path
    return None


class SessionLoader:
    """Establishes and refreshes the session for one request.

    Every identity-provider failure is treated as "unauthenticated"; the loader
    never hands a stale session to the endpoint after the provider rejected it.
    Cookie changes are queued on the ``CookieJar`` and applied by the caller.
    """

    def __init__(
        self,
        audit: SecurityAuditLog,
        *,
        public_paths: Iterable[str],
        login_path: str = "/login",
        refresh_threshold_seconds: int = 60,
        csrf_token_factory: Callable[[], str] = issue_csrf_token,
        security_delay_max_ms: int = 0,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.audit = audit
        self.public_paths = list(public_paths)
        self.login_path = login_path
        self.refresh_threshold_seconds = refresh_threshold_seconds
        self.csrf_token_factory = csrf_token_factory
        self.security_delay_max_ms = security_delay_max_ms
        self.clock = clock
        self._sleep = sleep

    def is_public(self, path: str) -> bool:
        return is_public_path(path, self.public_paths)

    async def _reject(
        self,
        cookies: CookieJar,
        context: SessionContext,
        *,
        user_id: Optional[str],
        action: SecurityAction,
        details: str,
    ) -> SessionLoadResult:
        cookies.clear_session_cookies()
        await self.audit.failure(user_id, action, details)
        if action == SecurityAction.SESSION_MISMATCH:
            await random_security_delay(self.security_delay_max_ms, self._sleep)
        return SessionLoadResult(context=context, redirect=self.login_path, failure=action)

    async def load_session(
        self, path: str, cookies: CookieJar, client: IdentityClient
    ) -> SessionLoadResult:
        context = SessionContext(identity_client=client)
        if self.is_public(path):
            return SessionLoadResult(context=context)

        access_token = cookies.get(ACCESS_TOKEN_COOKIE)
        refresh_token = cookies.get(REFRESH_TOKEN_COOKIE)
        cookie_user_id = cookies.get(USER_ID_COOKIE)
        if not access_token or not refresh_token:
            return SessionLoadResult(context=context, redirect=self.login_path)

        try:
            session = await client.verify_session(access_token, refresh_token)
        except Exception as exc:
            logger.warning("session_verify_failed", error_type=type(exc).__name__, error=str(exc))
            return await self._reject(
                cookies,
                context,
                user_id=cookie_user_id,
                action=SecurityAction.SESSION_INVALID,
                details="session verification failed",
            )

        if cookie_user_id and cookie_user_id != session.user_id:
            logger.error("session_user_mismatch", session_user_id=session.user_id, cookie_user_id=cookie_user_id)
            return await self._reject(
                cookies,
                context,
                user_id=session.user_id,
                action=SecurityAction.SESSION_MISMATCH,
                details=f"user_id cookie {cookie_user_id} does not match session",
            )

        if not cookie_user_id:
            cookies.set(USER_ID_COOKIE, session.user_id, expires=session.expires_at)

        csrf_token = cookies.get(CSRF_COOKIE_NAME)
        session = session.with_csrf(csrf_token)

        if session.access_token != access_token or session.refresh_token != refresh_token:
            # Verification exchanged an expired access token; the cookie pair is spent.
            session = session.with_csrf(csrf_token or self.csrf_token_factory())
            cookies.set_session_cookies(session)
            logger.info("session_rotated_on_verify", user_id=session.user_id)
        elif session.seconds_until_expiry(self.clock()) < self.refresh_threshold_seconds:
            try:
                refreshed = await client.refresh_session(session)
            except Exception as exc:
                # The current token may still be valid for a few seconds; a later request retries.
                logger.warning(
                    "session_refresh_failed",
                    user_id=session.user_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                await self.audit.failure(
                    session.user_id, SecurityAction.SESSION_REFRESH_FAILED, "token refresh failed"
                )
            else:
                if refreshed.user_id != session.user_id:
                    logger.error(
                        "session_refresh_user_mismatch",
                        session_user_id=session.user_id,
                        refreshed_user_id=refreshed.user_id,
                    )
                    return await self._reject(
                        cookies,
                        context,
                        user_id=session.user_id,
                        action=SecurityAction.SESSION_MISMATCH,
                        details=f"refresh returned user {refreshed.user_id}",
                    )
                session = refreshed.with_csrf(csrf_token or self.csrf_token_factory())
                cookies.set_session_cookies(session)
                logger.info("session_refreshed", user_id=session.user_id)

        context.session = session
        context.user = session.user
        return SessionLoadResult(context=context)


__all__ = [
    "SessionContext",
    "SessionLoadResult",
    "SessionLoader",
    "is_public_path",
    "protect_route",
    "random_security_delay",
]
