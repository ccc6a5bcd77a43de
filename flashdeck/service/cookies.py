from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Mapping, Optional

from fastapi import Response

from flashdeck.service.csrf import CSRF_COOKIE_NAME
from flashdeck.storage.models import Session, utcnow

ACCESS_TOKEN_COOKIE = "access_token"
REFRESH_TOKEN_COOKIE = "refresh_token"
USER_ID_COOKIE = "user_id"
SESSION_COOKIE_NAMES = (ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE, USER_ID_COOKIE, CSRF_COOKIE_NAME)


@dataclass
class PendingCookie:
    name: str
    value: Optional[str]
    expires: Optional[datetime] = None
    http_only: bool = True

    @property
    def is_deletion(self) -> bool:
        return self.value is None


class CookieJar:
    """Request cookies plus the writes queued for the response.

    Reads see queued writes, so a cookie set or cleared earlier in the request
    is visible to later steps. Nothing reaches the client until ``apply``.
    """

    def __init__(
        self,
        request_cookies: Mapping[str, str],
        *,
        secure: bool = True,
        csrf_ttl_hours: int = 24,
    ) -> None:
        self._incoming = dict(request_cookies)
        self._pending: Dict[str, PendingCookie] = {}
        self.secure = secure
        self.csrf_ttl_hours = csrf_ttl_hours

    def get(self, name: str) -> Optional[str]:
        if name in self._pending:
            return self._pending[name].value
        return self._incoming.get(name) or None

    def set(
        self,
        name: str,
        value: str,
        *,
        expires: Optional[datetime] = None,
        http_only: bool = True,
    ) -> None:
        self._pending[name] = PendingCookie(name, value, expires, http_only)

    def delete(self, name: str) -> None:
        self._pending[name] = PendingCookie(name, None)

    @property
    def pending(self) -> List[PendingCookie]:
        return list(self._pending.values())

    def set_session_cookies(self, session: Session) -> None:
        """Write the token pair, the user id and the CSRF token for ``session``."""
        expires_at = session.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        self.set(ACCESS_TOKEN_COOKIE, session.access_token, expires=expires_at)
        self.set(REFRESH_TOKEN_COOKIE, session.refresh_token, expires=expires_at)
        self.set(USER_ID_COOKIE, session.user_id, expires=expires_at)
        if session.csrf_token:
            # Read by client script and echoed in the X-CSRF-Token header.
            self.set(
                CSRF_COOKIE_NAME,
                session.csrf_token,
                expires=utcnow() + timedelta(hours=self.csrf_ttl_hours),
                http_only=False,
            )

    def clear_session_cookies(self) -> None:
        for name in SESSION_COOKIE_NAMES:
            self.delete(name)

    def apply(self, response: Response) -> None:
        for cookie in self._pending.values():
            if cookie.is_deletion:
                response.delete_cookie(
                    cookie.name,
                    path="/",
                    secure=self.secure,
                    httponly=cookie.name != CSRF_COOKIE_NAME,
                    samesite="strict",
                )
                continue
            response.set_cookie(
                cookie.name,
                cookie.value,
                expires=cookie.expires,
                path="/",
                secure=self.secure,
                httponly=cookie.http_only,
                samesite="strict",
            )


__all__ = [
    "ACCESS_TOKEN_COOKIE",
    "CookieJar",
    "PendingCookie",
    "REFRESH_TOKEN_COOKIE",
    "SESSION_COOKIE_NAMES",
    "USER_ID_COOKIE",
]
