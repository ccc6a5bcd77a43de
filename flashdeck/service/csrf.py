from __future__ import annotations

import hmac
import secrets
from typing import Optional

CSRF_COOKIE_NAME = "csrf_token"
CSRF_HEADER_NAME = "X-CSRF-Token"
CSRF_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})


def issue_csrf_token() -> str:
    return secrets.token_urlsafe(32)


def verify_csrf(method: str, cookie_token: Optional[str], header_token: Optional[str]) -> bool:
    """Double-submit check: the header must echo the CSRF cookie.

    Safe methods always pass. Every other method needs both values present and
    equal; the comparison runs in constant time.
    """
    if method.upper() in CSRF_SAFE_METHODS:
        return True
    if not cookie_token or not header_token:
        return False
    return hmac.compare_digest(cookie_token.encode(), header_token.encode())


__all__ = [
    "CSRF_COOKIE_NAME",
    "CSRF_HEADER_NAME",
    "CSRF_SAFE_METHODS",
    "issue_csrf_token",
    "verify_csrf",
]
