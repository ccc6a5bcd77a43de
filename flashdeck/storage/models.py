from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IdentityUser:
    id: str
    email: Optional[str] = None


@dataclass
class Session:
    """One authenticated browser-to-server continuity window.

    ``access_token`` and ``refresh_token`` are issued by the identity provider
    and always travel as a pair. ``csrf_token`` is ours, not the provider's.
    """

    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    email: Optional[str] = None
    csrf_token: Optional[str] = None

    @property
    def user(self) -> IdentityUser:
        return IdentityUser(id=self.user_id, email=self.email)

    def seconds_until_expiry(self, now: Optional[datetime] = None) -> float:
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return (expires_at - (now or utcnow())).total_seconds()

    def with_csrf(self, csrf_token: Optional[str]) -> "Session":
        return replace(self, csrf_token=csrf_token)


@dataclass
class User:
    id: str
    email: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AccountProfile:
    user_id: str
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RateLimitEntry:
    count: int
    last_attempt_at: float
