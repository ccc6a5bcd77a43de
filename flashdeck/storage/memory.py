from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional

from flashdeck.logging import get_logger
from flashdeck.storage.errors import ConstraintViolation, ProfileNotFound
from flashdeck.storage.models import AccountProfile, Session, User, utcnow


class MemoryStore:
    """In-process backing store for users, credentials, sessions and profiles.

    Used by the in-process identity provider and as the profile store when
    ``USE_MEMORY_STORE`` is set. Nothing is persisted across restarts.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.profiles: Dict[str, AccountProfile] = {}
        # access token -> session; refresh token -> access token
        self.sessions: Dict[str, Session] = {}
        self._refresh_index: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    # user / auth
    def create_user(self, email: str, *, user_id: Optional[str] = None) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=user_id or str(uuid.uuid4()), email=normalized)
            self.users[user.id] = user
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.credentials.pop(user_id, None)
            self.profiles.pop(user_id, None)
            for access_token, session in list(self.sessions.items()):
                if session.user_id == user_id:
                    self.sessions.pop(access_token, None)
                    self._refresh_index.pop(session.refresh_token, None)
        self.logger.info("user_deleted", user_id=user_id)
        return True

    # sessions
    def save_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            stored = replace(session, csrf_token=None)
            self.sessions[stored.access_token] = stored
            self._refresh_index[stored.refresh_token] = stored.access_token
            return stored

    def get_session_by_access_token(self, access_token: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(access_token)

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            access_token = self._refresh_index.get(refresh_token)
            if access_token is None:
                return None
            return self.sessions.get(access_token)

    def revoke_session(self, access_token: str) -> None:
        with self._data_lock:
            session = self.sessions.pop(access_token, None)
            if session is not None:
                self._refresh_index.pop(session.refresh_token, None)

    # profiles
    def create_profile(self, user_id: str) -> AccountProfile:
        with self._data_lock:
            if user_id in self.profiles:
                raise ConstraintViolation("profile already exists", {"user_id": user_id})
            profile = AccountProfile(user_id=user_id)
            self.profiles[user_id] = profile
            return profile

    def get_profile(self, user_id: str) -> AccountProfile:
        with self._data_lock:
            profile = self.profiles.get(user_id)
            if profile is None:
                raise ProfileNotFound("profile not found", {"user_id": user_id})
            return profile

    def get_is_deleted(self, user_id: str) -> bool:
        return self.get_profile(user_id).is_deleted

    def mark_deleted(self, user_id: str, deleted_at: datetime) -> None:
        with self._data_lock:
            profile = self.get_profile(user_id)
            self.profiles[user_id] = replace(
                profile, is_deleted=True, deleted_at=deleted_at, updated_at=utcnow()
            )
        self.logger.info("profile_marked_deleted", user_id=user_id)


__all__ = ["MemoryStore"]
