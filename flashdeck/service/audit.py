from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, List, Optional, Protocol

from flashdeck.logging import get_logger

logger = get_logger(__name__)


class SecurityAction(str, Enum):
    REGISTER = "register"
    LOGIN = "login"
    LOGOUT = "logout"
    CHANGE_PASSWORD = "change_password"
    DELETE_ACCOUNT = "delete_account"
    SESSION_MISMATCH = "session_mismatch"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    TOKEN_VERIFICATION_FAILED = "token_verification_failed"
    SESSION_INVALID = "session_invalid"
    SESSION_REFRESH_FAILED = "session_refresh_failed"


class SecurityStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class SecurityEvent:
    """Immutable audit record for a sensitive action."""

    user_id: str
    action: SecurityAction
    status: SecurityStatus
    details: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["action"] = self.action.value
        payload["status"] = self.status.value
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


class AuditSink(Protocol):
    async def append(self, event: SecurityEvent) -> None: ...


class LoggingAuditSink:
    """Writes each event as a structured ``security_event`` log line."""

    def __init__(self) -> None:
        self.logger = get_logger("flashdeck.security")

    async def append(self, event: SecurityEvent) -> None:
        log_fn = self.logger.info if event.status == SecurityStatus.SUCCESS else self.logger.warning
        log_fn("security_event", **event.to_dict())


class MemoryAuditSink:
    """Keeps events in process memory; used by tests and local development."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: List[SecurityEvent] = []

    async def append(self, event: SecurityEvent) -> None:
        with self._lock:
            self.events.append(event)

    def for_user(self, user_id: str) -> List[SecurityEvent]:
        with self._lock:
            return [event for event in self.events if event.user_id == user_id]

    def actions(self) -> List[tuple[str, str]]:
        with self._lock:
            return [(event.action.value, event.status.value) for event in self.events]


class RedisAuditSink:
    """Appends events to the shared Redis security stream."""

    def __init__(self, cache) -> None:
        self.cache = cache

    async def append(self, event: SecurityEvent) -> None:
        await self.cache.append_security_event(event.to_dict())


class SecurityAuditLog:
    """Best-effort fan-out of security events to one or more sinks.

    A failing sink is logged and skipped; recording an event never raises, so an
    audit outage cannot turn a completed mutation into a failed response.
    """

    def __init__(self, sinks: Iterable[AuditSink]) -> None:
        self.sinks = list(sinks)

    async def record(
        self,
        user_id: Optional[str],
        action: SecurityAction,
        status: SecurityStatus,
        details: Optional[str] = None,
    ) -> SecurityEvent:
        event = SecurityEvent(
            user_id=user_id or "unknown",
            action=action,
            status=status,
            details=details,
        )
        for sink in self.sinks:
            try:
                await sink.append(event)
            except Exception as exc:
                logger.error(
                    "audit_sink_failed",
                    sink=type(sink).__name__,
                    action=action.value,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        return event

    async def success(self, user_id: Optional[str], action: SecurityAction, details: Optional[str] = None) -> SecurityEvent:
        return await self.record(user_id, action, SecurityStatus.SUCCESS, details)

    async def failure(self, user_id: Optional[str], action: SecurityAction, details: Optional[str] = None) -> SecurityEvent:
        return await self.record(user_id, action, SecurityStatus.FAILURE, details)


__all__ = [
    "AuditSink",
    "LoggingAuditSink",
    "MemoryAuditSink",
    "RedisAuditSink",
    "SecurityAction",
    "SecurityAuditLog",
    "SecurityEvent",
    "SecurityStatus",
]
