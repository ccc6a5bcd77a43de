"""Tests for the security audit log fan-out."""

from unittest.mock import AsyncMock

from flashdeck.service.audit import (
    MemoryAuditSink,
    RedisAuditSink,
    SecurityAction,
    SecurityAuditLog,
    SecurityStatus,
)


class BrokenSink:
    async def append(self, event):
        raise ConnectionError("sink offline")


class TestSecurityAuditLog:
    async def test_records_to_every_sink(self):
        first, second = MemoryAuditSink(), MemoryAuditSink()
        audit = SecurityAuditLog([first, second])

        event = await audit.success("user-1", SecurityAction.CHANGE_PASSWORD, "Password updated successfully")

        assert first.events == [event]
        assert second.events == [event]
        assert event.status == SecurityStatus.SUCCESS

    async def test_failing_sink_does_not_block_others_or_raise(self):
        sink = MemoryAuditSink()
        audit = SecurityAuditLog([BrokenSink(), sink])

        await audit.failure("user-1", SecurityAction.SESSION_MISMATCH, "cookie mismatch")

        assert sink.actions() == [("session_mismatch", "failure")]

    async def test_missing_user_is_recorded_as_unknown(self):
        sink = MemoryAuditSink()
        event = await SecurityAuditLog([sink]).failure(None, SecurityAction.LOGIN)
        assert event.user_id == "unknown"

    async def test_for_user_filters(self):
        sink = MemoryAuditSink()
        audit = SecurityAuditLog([sink])
        await audit.success("user-1", SecurityAction.LOGIN)
        await audit.success("user-2", SecurityAction.LOGIN)
        assert [event.user_id for event in sink.for_user("user-2")] == ["user-2"]


class TestRedisAuditSink:
    async def test_appends_serialized_event(self):
        cache = AsyncMock()
        audit = SecurityAuditLog([RedisAuditSink(cache)])

        event = await audit.failure("user-1", SecurityAction.RATE_LIMIT_EXCEEDED, "too many attempts")

        payload = cache.append_security_event.await_args.args[0]
        assert payload == event.to_dict()
        assert payload["action"] == "rate_limit_exceeded"
        assert payload["status"] == "failure"
        assert payload["timestamp"].endswith("+00:00")
