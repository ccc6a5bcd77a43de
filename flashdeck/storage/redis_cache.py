from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Tuple

import redis.asyncio as aioredis
from redis import Redis

# Attempt counter with lockout. Mirrors flashdeck.service.rate_limit.decide_attempt
# so that the in-process and shared limiters agree on every transition.
_ATTEMPT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local max_attempts = tonumber(ARGV[2])
local window = tonumber(ARGV[3])
local block = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

local data = redis.call('HMGET', key, 'count', 'last')
local count = tonumber(data[1])
local last = tonumber(data[2])

if count == nil or last == nil or (now - last) > window then
  redis.call('HSET', key, 'count', 1, 'last', ARGV[1])
  redis.call('EXPIRE', key, ttl)
  return {1, 0}
end

if count >= max_attempts then
  if (now - last) < block then
    return {0, math.ceil(last + block - now)}
  end
  redis.call('HSET', key, 'count', 1, 'last', ARGV[1])
  redis.call('EXPIRE', key, ttl)
  return {1, 0}
end

redis.call('HSET', key, 'count', count + 1, 'last', ARGV[1])
redis.call('EXPIRE', key, ttl)
return {1, 0}
"""

SECURITY_STREAM_KEY = "audit:security_events"
SECURITY_STREAM_MAXLEN = 100_000


def _attempt_key(key: str) -> str:
    """Hash the logical key so user-controlled ids cannot collide on delimiters."""
    digest = hashlib.sha256(key.encode()).hexdigest()
    return f"attempts:{digest}"


def _attempt_ttl(window_seconds: int, block_seconds: int) -> int:
    return max(1, int(max(window_seconds, block_seconds)))


def _stream_fields(event: Dict[str, Any]) -> Dict[str, str]:
    return {k: v if isinstance(v, str) else json.dumps(v) for k, v in event.items() if v is not None}


class RedisCache:
    """Thin Redis wrapper for attempt counters and the security event stream."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._attempt_script = self.client.register_script(_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool off the startup event loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_attempt(
        self,
        key: str,
        *,
        max_attempts: int,
        window_seconds: int,
        block_seconds: int,
        now: float,
    ) -> Tuple[bool, int]:
        allowed, retry_after = await self._attempt_script(
            keys=[_attempt_key(key)],
            args=[now, max_attempts, window_seconds, block_seconds, _attempt_ttl(window_seconds, block_seconds)],
        )
        return bool(int(allowed)), int(retry_after or 0)

    async def reset_attempts(self, key: str) -> None:
        await self.client.delete(_attempt_key(key))

    async def append_security_event(self, event: Dict[str, Any]) -> None:
        await self.client.xadd(
            SECURITY_STREAM_KEY,
            _stream_fields(event),
            maxlen=SECURITY_STREAM_MAXLEN,
            approximate=True,
        )

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Exposes the same awaitable interface as ``RedisCache`` while talking to
    Redis through a blocking client, which avoids binding a connection pool to
    pytest's short-lived event loops.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._attempt_script = self.client.register_script(_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_attempt(
        self,
        key: str,
        *,
        max_attempts: int,
        window_seconds: int,
        block_seconds: int,
        now: float,
    ) -> Tuple[bool, int]:
        allowed, retry_after = self._attempt_script(
            keys=[_attempt_key(key)],
            args=[now, max_attempts, window_seconds, block_seconds, _attempt_ttl(window_seconds, block_seconds)],
        )
        return bool(int(allowed)), int(retry_after or 0)

    async def reset_attempts(self, key: str) -> None:
        self.client.delete(_attempt_key(key))

    async def append_security_event(self, event: Dict[str, Any]) -> None:
        self.client.xadd(
            SECURITY_STREAM_KEY,
            _stream_fields(event),
            maxlen=SECURITY_STREAM_MAXLEN,
            approximate=True,
        )

    async def close(self) -> None:
        self.client.close()
