from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

from flashdeck.logging import get_logger
from flashdeck.storage.models import RateLimitEntry

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    """Attempt budget for one action class.

    ``action`` namespaces the counters so that, for the same user, password
    changes and account deletions are limited independently.
    """

    action: str
    max_attempts: int
    window_seconds: int
    block_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: Optional[int] = None


CHANGE_PASSWORD_POLICY = RateLimitPolicy("change_password", max_attempts=5, window_seconds=300, block_seconds=900)
DELETE_ACCOUNT_POLICY = RateLimitPolicy("delete_account", max_attempts=3, window_seconds=300, block_seconds=1800)


class RateLimiter(Protocol):
    async def check_and_record_attempt(
        self, identifier: str, policy: RateLimitPolicy
    ) -> RateLimitDecision: ...

    async def reset(self, identifier: str, policy: RateLimitPolicy) -> None: ...


def decide_attempt(
    entry: Optional[RateLimitEntry], now: float, policy: RateLimitPolicy
) -> Tuple[RateLimitDecision, Optional[RateLimitEntry]]:
    """Apply one attempt to ``entry`` and return the decision plus the entry to store.

    The returned entry is ``None`` when a denied attempt leaves state untouched.
    Denied attempts never move ``last_attempt_at`` forward.
    """
    if entry is None or now - entry.last_attempt_at > policy.window_seconds:
        return RateLimitDecision(allowed=True), RateLimitEntry(count=1, last_attempt_at=now)

    if entry.count >= policy.max_attempts:
        elapsed = now - entry.last_attempt_at
        if elapsed < policy.block_seconds:
            retry_after = math.ceil(entry.last_attempt_at + policy.block_seconds - now)
            return RateLimitDecision(allowed=False, retry_after_seconds=max(1, retry_after)), None
        return RateLimitDecision(allowed=True), RateLimitEntry(count=1, last_attempt_at=now)

    return RateLimitDecision(allowed=True), RateLimitEntry(count=entry.count + 1, last_attempt_at=now)


class InMemoryRateLimiter:
    """Per-process attempt table.

    State lives for the lifetime of the process and is not shared between
    workers or instances; multi-instance deployments must use
    ``RedisRateLimiter`` so that every instance sees the same counters.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, str], RateLimitEntry] = {}

    async def check_and_record_attempt(
        self, identifier: str, policy: RateLimitPolicy
    ) -> RateLimitDecision:
        key = (policy.action, identifier)
        with self._lock:
            now = self._clock()
            decision, updated = decide_attempt(self._entries.get(key), now, policy)
            if updated is not None:
                self._entries[key] = updated
        if not decision.allowed:
            logger.info(
                "rate_limit_denied",
                action=policy.action,
                identifier=identifier,
                retry_after=decision.retry_after_seconds,
            )
        return decision

    async def reset(self, identifier: str, policy: RateLimitPolicy) -> None:
        with self._lock:
            self._entries.pop((policy.action, identifier), None)

    def peek(self, identifier: str, policy: RateLimitPolicy) -> Optional[RateLimitEntry]:
        with self._lock:
            return self._entries.get((policy.action, identifier))


class RedisRateLimiter:
    """Shared attempt table backed by an atomic Redis script."""

    def __init__(self, cache, clock: Callable[[], float] = time.time) -> None:
        self.cache = cache
        self._clock = clock

    @staticmethod
    def _key(identifier: str, policy: RateLimitPolicy) -> str:
        return f"{policy.action}:{identifier}"

    async def check_and_record_attempt(
        self, identifier: str, policy: RateLimitPolicy
    ) -> RateLimitDecision:
        allowed, retry_after = await self.cache.check_attempt(
            self._key(identifier, policy),
            max_attempts=policy.max_attempts,
            window_seconds=policy.window_seconds,
            block_seconds=policy.block_seconds,
            now=self._clock(),
        )
        if allowed:
            return RateLimitDecision(allowed=True)
        logger.info(
            "rate_limit_denied",
            action=policy.action,
            identifier=identifier,
            retry_after=retry_after,
            backend="redis",
        )
        return RateLimitDecision(allowed=False, retry_after_seconds=max(1, int(retry_after)))

    async def reset(self, identifier: str, policy: RateLimitPolicy) -> None:
        await self.cache.reset_attempts(self._key(identifier, policy))


__all__ = [
    "CHANGE_PASSWORD_POLICY",
    "DELETE_ACCOUNT_POLICY",
    "InMemoryRateLimiter",
    "RateLimitDecision",
    "RateLimitPolicy",
    "RateLimiter",
    "RedisRateLimiter",
    "decide_attempt",
]
