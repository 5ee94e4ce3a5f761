"""
rate_limiter.py — Fixed-window, per-identity rate limiting.

═══════════════════════════════════════════════════════════════════════════
BACKING STORES
═══════════════════════════════════════════════════════════════════════════

    Redis (shared)    — one Lua script does INCR + PEXPIRE-on-first-hit +
                        PTTL atomically, so concurrent first writers can
                        never leave a counter without a TTL. Required when
                        several processes share one quota.
    In-process        — dict of (count, reset_at) with the same key/TTL
                        semantics. Used when Redis is disabled, and as the
                        degraded mode while Redis has not yet connected
                        (a store fault switches to the failure policy).

═══════════════════════════════════════════════════════════════════════════
FAILURE POLICY
═══════════════════════════════════════════════════════════════════════════

    A Redis command that errors on an established connection triggers the
    configured policy, the connection is dropped and re-established with
    exponential backoff (1 s → 60 s), and the policy keeps applying to
    every check until a reconnect succeeds:

        fail-closed (default)  allowed=False, current=None
        fail-open              allowed=True,  current=None,
                               rate_limit_unavailable=True (warning logged)

Fixed-window counting allows up to 2× limit across a window boundary.

Usage:
    limiter = RateLimiter(prefix="sms:ratelimit", limit=100, window_seconds=3600)
    result = await limiter.check_and_increment(user_id)
    if not result.allowed:
        ...
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis

from backend.app.core.cache import create_redis_client

logger = logging.getLogger(__name__)

MIN_RECONNECT_DELAY_SECONDS = 1.0
MAX_RECONNECT_DELAY_SECONDS = 60.0
SWEEP_EVERY_N_CHECKS = 100

# KEYS[1] = counter key, ARGV[1] = window in milliseconds
# Returns {count, pttl}
_INCREMENT_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl == -1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {current, ttl}
"""


class RateLimitStrategy(str, Enum):
    """Counting strategy. Only fixed windows are supported."""
    FIXED_WINDOW = "fixed_window"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RateLimitResult:
    allowed: bool
    current: Optional[int]
    limit: int
    reset_at: datetime
    rate_limit_unavailable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "current": self.current,
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat(),
            "rate_limit_unavailable": self.rate_limit_unavailable,
        }


# ═══════════════════════════════════════════════════════════════════════════
# In-process store
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryStore:
    """Counter store with lazy expiry on access plus periodic sweeps."""

    def __init__(self, now: Callable[[], datetime] = _utcnow):
        self._now = now
        self._entries: Dict[str, Tuple[int, datetime]] = {}

    def increment(self, key: str, window: timedelta) -> Tuple[int, datetime]:
        now = self._now()
        entry = self._entries.get(key)
        if entry is None or entry[1] <= now:
            entry = (1, now + window)
        else:
            entry = (entry[0] + 1, entry[1])
        self._entries[key] = entry
        return entry

    def get(self, key: str) -> Optional[Tuple[int, datetime]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self._now():
            del self._entries[key]
            return None
        return entry

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._now()
        expired = [k for k, (_, reset_at) in self._entries.items() if reset_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


# ═══════════════════════════════════════════════════════════════════════════
# Rate limiter
# ═══════════════════════════════════════════════════════════════════════════

class RateLimiter:
    """
    Bound successful `check_and_increment(identity)` calls per window.

    Parameters
    ----------
    prefix : str
        Key namespace, e.g. "sms:ratelimit". Keys are "<prefix>:<identity>".
    limit : int
        Allowed increments per identity per window (positive integer).
    window_seconds : float
        Window length (positive).
    use_redis : bool
        False → in-process store only.
    fail_open : bool
        Policy applied when a Redis command fails.
    redis_factory : callable
        Builds a `redis.asyncio` client from a URL (injectable for tests).
    now / monotonic : callable
        Wall clock for reset times and monotonic clock for reconnect
        backoff (injectable for tests).
    """

    def __init__(
        self,
        *,
        prefix: str,
        limit: int,
        window_seconds: float,
        use_redis: bool = True,
        redis_url: Optional[str] = None,
        fail_open: bool = False,
        strategy: RateLimitStrategy = RateLimitStrategy.FIXED_WINDOW,
        redis_factory: Optional[Callable[[Optional[str]], aioredis.Redis]] = None,
        now: Optional[Callable[[], datetime]] = None,
        monotonic: Optional[Callable[[], float]] = None,
    ):
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise ValueError("Invalid rate limiter config: limit must be a positive integer")
        if window_seconds is None or window_seconds <= 0:
            raise ValueError("Invalid rate limiter config: window_seconds must be positive")
        if strategy is not RateLimitStrategy.FIXED_WINDOW:
            raise ValueError(f"Unsupported rate limit strategy: {strategy}")

        self.prefix = prefix
        self.limit = limit
        self.window = timedelta(seconds=window_seconds)
        self.use_redis = use_redis
        self.fail_open = fail_open
        self.strategy = strategy

        self._redis_url = redis_url
        self._redis_factory = redis_factory or create_redis_client
        self._now = now or _utcnow
        self._monotonic = monotonic or time.monotonic

        self._memory = InMemoryStore(now=self._now)
        self._client: Optional[aioredis.Redis] = None
        self._script = None
        self._reconnect_attempts = 0
        self._next_connect_at = 0.0
        self._checks = 0
        self._closed = False
        self._store_fault: Optional[BaseException] = None

    # ── Properties ──

    @property
    def policy(self) -> str:
        return "fail-open" if self.fail_open else "fail-closed"

    @property
    def backend(self) -> str:
        """Store currently serving requests: "redis" or "memory"."""
        return "redis" if self._client is not None else "memory"

    def _key(self, identity: str) -> str:
        if not identity:
            raise ValueError("Rate limit identity must be non-empty")
        return f"{self.prefix}:{identity}"

    # ── Connection management ──

    async def _ensure_client(self) -> Optional[aioredis.Redis]:
        """Connected client, or None while Redis is disabled or backing off."""
        if not self.use_redis or self._closed:
            return None
        if self._client is not None:
            return self._client
        if self._monotonic() < self._next_connect_at:
            return None

        client = self._redis_factory(self._redis_url)
        try:
            await client.ping()
        except Exception as e:
            await self._close_quietly(client)
            self._schedule_reconnect("connect failed", e)
            return None

        self._client = client
        self._script = client.register_script(_INCREMENT_SCRIPT)
        if self._reconnect_attempts:
            logger.info(
                "Redis rate limiter reconnected (%s) after %d attempts",
                self.prefix, self._reconnect_attempts,
            )
        else:
            logger.info("Redis rate limiter initialised (%s)", self.prefix)
        self._reconnect_attempts = 0
        self._next_connect_at = 0.0
        self._store_fault = None
        return client

    def _schedule_reconnect(self, reason: str, error: BaseException) -> None:
        delay = min(
            MIN_RECONNECT_DELAY_SECONDS * (2 ** self._reconnect_attempts),
            MAX_RECONNECT_DELAY_SECONDS,
        )
        self._reconnect_attempts += 1
        self._next_connect_at = self._monotonic() + delay
        logger.warning(
            "Redis rate limiter %s (%s): %s; retry in %.0fs",
            reason, self.prefix, error, delay,
        )

    async def _drop_client(self, error: BaseException) -> None:
        client, self._client, self._script = self._client, None, None
        self._store_fault = error
        if client is not None:
            await self._close_quietly(client)
        self._schedule_reconnect("connection lost", error)

    @staticmethod
    async def _close_quietly(client: aioredis.Redis) -> None:
        try:
            await client.aclose()
        except Exception as e:
            logger.debug("Ignoring error while closing Redis client: %s", e)

    # ── Public API ──

    async def check_and_increment(self, identity: str) -> RateLimitResult:
        """Consume one unit of `identity`'s quota for the current window."""
        key = self._key(identity)

        self._checks += 1
        if self._checks % SWEEP_EVERY_N_CHECKS == 0:
            removed = self._memory.sweep()
            if removed:
                logger.debug("Swept %d expired rate limit entries (%s)", removed, self.prefix)

        client = await self._ensure_client()
        if client is None:
            if self._store_fault is not None and not self._closed:
                return self._unavailable_result(key, self._store_fault)
            count, reset_at = self._memory.increment(key, self.window)
            return RateLimitResult(
                allowed=count <= self.limit,
                current=count,
                limit=self.limit,
                reset_at=reset_at,
            )

        try:
            window_ms = int(self.window.total_seconds() * 1000)
            current, ttl_ms = await self._script(keys=[key], args=[window_ms])
            current, ttl_ms = int(current), int(ttl_ms)
        except Exception as e:
            await self._drop_client(e)
            return self._unavailable_result(key, e)

        if ttl_ms < 0:
            ttl_ms = int(self.window.total_seconds() * 1000)
        return RateLimitResult(
            allowed=current <= self.limit,
            current=current,
            limit=self.limit,
            reset_at=self._now() + timedelta(milliseconds=ttl_ms),
        )

    def _unavailable_result(self, key: str, error: BaseException) -> RateLimitResult:
        if self.fail_open:
            logger.warning(
                "Rate limit store error for %s, allowing request (fail-open): %s",
                key, error,
            )
        else:
            logger.error(
                "Rate limit store error for %s, blocking request (fail-closed): %s",
                key, error,
            )
        return RateLimitResult(
            allowed=self.fail_open,
            current=None,
            limit=self.limit,
            reset_at=self._now() + self.window,
            rate_limit_unavailable=True,
        )

    async def get_count(self, identity: str) -> int:
        """Current count for `identity` without incrementing (0 if unknown)."""
        key = self._key(identity)
        client = await self._ensure_client()
        if client is None:
            entry = self._memory.get(key)
            return entry[0] if entry else 0
        try:
            value = await client.get(key)
        except Exception as e:
            await self._drop_client(e)
            entry = self._memory.get(key)
            return entry[0] if entry else 0
        return int(value) if value is not None else 0

    async def reset(self, identity: str) -> None:
        """Delete `identity`'s counter in every store."""
        key = self._key(identity)
        self._memory.delete(key)
        client = await self._ensure_client()
        if client is None:
            return
        try:
            await client.delete(key)
        except Exception as e:
            await self._drop_client(e)
            raise

    async def close(self) -> None:
        """Release the Redis connection; later checks use the in-process store."""
        self._closed = True
        client, self._client, self._script = self._client, None, None
        if client is not None:
            await client.aclose()
            logger.info("Redis rate limiter closed (%s)", self.prefix)

    def status(self) -> Dict[str, Any]:
        return {
            "prefix": self.prefix,
            "limit": self.limit,
            "window_seconds": self.window.total_seconds(),
            "strategy": self.strategy.value,
            "policy": self.policy,
            "backend": self.backend,
        }
