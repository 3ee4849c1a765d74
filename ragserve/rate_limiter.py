"""
Per-tenant rate limiting.

Each tenant has two request buckets (60 s and 24 h) plus a tokens/day
counter that is tracked but never enforced here. Buckets live behind the
``BucketStore`` interface so the in-process map can be swapped for Redis
without touching call sites.

Policy:
- unknown tiers get the free-tier limits, never "unlimited"
- a rejected request increments nothing
- buckets are recreated lazily on first access after expiry
"""

from __future__ import annotations

import asyncio
import math
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from loguru import logger

from ragserve.errors import RateLimited
from ragserve.metrics import rate_limit_rejections

MINUTE_SECONDS = 60.0
DAY_SECONDS = 24 * 60 * 60.0


@dataclass(frozen=True)
class TierLimits:
    requests_per_minute: int
    requests_per_day: int
    tokens_per_day: int


FREE_TIER_LIMITS = TierLimits(requests_per_minute=10, requests_per_day=100, tokens_per_day=50_000)

DEFAULT_TIER_LIMITS: Dict[str, TierLimits] = {
    "free": FREE_TIER_LIMITS,
    "starter": TierLimits(30, 1_000, 500_000),
    "pro": TierLimits(100, 10_000, 5_000_000),
    "enterprise": TierLimits(500, 100_000, 50_000_000),
}


def load_tier_limits(environ: Optional[Mapping[str, str]] = None) -> Dict[str, TierLimits]:
    """Defaults plus ``TIER_LIMITS_<TIER>=rpm:rpd:tpd`` overrides."""
    env = os.environ if environ is None else environ
    limits = dict(DEFAULT_TIER_LIMITS)
    for key, value in env.items():
        if not key.startswith("TIER_LIMITS_") or not value:
            continue
        tier = key[len("TIER_LIMITS_"):].lower()
        try:
            rpm, rpd, tpd = (int(p) for p in value.split(":"))
        except ValueError:
            logger.warning(f"Ignoring malformed {key}={value!r} (expected rpm:rpd:tpd)")
            continue
        if rpm <= 0 or rpd <= 0 or tpd <= 0:
            logger.warning(f"Ignoring non-positive limits in {key}")
            continue
        limits[tier] = TierLimits(rpm, rpd, tpd)
    # free must always exist so the fallback is well-defined
    limits.setdefault("free", FREE_TIER_LIMITS)
    return limits


# ============================================================================
# Bucket stores
# ============================================================================


@dataclass
class Bucket:
    count: int
    reset_at: float


@dataclass(frozen=True)
class WindowSpec:
    name: str
    key: str
    limit: int
    seconds: float


@dataclass(frozen=True)
class WindowState:
    name: str
    count: int
    limit: int
    reset_at: float

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


@dataclass(frozen=True)
class AcquireResult:
    allowed: bool
    windows: List[WindowState]
    blocked: Optional[WindowState] = None


class BucketStore(Protocol):
    async def acquire(self, windows: Sequence[WindowSpec], now: float) -> AcquireResult: ...

    async def peek(self, key: str, now: float) -> Optional[Bucket]: ...

    async def add_tokens(self, key: str, tokens: int, window_seconds: float, now: float) -> int: ...

    async def sweep(self, now: float) -> int: ...


class InMemoryBucketStore:
    """
    Lock-guarded dict of buckets.

    ``acquire`` does get-or-create, check and increment for every window
    under one lock, so concurrent requests for the same tenant cannot both
    pass on the last remaining slot.
    """

    def __init__(self):
        self._buckets: Dict[str, Bucket] = {}
        self._lock = threading.Lock()

    def _live_bucket(self, key: str, seconds: float, now: float) -> Bucket:
        bucket = self._buckets.get(key)
        if bucket is None or bucket.reset_at <= now:
            bucket = Bucket(count=0, reset_at=now + seconds)
            self._buckets[key] = bucket
        return bucket

    async def acquire(self, windows: Sequence[WindowSpec], now: float) -> AcquireResult:
        with self._lock:
            buckets = [self._live_bucket(w.key, w.seconds, now) for w in windows]
            blocked = None
            for w, b in zip(windows, buckets):
                if b.count >= w.limit:
                    blocked = WindowState(w.name, b.count, w.limit, b.reset_at)
                    break
            if blocked is None:
                for b in buckets:
                    b.count += 1
            states = [WindowState(w.name, b.count, w.limit, b.reset_at) for w, b in zip(windows, buckets)]
        return AcquireResult(allowed=blocked is None, windows=states, blocked=blocked)

    async def peek(self, key: str, now: float) -> Optional[Bucket]:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None or bucket.reset_at <= now:
                return None
            return Bucket(bucket.count, bucket.reset_at)

    async def add_tokens(self, key: str, tokens: int, window_seconds: float, now: float) -> int:
        with self._lock:
            bucket = self._live_bucket(key, window_seconds, now)
            bucket.count += max(0, int(tokens))
            return bucket.count

    async def sweep(self, now: float) -> int:
        with self._lock:
            expired = [k for k, b in self._buckets.items() if b.reset_at <= now]
            for k in expired:
                del self._buckets[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._buckets)


_ACQUIRE_LUA = """
local now = tonumber(ARGV[1])
local n = #KEYS
local counts = {}
local resets = {}
local blocked = 0
for i = 1, n do
  local limit = tonumber(ARGV[2 * i])
  local window = tonumber(ARGV[2 * i + 1])
  local data = redis.call('HMGET', KEYS[i], 'count', 'reset')
  local count = tonumber(data[1])
  local reset = tonumber(data[2])
  if (not count) or (not reset) or reset <= now then
    count = 0
    reset = now + window
  end
  counts[i] = count
  resets[i] = reset
  if blocked == 0 and count >= limit then
    blocked = i
  end
end
local out = {blocked}
for i = 1, n do
  if blocked == 0 then
    counts[i] = counts[i] + 1
    redis.call('HSET', KEYS[i], 'count', counts[i], 'reset', resets[i])
    redis.call('PEXPIREAT', KEYS[i], resets[i])
  end
  table.insert(out, counts[i])
  table.insert(out, resets[i])
end
return out
"""

_ADD_TOKENS_LUA = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local tokens = tonumber(ARGV[3])
local data = redis.call('HMGET', KEYS[1], 'count', 'reset')
local count = tonumber(data[1])
local reset = tonumber(data[2])
if (not count) or (not reset) or reset <= now then
  count = 0
  reset = now + window
end
count = count + tokens
redis.call('HSET', KEYS[1], 'count', count, 'reset', reset)
redis.call('PEXPIREAT', KEYS[1], reset)
return count
"""


class RedisBucketStore:
    """
    Buckets as Redis hashes (``count``, ``reset`` in epoch ms).

    One Lua script per acquire keeps check-and-increment atomic across every
    instance sharing the Redis. Keys expire on their own, so ``sweep`` has
    nothing to do.
    """

    def __init__(self, client: Any, prefix: str = "ragserve"):
        self._redis = client
        self.prefix = prefix
        self._acquire = client.register_script(_ACQUIRE_LUA)
        self._add_tokens = client.register_script(_ADD_TOKENS_LUA)

    def _key(self, key: str) -> str:
        return f"{self.prefix}:ratelimit:{key}"

    async def acquire(self, windows: Sequence[WindowSpec], now: float) -> AcquireResult:
        now_ms = int(now * 1000)
        args: List[int] = [now_ms]
        for w in windows:
            args.extend([int(w.limit), int(w.seconds * 1000)])
        raw = await self._acquire(keys=[self._key(w.key) for w in windows], args=args)
        blocked_idx = int(raw[0])
        states = [
            WindowState(w.name, int(raw[1 + 2 * i]), w.limit, int(raw[2 + 2 * i]) / 1000.0)
            for i, w in enumerate(windows)
        ]
        blocked = states[blocked_idx - 1] if blocked_idx else None
        return AcquireResult(allowed=blocked is None, windows=states, blocked=blocked)

    async def peek(self, key: str, now: float) -> Optional[Bucket]:
        count, reset = await self._redis.hmget(self._key(key), "count", "reset")
        if count is None or reset is None:
            return None
        reset_at = int(reset) / 1000.0
        if reset_at <= now:
            return None
        return Bucket(int(count), reset_at)

    async def add_tokens(self, key: str, tokens: int, window_seconds: float, now: float) -> int:
        return int(
            await self._add_tokens(
                keys=[self._key(key)],
                args=[int(now * 1000), int(window_seconds * 1000), max(0, int(tokens))],
            )
        )

    async def sweep(self, now: float) -> int:
        return 0


# ============================================================================
# Rate limiter
# ============================================================================


@dataclass(frozen=True)
class RateLimitDecision:
    tenant_id: str
    tier: str
    limits: TierLimits
    minute: WindowState
    day: WindowState

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit-Minute": str(self.minute.limit),
            "X-RateLimit-Remaining-Minute": str(self.minute.remaining),
            "X-RateLimit-Reset-Minute": str(math.ceil(self.minute.reset_at)),
            "X-RateLimit-Limit-Day": str(self.day.limit),
            "X-RateLimit-Remaining-Day": str(self.day.remaining),
        }


class RateLimiter:
    def __init__(
        self,
        store: Optional[BucketStore] = None,
        tier_limits: Optional[Dict[str, TierLimits]] = None,
        clock=time.time,
    ):
        self.store: BucketStore = store if store is not None else InMemoryBucketStore()
        self.tier_limits = dict(tier_limits) if tier_limits is not None else load_tier_limits()
        self._clock = clock
        self._unknown_tiers_logged: set = set()

    def limits_for(self, tier: Optional[str]) -> TierLimits:
        name = (tier or "free").lower()
        limits = self.tier_limits.get(name)
        if limits is None:
            if name not in self._unknown_tiers_logged:
                self._unknown_tiers_logged.add(name)
                logger.warning(f"Unknown tier '{name}', applying free-tier limits")
            limits = self.tier_limits.get("free", FREE_TIER_LIMITS)
        return limits

    @staticmethod
    def _windows(tenant_id: str, limits: TierLimits) -> List[WindowSpec]:
        return [
            WindowSpec("minute", f"{tenant_id}:minute", limits.requests_per_minute, MINUTE_SECONDS),
            WindowSpec("day", f"{tenant_id}:day", limits.requests_per_day, DAY_SECONDS),
        ]

    async def check(self, tenant_id: str, tier: Optional[str], request_id: Optional[str] = None) -> RateLimitDecision:
        """
        Count one request against both windows.

        Raises:
            RateLimited: if either window is already at its limit; nothing is incremented
        """
        limits = self.limits_for(tier)
        now = self._clock()
        result = await self.store.acquire(self._windows(tenant_id, limits), now)
        minute, day = result.windows
        decision = RateLimitDecision(tenant_id, (tier or "free").lower(), limits, minute, day)

        if not result.allowed:
            blocked = result.blocked
            retry_after = max(1, math.ceil(blocked.reset_at - now))
            rate_limit_rejections.labels(tier=decision.tier, window=blocked.name).inc()
            logger.warning(
                f"[{request_id}] Rate limit exceeded ({blocked.name}): tenant={tenant_id} "
                f"tier={decision.tier} limit={blocked.limit} retry_after={retry_after}s"
            )
            label = "minute" if blocked.name == "minute" else "day"
            raise RateLimited(
                f"Too many requests. Limit: {blocked.limit}/{label}",
                retry_after_seconds=retry_after,
                limit=blocked.limit,
                window=blocked.name,
                headers=decision.headers(),
            )
        return decision

    async def record_tokens(self, tenant_id: str, tokens: int) -> int:
        """Add to the tokens/day counter (tracked, not enforced)."""
        return await self.store.add_tokens(f"{tenant_id}:tokens", tokens, DAY_SECONDS, self._clock())

    async def usage(self, tenant_id: str, tier: Optional[str] = None) -> Dict[str, Any]:
        """Current counters for the admin surface. Does not count as a request."""
        limits = self.limits_for(tier)
        now = self._clock()

        async def _window(key: str, limit: int, seconds: float) -> Dict[str, Any]:
            bucket = await self.store.peek(key, now)
            return {
                "count": bucket.count if bucket else 0,
                "limit": limit,
                "resetTime": (bucket.reset_at if bucket else now + seconds),
            }

        return {
            "tier": (tier or "free").lower(),
            "minute": await _window(f"{tenant_id}:minute", limits.requests_per_minute, MINUTE_SECONDS),
            "day": await _window(f"{tenant_id}:day", limits.requests_per_day, DAY_SECONDS),
            "tokens": await _window(f"{tenant_id}:tokens", limits.tokens_per_day, DAY_SECONDS),
        }

    async def sweep(self) -> int:
        removed = await self.store.sweep(self._clock())
        if removed:
            logger.debug(f"Rate limiter sweep removed {removed} expired buckets")
        return removed

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Background task body: sweep expired buckets until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.warning(f"Rate limiter sweep failed: {e}")
