from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from tenantgate.logging import get_logger
from tenantgate.storage.models import RateLimitBucket
from tenantgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

MEMORY_PRUNE_INTERVAL_MS = 120_000


@dataclass(frozen=True)
class RateLimitRule:
    name: str
    window_ms: int
    max_requests: int


LOGIN_RATE_LIMIT = RateLimitRule("login", 60_000, 12)
REGISTER_RATE_LIMIT = RateLimitRule("register", 10 * 60_000, 6)
AUTH_READ_RATE_LIMIT = RateLimitRule("auth_read", 60_000, 120)
ADDRESS_SUGGEST_RATE_LIMIT = RateLimitRule("address_suggest", 60_000, 60)
THEMES_RATE_LIMIT = RateLimitRule("themes", 60_000, 120)
OFFERINGS_RATE_LIMIT = RateLimitRule("offerings", 60_000, 60)

_AUTH_READ_PATHS = frozenset(
    {
        "/api/auth/session",
        "/api/auth/logout",
        "/api/auth/logout-all",
        "/api/auth/switch-client",
        "/api/auth/join-client",
        "/api/auth/password",
    }
)


def resolve_rate_limit_rule(path: str) -> Optional[RateLimitRule]:
    if path == "/api/auth/login":
        return LOGIN_RATE_LIMIT
    if path == "/api/auth/register":
        return REGISTER_RATE_LIMIT
    if path == "/api/address-suggest":
        return ADDRESS_SUGGEST_RATE_LIMIT
    if path == "/api/themes" or path.startswith("/api/themes/"):
        return THEMES_RATE_LIMIT
    if path == "/api/intramural-sports/offerings":
        return OFFERINGS_RATE_LIMIT
    if path in _AUTH_READ_PATHS:
        return AUTH_READ_RATE_LIMIT
    return None


def current_time_ms() -> int:
    return int(time.time() * 1000)


def window_start_for(now_ms: int, window_ms: int) -> int:
    return now_ms - (now_ms % window_ms)


def _ms_to_datetime(value_ms: int) -> datetime:
    return datetime.fromtimestamp(value_ms / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    count: int
    limit: int
    remaining: int
    reset_at_ms: int

    @classmethod
    def from_count(
        cls, count: int, max_requests: int, window_start_ms: int, window_ms: int
    ) -> "RateLimitResult":
        return cls(
            allowed=count <= max_requests,
            count=count,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            reset_at_ms=window_start_ms + window_ms,
        )


class RateLimitStore(Protocol):
    async def consume(
        self, key: str, window_ms: int, max_requests: int, now_ms: int
    ) -> RateLimitResult: ...

    async def purge_older_than(self, cutoff_ms: int) -> int: ...


class BucketStore(Protocol):
    async def consume_rate_limit(
        self, key: str, window_ms: int, window_start_ms: int, now: datetime
    ) -> RateLimitBucket: ...

    async def purge_rate_limits(self, cutoff: datetime) -> int: ...


class StoreRateLimitStore:
    """Counters in the primary store's ``auth_rate_limits`` table."""

    def __init__(self, store: BucketStore) -> None:
        self.store = store

    async def consume(
        self, key: str, window_ms: int, max_requests: int, now_ms: int
    ) -> RateLimitResult:
        window_start = window_start_for(now_ms, window_ms)
        bucket = await self.store.consume_rate_limit(
            key, window_ms, window_start, _ms_to_datetime(now_ms)
        )
        return RateLimitResult.from_count(
            bucket.count, max_requests, bucket.window_start_ms, window_ms
        )

    async def purge_older_than(self, cutoff_ms: int) -> int:
        return await self.store.purge_rate_limits(_ms_to_datetime(cutoff_ms))


class RedisRateLimitStore:
    """Counters in Redis; expired windows age out through key TTLs."""

    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    async def consume(
        self, key: str, window_ms: int, max_requests: int, now_ms: int
    ) -> RateLimitResult:
        window_start = window_start_for(now_ms, window_ms)
        count = await self.cache.consume_fixed_window(key, window_ms, window_start)
        return RateLimitResult.from_count(count, max_requests, window_start, window_ms)

    async def purge_older_than(self, cutoff_ms: int) -> int:
        return 0


class MemoryRateLimitStore:
    """Process-local fixed windows.

    Expired windows are pruned on access, at most once per
    ``prune_interval_ms``, so the map cannot grow without bound.
    """

    def __init__(self, *, prune_interval_ms: int = MEMORY_PRUNE_INTERVAL_MS) -> None:
        self._buckets: Dict[Tuple[str, int], Tuple[int, int]] = {}
        self._lock = threading.Lock()
        self._prune_interval_ms = prune_interval_ms
        self._last_prune_ms = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def _prune_locked(self, now_ms: int) -> None:
        if now_ms - self._last_prune_ms < self._prune_interval_ms:
            return
        self._last_prune_ms = now_ms
        expired = [
            bucket_key
            for bucket_key, (window_start, _) in self._buckets.items()
            if window_start + bucket_key[1] <= now_ms
        ]
        for bucket_key in expired:
            del self._buckets[bucket_key]

    async def consume(
        self, key: str, window_ms: int, max_requests: int, now_ms: int
    ) -> RateLimitResult:
        window_start = window_start_for(now_ms, window_ms)
        with self._lock:
            self._prune_locked(now_ms)
            stored_start, count = self._buckets.get((key, window_ms), (window_start, 0))
            count = count + 1 if stored_start == window_start else 1
            self._buckets[(key, window_ms)] = (window_start, count)
        return RateLimitResult.from_count(count, max_requests, window_start, window_ms)

    async def purge_older_than(self, cutoff_ms: int) -> int:
        with self._lock:
            expired = [
                bucket_key
                for bucket_key, (window_start, _) in self._buckets.items()
                if window_start + bucket_key[1] <= cutoff_ms
            ]
            for bucket_key in expired:
                del self._buckets[bucket_key]
            return len(expired)


class FallbackRateLimitStore:
    """Persisted counters first; process-local counters while the backend is down.

    Protection degrades to per-process granularity during an outage instead of
    failing open. The switch is logged once per outage.
    """

    def __init__(self, primary: RateLimitStore, fallback: MemoryRateLimitStore) -> None:
        self.primary = primary
        self.fallback = fallback
        self._degraded = False
        self._lock = threading.Lock()

    @property
    def degraded(self) -> bool:
        return self._degraded

    def _mark_degraded(self, exc: Exception) -> None:
        with self._lock:
            first = not self._degraded
            self._degraded = True
        if first:
            logger.warning(
                "rate_limit_backend_unavailable",
                error_type=type(exc).__name__,
                error=str(exc),
                message="Falling back to in-memory rate limiting for this process",
            )

    def _mark_recovered(self) -> None:
        with self._lock:
            recovered = self._degraded
            self._degraded = False
        if recovered:
            logger.info("rate_limit_backend_recovered")

    async def consume(
        self, key: str, window_ms: int, max_requests: int, now_ms: int
    ) -> RateLimitResult:
        try:
            result = await self.primary.consume(key, window_ms, max_requests, now_ms)
        except Exception as exc:
            self._mark_degraded(exc)
            return await self.fallback.consume(key, window_ms, max_requests, now_ms)
        self._mark_recovered()
        return result

    async def purge_older_than(self, cutoff_ms: int) -> int:
        try:
            purged = await self.primary.purge_older_than(cutoff_ms)
        except Exception as exc:
            self._mark_degraded(exc)
            return await self.fallback.purge_older_than(cutoff_ms)
        return purged


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int
    retry_after_seconds: int
    dimension: str


def retry_after_seconds(reset_at_ms: int, now_ms: int) -> int:
    return max(1, math.ceil((reset_at_ms - now_ms) / 1000))


class RateLimiter:
    """Applies route rules across the IP and account dimensions.

    A request is blocked when either dimension is exhausted; the reported
    numbers come from the more restrictive one. Retention of persisted buckets
    is handled by an opportunistic sweep piggybacked on request traffic.
    """

    def __init__(
        self,
        store: RateLimitStore,
        *,
        retention_ms: int = 24 * 60 * 60 * 1000,
        cleanup_interval_ms: int = 5 * 60 * 1000,
        clock_ms: Optional[Callable[[], int]] = None,
    ) -> None:
        self.store = store
        self.retention_ms = retention_ms
        self.cleanup_interval_ms = cleanup_interval_ms
        self._clock_ms = clock_ms or current_time_ms
        self._last_cleanup_ms = self._clock_ms()
        self._cleanup_lock = threading.Lock()

    @staticmethod
    def ip_key(ip: str, path: str, method: str) -> str:
        return f"{ip}:{path}:{method.upper()}"

    @staticmethod
    def account_key(account: str, path: str, method: str) -> str:
        return f"account:{account.strip().lower()}:{path}:{method.upper()}"

    async def consume(
        self, key: str, window_ms: int, max_requests: int, now_ms: Optional[int] = None
    ) -> RateLimitResult:
        if window_ms <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_ms=window_ms,
                message="Invalid rate limit window; defaulting to 60 seconds",
            )
            window_ms = 60_000
        now = self._clock_ms() if now_ms is None else now_ms
        return await self.store.consume(key, window_ms, max_requests, now)

    async def check(
        self,
        rule: RateLimitRule,
        *,
        ip: str,
        path: str,
        method: str,
        account: Optional[str] = None,
    ) -> RateLimitDecision:
        now_ms = self._clock_ms()
        dimensions: List[Tuple[str, str]] = [("ip", self.ip_key(ip, path, method))]
        if account and account.strip():
            dimensions.append(("account", self.account_key(account, path, method)))

        results: List[Tuple[str, RateLimitResult]] = []
        for dimension, key in dimensions:
            result = await self.consume(key, rule.window_ms, rule.max_requests, now_ms)
            results.append((dimension, result))

        await self.maybe_cleanup(now_ms)

        blocked = [item for item in results if not item[1].allowed]
        if blocked:
            dimension, chosen = max(blocked, key=lambda item: item[1].reset_at_ms)
        else:
            dimension, chosen = min(
                results, key=lambda item: (item[1].remaining, -item[1].reset_at_ms)
            )
        decision = RateLimitDecision(
            allowed=not blocked,
            limit=rule.max_requests,
            remaining=chosen.remaining,
            reset_at_ms=chosen.reset_at_ms,
            retry_after_seconds=retry_after_seconds(chosen.reset_at_ms, now_ms),
            dimension=dimension,
        )
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                rule=rule.name,
                path=path,
                method=method,
                dimension=dimension,
                retry_after=decision.retry_after_seconds,
            )
        return decision

    async def maybe_cleanup(self, now_ms: Optional[int] = None) -> int:
        """Purge stale buckets if the cleanup interval has elapsed."""
        now = self._clock_ms() if now_ms is None else now_ms
        with self._cleanup_lock:
            if now - self._last_cleanup_ms < self.cleanup_interval_ms:
                return 0
            self._last_cleanup_ms = now
        try:
            purged = await self.store.purge_older_than(now - self.retention_ms)
        except Exception as exc:
            logger.warning(
                "rate_limit_cleanup_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return 0
        if purged:
            logger.debug("rate_limit_cleanup", purged=purged)
        return purged
