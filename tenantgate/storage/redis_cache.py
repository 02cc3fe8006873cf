from __future__ import annotations

import hashlib

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for fixed-window rate-limit counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic increment; the first hit in a window arms the expiry
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""

    # Keys outlive their window briefly so a late reader still sees the count
    _EXPIRY_GRACE_MS = 1000

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> None:
        await self.client.ping()

    @staticmethod
    def _normalize_rate_key(key: str, window_ms: int, window_start_ms: int) -> str:
        """Hash the caller-controlled part of the key to avoid delimiter injection."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}:{window_ms}:{window_start_ms}"

    async def consume_fixed_window(
        self, key: str, window_ms: int, window_start_ms: int
    ) -> int:
        redis_key = self._normalize_rate_key(key, window_ms, window_start_ms)
        count = await self._fixed_window(
            keys=[redis_key], args=[window_ms + self._EXPIRY_GRACE_MS]
        )
        return int(count)

    async def close(self) -> None:
        await self.client.aclose()
