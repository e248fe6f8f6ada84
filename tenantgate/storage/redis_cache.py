from __future__ import annotations

import hashlib
import math
import time
import uuid
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from tenantgate.logging import get_logger
from tenantgate.storage.errors import BackendUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Shared Redis cache holding rate-limit windows and temporary blocks."""

    DEFAULT_OPERATION_TIMEOUT = 3.0

    # Sliding window with optional block, evaluated atomically so concurrent
    # instances cannot both slip under the threshold. The block starts with
    # the hit that fills the window.
    _SLIDING_WINDOW_SCRIPT = """
local window_key = KEYS[1]
local block_key = KEYS[2]
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local block_ms = tonumber(ARGV[4])
local member = ARGV[5]

local block_ttl = redis.call('PTTL', block_key)
if block_ttl > 0 then
  return {0, redis.call('ZCARD', window_key), block_ttl}
end

redis.call('ZREMRANGEBYSCORE', window_key, '-inf', now_ms - window_ms)
local count = redis.call('ZCARD', window_key)
if count >= limit then
  if block_ms > 0 then
    redis.call('SET', block_key, '1', 'PX', block_ms)
    return {0, count, block_ms}
  end
  local oldest = redis.call('ZRANGE', window_key, 0, 0, 'WITHSCORES')
  local retry_ms = window_ms
  if oldest[2] then
    retry_ms = tonumber(oldest[2]) + window_ms - now_ms
  end
  return {0, count, math.max(retry_ms, 1)}
end

redis.call('ZADD', window_key, now_ms, member)
redis.call('PEXPIRE', window_key, window_ms)
if block_ms > 0 and count + 1 >= limit then
  redis.call('SET', block_key, '1', 'PX', block_ms)
end
return {1, count + 1, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def normalize_rate_key(key: str, tenant_id: Optional[str] = None) -> str:
        """Generate collision-resistant rate keys.

        Components are hashed to avoid delimiter injection and to keep raw
        emails and phone numbers out of the cache keyspace.
        """

        digest = hashlib.sha256(key.encode()).hexdigest()
        tenant_prefix = f"{tenant_id}:" if tenant_id else ""
        return f"rate:{tenant_prefix}{digest}"

    async def hit_sliding_window(
        self,
        key: str,
        *,
        limit: int,
        window_seconds: int,
        block_seconds: int = 0,
        tenant_id: Optional[str] = None,
    ) -> Tuple[bool, int, int]:
        """Record one event in a rolling window.

        Returns ``(allowed, count, retry_after_seconds)``. A refused event is
        not added to the window, so callers hammering a blocked key do not
        extend their own penalty.
        """

        safe_key = self.normalize_rate_key(key, tenant_id)
        now_ms = int(time.time() * 1000)
        try:
            allowed, count, retry_ms = await self._sliding_window(
                keys=[safe_key, f"{safe_key}:block"],
                args=[
                    now_ms,
                    int(window_seconds * 1000),
                    limit,
                    int(block_seconds * 1000),
                    f"{now_ms}:{uuid.uuid4().hex}",
                ],
            )
        except RedisError as exc:
            logger.error("rate_window_unavailable", error_type=type(exc).__name__)
            raise BackendUnavailable("redis", "rate limit store unavailable") from exc
        return bool(int(allowed)), int(count), int(math.ceil(int(retry_ms) / 1000))

    async def clear_window(self, key: str, *, tenant_id: Optional[str] = None) -> None:
        safe_key = self.normalize_rate_key(key, tenant_id)
        try:
            await self.client.delete(safe_key, f"{safe_key}:block")
        except RedisError as exc:
            logger.error("rate_window_clear_failed", error_type=type(exc).__name__)
            raise BackendUnavailable("redis", "rate limit store unavailable") from exc

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as exc:
            raise BackendUnavailable("redis", "cache unavailable") from exc

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
