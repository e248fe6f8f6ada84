from __future__ import annotations

import math
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Dict, Optional, Tuple

from tenantgate.storage.models import Clock, utcnow
from tenantgate.storage.redis_cache import RedisCache


class MemoryCache:
    """Process-local stand-in for :class:`RedisCache`.

    Mirrors the sliding-window semantics of the Redis Lua script so tests
    and single-process development runs exercise the same rate-limit rules.
    Counters held here are invisible to other processes; the runtime only
    selects this cache when explicitly configured.
    """

    def __init__(self, *, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._windows: Dict[str, Deque[datetime]] = {}
        self._blocks: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def hit_sliding_window(
        self,
        key: str,
        *,
        limit: int,
        window_seconds: int,
        block_seconds: int = 0,
        tenant_id: Optional[str] = None,
    ) -> Tuple[bool, int, int]:
        safe_key = RedisCache.normalize_rate_key(key, tenant_id)
        now = self._clock()
        window = timedelta(seconds=window_seconds)
        with self._lock:
            hits = self._windows.setdefault(safe_key, deque())
            blocked_until = self._blocks.get(safe_key)
            if blocked_until is not None:
                if blocked_until > now:
                    return (False, len(hits), self._seconds_until(blocked_until, now))
                self._blocks.pop(safe_key, None)

            while hits and hits[0] <= now - window:
                hits.popleft()
            count = len(hits)
            if count >= limit:
                if block_seconds > 0:
                    self._blocks[safe_key] = now + timedelta(seconds=block_seconds)
                    return (False, count, block_seconds)
                return (False, count, self._seconds_until(hits[0] + window, now))

            hits.append(now)
            if block_seconds > 0 and count + 1 >= limit:
                # The block runs from the hit that fills the window
                self._blocks[safe_key] = now + timedelta(seconds=block_seconds)
            return (True, count + 1, 0)

    async def clear_window(self, key: str, *, tenant_id: Optional[str] = None) -> None:
        safe_key = RedisCache.normalize_rate_key(key, tenant_id)
        with self._lock:
            self._windows.pop(safe_key, None)
            self._blocks.pop(safe_key, None)

    @staticmethod
    def _seconds_until(moment: datetime, now: datetime) -> int:
        return max(1, int(math.ceil((moment - now).total_seconds())))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
