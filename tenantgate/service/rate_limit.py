from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.errors import ServiceUnavailableError
from tenantgate.storage.errors import BackendUnavailable

logger = get_logger(__name__)


class CounterCache(Protocol):
    async def hit_sliding_window(
        self,
        key: str,
        *,
        limit: int,
        window_seconds: int,
        block_seconds: int = 0,
        tenant_id: Optional[str] = None,
    ) -> Tuple[bool, int, int]: ...

    async def clear_window(self, key: str, *, tenant_id: Optional[str] = None) -> None: ...


@dataclass(frozen=True)
class RateLimitPolicy:
    """Threshold per rolling window, optionally followed by a fixed block."""

    name: str
    threshold: int
    window_seconds: int
    block_seconds: int = 0

    @classmethod
    def login(cls, settings: Settings) -> "RateLimitPolicy":
        return cls(
            name="login",
            threshold=settings.login_max_attempts,
            window_seconds=settings.login_window_seconds,
            block_seconds=settings.login_block_seconds,
        )

    @classmethod
    def otp_issue(cls, settings: Settings) -> "RateLimitPolicy":
        return cls(
            name="otp_issue",
            threshold=settings.otp_rate_limit_per_hour,
            window_seconds=3600,
        )


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    retry_after: int = 0

    @property
    def blocked(self) -> bool:
        return not self.allowed


class RateLimiter:
    """Sliding-window limiter over the shared counter cache.

    A cache outage raises :class:`ServiceUnavailableError`; it is never read
    as "not rate limited".
    """

    def __init__(self, cache: CounterCache) -> None:
        self.cache = cache

    @staticmethod
    def _key(identifier: str, policy: RateLimitPolicy) -> str:
        return f"{policy.name}:{identifier.strip().lower()}"

    async def check_and_increment(
        self,
        identifier: str,
        policy: RateLimitPolicy,
        *,
        tenant_id: Optional[str] = None,
    ) -> RateLimitDecision:
        try:
            allowed, count, retry_after = await self.cache.hit_sliding_window(
                self._key(identifier, policy),
                limit=policy.threshold,
                window_seconds=policy.window_seconds,
                block_seconds=policy.block_seconds,
                tenant_id=tenant_id,
            )
        except BackendUnavailable as exc:
            logger.error("rate_limit_backend_unavailable", policy=policy.name, backend=exc.backend)
            raise ServiceUnavailableError("rate limiter unavailable") from exc
        decision = RateLimitDecision(allowed=allowed, count=count, retry_after=retry_after)
        if decision.blocked:
            logger.warning(
                "rate_limit_blocked",
                policy=policy.name,
                count=count,
                retry_after=retry_after,
            )
        return decision

    async def reset(
        self,
        identifier: str,
        policy: RateLimitPolicy,
        *,
        tenant_id: Optional[str] = None,
    ) -> None:
        try:
            await self.cache.clear_window(self._key(identifier, policy), tenant_id=tenant_id)
        except BackendUnavailable as exc:
            logger.error("rate_limit_backend_unavailable", policy=policy.name, backend=exc.backend)
            raise ServiceUnavailableError("rate limiter unavailable") from exc
