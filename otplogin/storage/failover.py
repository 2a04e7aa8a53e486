from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional, Tuple, Union

from redis.exceptions import RedisError

from otplogin.logging import get_logger
from otplogin.storage.memory_cache import MemoryCache
from otplogin.storage.models import OtpAttempt
from otplogin.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

PrimaryCache = Union[RedisCache, SyncRedisCache]


class FailoverCache:
    """Route cache operations to Redis while it is healthy, otherwise to memory.

    Backend choice happens once per operation in :meth:`_call`. A Redis error
    marks the primary unhealthy and the same operation is replayed against the
    in-process fallback; the primary is probed again after ``probe_interval``
    seconds. The two backends are never reconciled, so a key written to the
    fallback lives there until it expires or is cleared.
    """

    def __init__(
        self,
        primary: Optional[PrimaryCache],
        fallback: MemoryCache,
        *,
        probe_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.primary = primary
        self.fallback = fallback
        self.probe_interval = probe_interval
        self._clock = clock
        self._healthy = primary is not None
        self._next_probe = 0.0
        self._probe_lock = asyncio.Lock()

    @property
    def using_fallback(self) -> bool:
        return not self._healthy

    @property
    def backend_name(self) -> str:
        return "redis" if self._healthy else "memory"

    async def _select(self) -> Any:
        if self.primary is None:
            return self.fallback
        if self._healthy:
            return self.primary
        if self._clock() < self._next_probe:
            return self.fallback
        async with self._probe_lock:
            if not self._healthy and self._clock() >= self._next_probe:
                try:
                    await asyncio.to_thread(self.primary.verify_connection)
                except (RedisError, OSError) as exc:
                    self._next_probe = self._clock() + self.probe_interval
                    logger.warning("cache_primary_probe_failed", error=str(exc))
                else:
                    self._healthy = True
                    logger.info("cache_primary_recovered")
        return self.primary if self._healthy else self.fallback

    def _mark_unhealthy(self, operation: str, exc: Exception) -> None:
        if self._healthy:
            logger.warning(
                "cache_primary_unhealthy",
                operation=operation,
                error=str(exc),
                retry_in_seconds=self.probe_interval,
            )
        self._healthy = False
        self._next_probe = self._clock() + self.probe_interval

    async def _call(self, operation: str, *args: Any, **kwargs: Any) -> Any:
        backend = await self._select()
        if backend is self.fallback:
            return await getattr(self.fallback, operation)(*args, **kwargs)
        try:
            return await getattr(backend, operation)(*args, **kwargs)
        except RedisError as exc:
            self._mark_unhealthy(operation, exc)
            return await getattr(self.fallback, operation)(*args, **kwargs)

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        return await self._call(
            "check_rate_limit", key, limit, window_seconds, cost=cost
        )

    async def store_otp(self, email: str, digest: str, ttl_seconds: int) -> None:
        # a code left in the fallback by an earlier outage must not outlive its replacement
        await self.fallback.clear_otp(email)
        await self._call("store_otp", email, digest, ttl_seconds)

    async def begin_otp_attempt(
        self, email: str, max_attempts: int, ttl_seconds: int
    ) -> OtpAttempt:
        return await self._call("begin_otp_attempt", email, max_attempts, ttl_seconds)

    async def consume_otp(self, email: str, digest: str) -> bool:
        return await self._call("consume_otp", email, digest)

    async def clear_otp(self, email: str) -> None:
        await self._call("clear_otp", email)
        await self.fallback.clear_otp(email)

    async def otp_attempts(self, email: str) -> Tuple[int, int]:
        return await self._call("otp_attempts", email)

    async def otp_ttl(self, email: str) -> int:
        return await self._call("otp_ttl", email)

    def prune_expired(self) -> int:
        return self.fallback.prune_expired()

    async def close(self) -> None:
        if self.primary is not None:
            await self.primary.close()
        await self.fallback.close()
