from __future__ import annotations

import math
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from otplogin.storage.models import OtpAttempt

_DEFAULT_STRIPES = 64


class _StripedLocks:
    """Fixed pool of locks picked by key hash.

    Operations on different keys rarely contend, and no lock ever spans the
    whole map.
    """

    def __init__(self, stripes: int = _DEFAULT_STRIPES):
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(stripes)]

    def for_key(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]


class MemoryCache:
    """In-process stand-in for :class:`RedisCache`.

    Each record carries its own expiry timestamp, checked whenever the key is
    read; nothing runs in the background. Buckets idle long enough to be full
    again can be dropped with :meth:`prune_expired`.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        stripes: int = _DEFAULT_STRIPES,
    ):
        self._clock = clock
        self._locks = _StripedLocks(stripes)
        # key -> (tokens, last_refill, idle_expiry)
        self._buckets: Dict[str, Tuple[float, float, float]] = {}
        # email -> (digest, expires_at)
        self._otps: Dict[str, Tuple[str, float]] = {}
        # email -> (count, expires_at)
        self._attempts: Dict[str, Tuple[int, float]] = {}

    def verify_connection(self) -> None:
        return None

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        cost = max(1, cost)
        refill_rate = float(limit) / float(window_seconds)
        bucket_key = f"rate:{key}"
        with self._locks.for_key(bucket_key):
            now = self._clock()
            state = self._buckets.get(bucket_key)
            if state is None:
                tokens, last = float(limit), now
            else:
                tokens, last, _ = state
            tokens = min(float(limit), tokens + max(0.0, now - last) * refill_rate)
            if tokens < cost:
                reset_after = math.ceil((cost - tokens) / refill_rate)
                self._buckets[bucket_key] = (tokens, now, now + max(reset_after, 1))
                return False, max(0, int(tokens)), reset_after
            tokens -= cost
            idle = math.ceil(limit / refill_rate)
            self._buckets[bucket_key] = (tokens, now, now + max(idle, 1))
            return True, max(0, int(tokens)), 0

    async def store_otp(self, email: str, digest: str, ttl_seconds: int) -> None:
        with self._locks.for_key(email):
            self._otps[email] = (digest, self._clock() + max(1, ttl_seconds))

    async def begin_otp_attempt(
        self, email: str, max_attempts: int, ttl_seconds: int
    ) -> OtpAttempt:
        with self._locks.for_key(email):
            now = self._clock()
            record = self._live_otp(email, now)
            if record is None:
                return OtpAttempt(status="missing")
            count, expires_at = self._live_attempts(email, now)
            if count == 0:
                expires_at = now + max(1, ttl_seconds)
            count += 1
            if count > max_attempts:
                self._otps.pop(email, None)
                self._attempts.pop(email, None)
                return OtpAttempt(status="exceeded", attempts=count)
            self._attempts[email] = (count, expires_at)
            return OtpAttempt(status="ok", attempts=count, digest=record)

    async def consume_otp(self, email: str, digest: str) -> bool:
        with self._locks.for_key(email):
            if self._live_otp(email, self._clock()) != digest:
                return False
            self._otps.pop(email, None)
            self._attempts.pop(email, None)
            return True

    async def clear_otp(self, email: str) -> None:
        with self._locks.for_key(email):
            self._otps.pop(email, None)
            self._attempts.pop(email, None)

    async def otp_attempts(self, email: str) -> Tuple[int, int]:
        with self._locks.for_key(email):
            now = self._clock()
            count, expires_at = self._live_attempts(email, now)
            if count == 0:
                return 0, 0
            return count, max(0, math.ceil(expires_at - now))

    async def otp_ttl(self, email: str) -> int:
        with self._locks.for_key(email):
            now = self._clock()
            if self._live_otp(email, now) is None:
                return 0
            return max(0, math.ceil(self._otps[email][1] - now))

    def prune_expired(self) -> int:
        """Drop dead OTP records, counters and idle buckets. Returns the count."""
        removed = 0
        now = self._clock()
        for store in (self._buckets, self._otps, self._attempts):
            for key in list(store.keys()):
                with self._locks.for_key(key):
                    entry = store.get(key)
                    if entry is not None and entry[-1] <= now:
                        del store[key]
                        removed += 1
        return removed

    async def close(self) -> None:
        return None

    def _live_otp(self, email: str, now: float) -> Optional[str]:
        record = self._otps.get(email)
        if record is None:
            return None
        digest, expires_at = record
        if expires_at <= now:
            self._otps.pop(email, None)
            return None
        return digest

    def _live_attempts(self, email: str, now: float) -> Tuple[int, float]:
        record = self._attempts.get(email)
        if record is None:
            return 0, 0.0
        count, expires_at = record
        if expires_at <= now:
            self._attempts.pop(email, None)
            return 0, 0.0
        return count, expires_at
