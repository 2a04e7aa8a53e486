from __future__ import annotations

import hashlib
import time
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis

from otplogin.storage.models import OtpAttempt

# Atomic refill + consume; returns {allowed, tokens, reset_after}
_TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tostring(tokens), reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tostring(tokens), 0}
"""

# KEYS: code, attempts. ARGV: max_attempts, ttl_seconds.
# The counter window starts with the first attempt; passing the cap purges both keys.
_OTP_ATTEMPT_SCRIPT = """
local digest = redis.call('GET', KEYS[1])
if not digest then
  return {'missing', 0, ''}
end
local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[2], tonumber(ARGV[2]))
end
if attempts > tonumber(ARGV[1]) then
  redis.call('DEL', KEYS[1], KEYS[2])
  return {'exceeded', attempts, ''}
end
return {'ok', attempts, digest}
"""

# Compare-and-delete so two concurrent verifications cannot both consume one code
_OTP_CONSUME_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  redis.call('DEL', KEYS[1], KEYS[2])
  return 1
end
return 0
"""


def _normalize_rate_key(key: str) -> str:
    """Hash rate-limit subjects so addresses and IPs cannot collide on delimiters."""

    digest = hashlib.sha256(key.encode()).hexdigest()
    return f"rate:{digest}"


def _otp_keys(email: str) -> Tuple[str, str]:
    digest = hashlib.sha256(email.encode()).hexdigest()
    return f"otp:code:{digest}", f"otp:attempts:{digest}"


def _bucket_result(raw) -> Tuple[bool, int, int]:
    allowed, tokens, reset_after = raw
    return bool(int(allowed)), max(0, int(float(tokens))), int(reset_after or 0)


def _attempt_result(raw) -> OtpAttempt:
    status, attempts, digest = raw
    return OtpAttempt(status=str(status), attempts=int(attempts), digest=digest or None)


class RedisCache:
    """Redis-backed shared state: rate buckets and OTP records."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)
        self._otp_attempt = self.client.register_script(_OTP_ATTEMPT_SCRIPT)
        self._otp_consume = self.client.register_script(_OTP_CONSUME_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client, so the async pool is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Token bucket check returning ``(allowed, remaining, reset_seconds)``."""

        refill_rate = float(limit) / float(window_seconds)
        raw = await self._token_bucket(
            keys=[_normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _bucket_result(raw)

    async def store_otp(self, email: str, digest: str, ttl_seconds: int) -> None:
        code_key, _ = _otp_keys(email)
        await self.client.set(code_key, digest, ex=max(1, ttl_seconds))

    async def begin_otp_attempt(
        self, email: str, max_attempts: int, ttl_seconds: int
    ) -> OtpAttempt:
        raw = await self._otp_attempt(
            keys=list(_otp_keys(email)), args=[max_attempts, max(1, ttl_seconds)]
        )
        return _attempt_result(raw)

    async def consume_otp(self, email: str, digest: str) -> bool:
        return bool(await self._otp_consume(keys=list(_otp_keys(email)), args=[digest]))

    async def clear_otp(self, email: str) -> None:
        await self.client.delete(*_otp_keys(email))

    async def otp_attempts(self, email: str) -> Tuple[int, int]:
        """Return ``(attempts, seconds until the counter resets)``."""
        _, attempts_key = _otp_keys(email)
        pipe = self.client.pipeline()
        pipe.get(attempts_key)
        pipe.ttl(attempts_key)
        count, ttl = await pipe.execute()
        return int(count or 0), max(0, int(ttl or 0))

    async def otp_ttl(self, email: str) -> int:
        code_key, _ = _otp_keys(email)
        return max(0, int(await self.client.ttl(code_key)))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Redis wrapper on a synchronous client, for test mode.

    Avoids binding a connection pool to pytest's short-lived event loops while
    exposing the same awaitable surface as :class:`RedisCache`.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(_TOKEN_BUCKET_SCRIPT)
        self._otp_attempt = self._sync_client.register_script(_OTP_ATTEMPT_SCRIPT)
        self._otp_consume = self._sync_client.register_script(_OTP_CONSUME_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        refill_rate = float(limit) / float(window_seconds)
        raw = self._token_bucket(
            keys=[_normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _bucket_result(raw)

    async def store_otp(self, email: str, digest: str, ttl_seconds: int) -> None:
        code_key, _ = _otp_keys(email)
        self._sync_client.set(code_key, digest, ex=max(1, ttl_seconds))

    async def begin_otp_attempt(
        self, email: str, max_attempts: int, ttl_seconds: int
    ) -> OtpAttempt:
        raw = self._otp_attempt(
            keys=list(_otp_keys(email)), args=[max_attempts, max(1, ttl_seconds)]
        )
        return _attempt_result(raw)

    async def consume_otp(self, email: str, digest: str) -> bool:
        return bool(self._otp_consume(keys=list(_otp_keys(email)), args=[digest]))

    async def clear_otp(self, email: str) -> None:
        self._sync_client.delete(*_otp_keys(email))

    async def otp_attempts(self, email: str) -> Tuple[int, int]:
        _, attempts_key = _otp_keys(email)
        pipe = self._sync_client.pipeline()
        pipe.get(attempts_key)
        pipe.ttl(attempts_key)
        count, ttl = pipe.execute()
        return int(count or 0), max(0, int(ttl or 0))

    async def otp_ttl(self, email: str) -> int:
        code_key, _ = _otp_keys(email)
        return max(0, int(self._sync_client.ttl(code_key)))

    async def close(self) -> None:
        self._sync_client.close()
