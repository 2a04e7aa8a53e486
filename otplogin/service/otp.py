from __future__ import annotations

import asyncio
import secrets
import string
from datetime import timedelta
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from otplogin.config import Settings
from otplogin.logging import get_logger, redact_email
from otplogin.storage.models import OtpAttempt

logger = get_logger(__name__)


class OtpBackend(Protocol):
    async def store_otp(self, email: str, digest: str, ttl_seconds: int) -> None: ...

    async def begin_otp_attempt(
        self, email: str, max_attempts: int, ttl_seconds: int
    ) -> OtpAttempt: ...

    async def consume_otp(self, email: str, digest: str) -> bool: ...

    async def clear_otp(self, email: str) -> None: ...

    async def otp_attempts(self, email: str) -> Tuple[int, int]: ...

    async def otp_ttl(self, email: str) -> int: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


class OtpStore:
    """Issue and check single-use numeric codes.

    Only an argon2id digest of each code is stored, keyed by address with a
    TTL. Every verification increments a per-address counter that shares the
    code's window; once the counter passes ``max_attempts`` the code and the
    counter are purged and verification fails whatever was submitted.
    """

    def __init__(
        self,
        backend: OtpBackend,
        *,
        length: int = 6,
        ttl_seconds: int = 300,
        max_attempts: int = 3,
        hasher: Optional[PasswordHasher] = None,
    ):
        if length <= 0:
            raise ValueError("OTP length must be positive")
        self.backend = backend
        self.length = length
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    @classmethod
    def from_settings(
        cls, backend: OtpBackend, settings: Settings, *, hasher: Optional[PasswordHasher] = None
    ) -> "OtpStore":
        return cls(
            backend,
            length=settings.otp_length,
            ttl_seconds=settings.otp_ttl_seconds,
            max_attempts=settings.otp_max_attempts,
            hasher=hasher,
        )

    def _new_code(self) -> str:
        return "".join(secrets.choice(string.digits) for _ in range(self.length))

    async def generate(self, email: str) -> str:
        """Create a code for ``email``, replacing any live one, and return the plaintext."""
        key = normalize_email(email)
        code = self._new_code()
        digest = await asyncio.to_thread(self._hasher.hash, code)
        await self.backend.store_otp(key, digest, self.ttl_seconds)
        logger.info("otp_generated", email=redact_email(key), ttl_seconds=self.ttl_seconds)
        return code

    async def verify(self, email: str, candidate: str) -> bool:
        key = normalize_email(email)
        attempt = await self.backend.begin_otp_attempt(
            key, self.max_attempts, self.ttl_seconds
        )
        if attempt.status == "missing":
            logger.info("otp_verify_missing", email=redact_email(key))
            return False
        if attempt.status == "exceeded":
            logger.warning(
                "otp_attempts_exceeded",
                email=redact_email(key),
                attempts=attempt.attempts,
                max_attempts=self.max_attempts,
            )
            return False
        if not candidate or attempt.digest is None:
            return False
        try:
            await asyncio.to_thread(self._hasher.verify, attempt.digest, candidate)
        except (VerificationError, InvalidHash):
            logger.info(
                "otp_verify_mismatch", email=redact_email(key), attempts=attempt.attempts
            )
            return False
        # Compare-and-delete: a concurrent verify may already have used this code
        if not await self.backend.consume_otp(key, attempt.digest):
            logger.info("otp_verify_raced", email=redact_email(key))
            return False
        logger.info("otp_verified", email=redact_email(key))
        return True

    async def attempts(self, email: str) -> Tuple[int, int]:
        """``(failed attempts, seconds until the counter resets)``."""
        return await self.backend.otp_attempts(normalize_email(email))

    async def is_rate_limited(self, email: str) -> bool:
        count, _ = await self.attempts(email)
        return count >= self.max_attempts

    async def remaining_ttl(self, email: str) -> timedelta:
        seconds = await self.backend.otp_ttl(normalize_email(email))
        return timedelta(seconds=seconds)

    async def clear(self, email: str) -> None:
        key = normalize_email(email)
        await self.backend.clear_otp(key)
        logger.info("otp_cleared", email=redact_email(key))
