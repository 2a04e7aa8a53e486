"""Tests for OTP generation, bounded verification and expiry."""
import asyncio
from datetime import timedelta

import pytest


class FakeClock:
    def __init__(self, start: float = 5_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def otp_store(clock, fast_hasher):
    from otplogin.service.otp import OtpStore
    from otplogin.storage.memory_cache import MemoryCache

    return OtpStore(
        MemoryCache(clock=clock), length=6, ttl_seconds=300, max_attempts=3, hasher=fast_hasher
    )


class TestGenerate:
    async def test_code_shape(self, otp_store):
        """Codes are fixed-length strings of decimal digits."""
        code = await otp_store.generate("a@example.com")
        assert len(code) == 6
        assert code.isdigit()

    async def test_only_digest_is_stored(self, otp_store):
        """The backend never holds the plaintext code."""
        code = await otp_store.generate("a@example.com")
        digest, _ = otp_store.backend._otps["a@example.com"]
        assert code not in digest
        assert digest.startswith("$argon2id$")

    async def test_regenerate_replaces_previous_code(self, otp_store):
        """Only the latest code for an address is live."""
        first = await otp_store.generate("a@example.com")
        second = await otp_store.generate("a@example.com")
        if first == second:
            pytest.skip("random codes collided")
        assert not await otp_store.verify("a@example.com", first)
        assert await otp_store.verify("a@example.com", second)

    async def test_email_is_normalized(self, otp_store):
        """Keys are case-insensitive and trimmed."""
        code = await otp_store.generate("  Alice@Example.COM ")
        assert await otp_store.verify("alice@example.com", code)

    async def test_remaining_ttl(self, otp_store, clock):
        """remaining_ttl reports time left on the live code, zero after expiry."""
        await otp_store.generate("a@example.com")
        clock.advance(100)
        assert await otp_store.remaining_ttl("a@example.com") == timedelta(seconds=200)
        clock.advance(300)
        assert await otp_store.remaining_ttl("a@example.com") == timedelta(0)


class TestVerify:
    async def test_correct_code_is_single_use(self, otp_store):
        """A correct code verifies once and is then gone."""
        code = await otp_store.generate("a@example.com")
        assert await otp_store.verify("a@example.com", code)
        assert not await otp_store.verify("a@example.com", code)

    async def test_missing_record_fails_closed(self, otp_store):
        """Verification without a live record is false."""
        assert not await otp_store.verify("nobody@example.com", "123456")

    async def test_expired_code_fails(self, otp_store, clock):
        """A code past its TTL no longer verifies."""
        code = await otp_store.generate("a@example.com")
        clock.advance(301)
        assert not await otp_store.verify("a@example.com", code)

    async def test_attempt_cap_purges_record(self, otp_store):
        """After max+1 wrong guesses even the right code is rejected."""
        code = await otp_store.generate("a@example.com")
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(4):
            assert not await otp_store.verify("a@example.com", wrong)
        assert not await otp_store.verify("a@example.com", code)
        assert "a@example.com" not in otp_store.backend._otps

    async def test_correct_code_within_cap_succeeds(self, otp_store):
        """Up to max wrong guesses leave the code usable."""
        code = await otp_store.generate("a@example.com")
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(2):
            assert not await otp_store.verify("a@example.com", wrong)
        assert await otp_store.verify("a@example.com", code)
        assert await otp_store.attempts("a@example.com") == (0, 0)

    async def test_is_rate_limited_after_max_failures(self, otp_store):
        """The counter reaching the maximum short-circuits further requests."""
        code = await otp_store.generate("a@example.com")
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(2):
            await otp_store.verify("a@example.com", wrong)
        assert not await otp_store.is_rate_limited("a@example.com")
        await otp_store.verify("a@example.com", wrong)
        assert await otp_store.is_rate_limited("a@example.com")

    async def test_concurrent_correct_verifies_accept_once(self, otp_store):
        """Two simultaneous verifications of the right code cannot both succeed."""
        code = await otp_store.generate("a@example.com")
        results = await asyncio.gather(
            otp_store.verify("a@example.com", code),
            otp_store.verify("a@example.com", code),
        )
        assert sorted(results) == [False, True]

    async def test_clear_removes_code_and_counter(self, otp_store):
        """clear wipes both the record and the attempt counter."""
        code = await otp_store.generate("a@example.com")
        await otp_store.verify("a@example.com", "999999" if code != "999999" else "888888")
        await otp_store.clear("a@example.com")
        assert await otp_store.attempts("a@example.com") == (0, 0)
        assert not await otp_store.verify("a@example.com", code)

    async def test_invalid_length_rejected(self, fast_hasher):
        """A non-positive code length is a configuration error."""
        from otplogin.service.otp import OtpStore
        from otplogin.storage.memory_cache import MemoryCache

        with pytest.raises(ValueError):
            OtpStore(MemoryCache(), length=0, hasher=fast_hasher)
