"""Tests for the revocation registry: point revocations, bulk cutoffs and sweeping."""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from otplogin.service.tokens import ACCESS, REFRESH, TokenService

SECRET = "revocation-test-secret-0123456789abcdef01234"


class Clocks:
    """One timeline shared by the token service (epoch floats) and the registry (datetimes)."""

    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def epoch(self) -> float:
        return self.now.timestamp()

    def dt(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clocks():
    return Clocks()


@pytest.fixture
def tokens(clocks):
    return TokenService(
        SECRET,
        issuer="otplogin",
        audience="otplogin-clients",
        access_ttl_seconds=900,
        refresh_ttl_seconds=7 * 24 * 3600,
        clock=clocks.epoch,
    )


@pytest.fixture
def registry(store, tokens, clocks):
    from otplogin.service.revocation import RevocationRegistry

    return RevocationRegistry(store, tokens, clock=clocks.dt)


class TestPointRevocation:
    def test_revoke_then_is_revoked(self, registry, tokens):
        """A revoked token is reported revoked; others are not."""
        token = tokens.issue("a@example.com", ACCESS)
        other = tokens.issue("a@example.com", ACCESS)
        assert registry.revoke(token, "User logout", "10.0.0.1", "pytest")
        assert registry.is_revoked(token)
        assert not registry.is_revoked(other)

    def test_revoke_is_idempotent(self, registry, tokens, store):
        """Revoking twice keeps one entry and reports the duplicate."""
        token = tokens.issue("a@example.com", ACCESS)
        assert registry.revoke(token, "first")
        assert not registry.revoke(token, "second")
        assert len(store.revocations) == 1
        assert next(iter(store.revocations.values())).reason == "first"

    def test_entry_records_metadata(self, registry, tokens, store):
        """Entries carry subject, type, expiry and request metadata."""
        token = tokens.issue("a@example.com", REFRESH)
        registry.revoke(token, "User logout", "10.0.0.1", "pytest")
        claims = tokens.parse(token)
        entry = store.get_revocation(claims.jti)
        assert entry.user_email == "a@example.com"
        assert entry.token_type == REFRESH
        assert entry.expires_at == claims.expires_at_dt
        assert (entry.ip_address, entry.user_agent) == ("10.0.0.1", "pytest")

    def test_expired_entry_is_lazily_deleted(self, registry, tokens, store, clocks):
        """A lookup past the entry's expiry drops it and reports not revoked."""
        token = tokens.issue("a@example.com", ACCESS)
        registry.revoke(token)
        clocks.advance(seconds=901)
        assert not registry.is_revoked(token)
        assert store.revocations == {}

    def test_store_errors_propagate(self, tokens, clocks):
        """Storage failures are not swallowed."""
        from otplogin.service.revocation import RevocationRegistry
        from otplogin.storage.errors import StorageError

        store = MagicMock()
        store.add_revocation.side_effect = StorageError("db down")
        registry = RevocationRegistry(store, tokens, clock=clocks.dt)
        with pytest.raises(StorageError):
            registry.revoke(tokens.issue("a@example.com", ACCESS))


class TestBulkRevocation:
    def test_revoke_all_covers_untracked_tokens(self, registry, tokens, clocks):
        """Every token issued before the call is revoked, tracked or not."""
        access = tokens.issue("a@example.com", ACCESS)
        refresh = tokens.issue("a@example.com", REFRESH)
        bystander = tokens.issue("b@example.com", ACCESS)
        clocks.advance(seconds=1)

        registry.revoke_all_for_subject("a@example.com", "Logout all devices")

        assert registry.is_revoked(access)
        assert registry.is_revoked(refresh)
        assert not registry.is_revoked(bystander)

    def test_tokens_issued_after_cutoff_are_live(self, registry, tokens, clocks):
        """A fresh login after a bulk revocation is not affected."""
        registry.revoke_all_for_subject("a@example.com", "Logout all devices")
        clocks.advance(seconds=1)
        assert not registry.is_revoked(tokens.issue("a@example.com", ACCESS))

    def test_revoke_all_restamps_tracked_entries(self, registry, tokens, store):
        """Live tracked entries get the bulk call's reason and metadata."""
        first = tokens.issue("a@example.com", ACCESS)
        second = tokens.issue("a@example.com", REFRESH)
        registry.revoke(first, "User logout")
        registry.revoke(second, "User logout")

        updated = registry.revoke_all_for_subject(
            "a@example.com", "Force logout by admin", "10.1.1.1", "Admin System"
        )

        assert updated == 2
        assert {e.reason for e in store.revocations.values()} == {"Force logout by admin"}
        assert {e.user_agent for e in store.revocations.values()} == {"Admin System"}

    def test_revoke_by_type_leaves_other_type(self, registry, tokens, clocks):
        """Invalidating refresh tokens keeps access tokens working."""
        access = tokens.issue("a@example.com", ACCESS)
        refresh = tokens.issue("a@example.com", REFRESH)
        clocks.advance(seconds=1)

        registry.revoke_all_for_subject_and_type("a@example.com", REFRESH, "invalidate")

        assert registry.is_revoked(refresh)
        assert not registry.is_revoked(access)

    def test_revoke_by_type_deletes_tracked_entries(self, registry, tokens, store):
        """Tracked entries of the type are deleted and counted."""
        registry.revoke(tokens.issue("a@example.com", REFRESH))
        registry.revoke(tokens.issue("a@example.com", REFRESH))
        registry.revoke(tokens.issue("a@example.com", ACCESS))

        deleted = registry.revoke_all_for_subject_and_type("a@example.com", REFRESH)

        assert deleted == 2
        assert [e.token_type for e in store.revocations.values()] == [ACCESS]

    def test_revoke_by_unknown_type_rejected(self, registry):
        with pytest.raises(ValueError):
            registry.revoke_all_for_subject_and_type("a@example.com", "session")

    def test_cutoff_outlives_longest_token(self, registry, store, clocks):
        """An all-types cutoff is kept for the refresh lifetime."""
        registry.revoke_all_for_subject("a@example.com")
        (cutoff,) = store.list_subject_revocations("a@example.com")
        assert cutoff.expires_at == clocks.now + timedelta(days=7)

    def test_cutoffs_keep_request_metadata(self, registry, store):
        """Both bulk paths record who asked for the revocation on the cutoff."""
        registry.revoke_all_for_subject("a@example.com", "all", "10.0.0.1", "pytest")
        registry.revoke_all_for_subject_and_type(
            "a@example.com", REFRESH, "refresh only", "10.0.0.2", "curl"
        )
        cutoffs = {c.token_type: c for c in store.list_subject_revocations("a@example.com")}
        assert (cutoffs["*"].ip_address, cutoffs["*"].user_agent) == ("10.0.0.1", "pytest")
        assert (cutoffs[REFRESH].ip_address, cutoffs[REFRESH].user_agent) == ("10.0.0.2", "curl")


class TestSweep:
    def test_sweep_removes_only_dead_rows(self, registry, tokens, store, clocks):
        """Expired entries and cutoffs go; live ones stay."""
        short = tokens.issue("a@example.com", ACCESS)
        long = tokens.issue("a@example.com", REFRESH)
        registry.revoke(short)
        registry.revoke(long)
        registry.revoke_all_for_subject_and_type("b@example.com", ACCESS)

        clocks.advance(hours=1)
        removed = registry.sweep_expired()

        assert removed == 2  # access entry + access cutoff
        assert registry.is_revoked(long)
        assert list(store.revocations) == [tokens.parse(long).jti]

    def test_sweep_is_idempotent(self, registry, tokens, clocks):
        """A second pass finds nothing to delete."""
        registry.revoke(tokens.issue("a@example.com", ACCESS))
        clocks.advance(hours=1)
        assert registry.sweep_expired() == 1
        assert registry.sweep_expired() == 0

    def test_sweep_logs_counts(self, registry):
        with patch("otplogin.service.revocation.logger") as mock_logger:
            registry.sweep_expired()
        call_args = mock_logger.info.call_args
        assert call_args[0][0] == "revocation_sweep_completed"
        assert call_args[1] == {"deleted_entries": 0, "deleted_cutoffs": 0}
