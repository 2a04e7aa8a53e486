from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from otplogin.logging import get_logger, redact_email
from otplogin.service.tokens import TokenLike, TokenService
from otplogin.storage.models import (
    ALL_TOKEN_TYPES,
    RevocationEntry,
    SubjectRevocation,
    as_utc,
    utcnow,
)

logger = get_logger(__name__)


class RevocationStore(Protocol):
    def add_revocation(self, entry: RevocationEntry) -> bool: ...

    def get_revocation(self, jti: str) -> Optional[RevocationEntry]: ...

    def delete_revocation(self, jti: str) -> bool: ...

    def update_revocations_for_subject(
        self,
        user_email: str,
        *,
        reason: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
        now: datetime,
    ) -> int: ...

    def delete_revocations_for_subject_and_type(
        self, user_email: str, token_type: str
    ) -> int: ...

    def delete_expired_revocations(self, now: datetime) -> int: ...

    def upsert_subject_revocation(self, cutoff: SubjectRevocation) -> None: ...

    def list_subject_revocations(self, user_email: str) -> List[SubjectRevocation]: ...

    def delete_expired_subject_revocations(self, now: datetime) -> int: ...


class RevocationRegistry:
    """Durable denylist of token ids, plus per-subject cutoffs.

    Point revocations are stored one row per ``jti``. Bulk revocations touch
    the rows already tracked for the subject and also record a cutoff, so
    tokens that were never individually recorded but were issued before the
    bulk call are rejected too. Rows and cutoffs whose expiry has passed are
    dead; reads delete them lazily and :meth:`sweep_expired` removes the rest.
    Store failures propagate to the caller.
    """

    def __init__(
        self,
        store: RevocationStore,
        tokens: TokenService,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.tokens = tokens
        self._clock = clock

    def revoke(
        self,
        token: TokenLike,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Record ``token`` as revoked. Returns False when its jti was already recorded."""
        claims = self.tokens.parse(token)
        entry = RevocationEntry(
            jti=claims.jti,
            user_email=claims.subject,
            token_type=claims.token_type,
            expires_at=claims.expires_at_dt,
            reason=reason,
            ip_address=ip_address,
            user_agent=user_agent,
            recorded_at=self._clock(),
        )
        created = self.store.add_revocation(entry)
        logger.info(
            "token_revoked" if created else "token_revocation_exists",
            email=redact_email(claims.subject),
            token_type=claims.token_type,
            jti=claims.jti,
            reason=reason,
        )
        return created

    def is_revoked(self, token: TokenLike) -> bool:
        claims = self.tokens.parse(token)
        now = self._clock()
        entry = self.store.get_revocation(claims.jti)
        if entry is not None:
            if not entry.is_expired(now):
                return True
            self.store.delete_revocation(claims.jti)
            logger.debug("revocation_entry_expired", jti=claims.jti)
        issued_at = claims.issued_at_dt
        for cutoff in self.store.list_subject_revocations(claims.subject):
            if as_utc(cutoff.expires_at) >= now and cutoff.covers(claims.token_type, issued_at):
                return True
        return False

    def _record_cutoff(
        self,
        email: str,
        token_type: str,
        reason: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        now = self._clock()
        longest = (
            self.tokens.refresh_ttl_seconds
            if token_type in (ALL_TOKEN_TYPES, "refresh")
            else self.tokens.access_ttl_seconds
        )
        self.store.upsert_subject_revocation(
            SubjectRevocation(
                user_email=email,
                token_type=token_type,
                revoked_before=now,
                expires_at=now + timedelta(seconds=longest),
                reason=reason,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )

    def revoke_all_for_subject(
        self,
        email: str,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Revoke every token issued to ``email`` so far.

        Returns how many tracked entries were re-stamped with the new metadata.
        """
        updated = self.store.update_revocations_for_subject(
            email,
            reason=reason,
            ip_address=ip_address,
            user_agent=user_agent,
            now=self._clock(),
        )
        self._record_cutoff(email, ALL_TOKEN_TYPES, reason, ip_address, user_agent)
        logger.info(
            "subject_tokens_revoked",
            email=redact_email(email),
            tracked_entries=updated,
            reason=reason,
        )
        return updated

    def revoke_all_for_subject_and_type(
        self,
        email: str,
        token_type: str,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Invalidate ``email``'s tokens of one type, leaving the other type alone.

        Tracked entries of that type are deleted (the cutoff supersedes them);
        returns the number deleted.
        """
        self.tokens.ttl_for(token_type)  # rejects unknown types
        self._record_cutoff(email, token_type, reason, ip_address, user_agent)
        deleted = self.store.delete_revocations_for_subject_and_type(email, token_type)
        logger.info(
            "subject_tokens_revoked_by_type",
            email=redact_email(email),
            token_type=token_type,
            deleted_entries=deleted,
            reason=reason,
        )
        return deleted

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Delete dead entries and cutoffs. Safe to run concurrently or repeatedly."""
        now = now or self._clock()
        deleted = self.store.delete_expired_revocations(now)
        cutoffs = self.store.delete_expired_subject_revocations(now)
        logger.info(
            "revocation_sweep_completed", deleted_entries=deleted, deleted_cutoffs=cutoffs
        )
        return deleted + cutoffs
