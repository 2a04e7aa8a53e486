from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

ALL_TOKEN_TYPES = "*"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes coming back from storage as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class User:
    id: str
    email: str
    name: str
    role: str = "user"
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str, name: str, *, role: str = "user") -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            role=role,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class LoginAttempt:
    """One verify-OTP outcome. ``user_id`` is empty for unknown addresses."""

    id: str
    email: str
    ip_address: Optional[str]
    successful: bool
    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LogoutAuditLog:
    id: str
    user_email: str
    logout_type: str
    logout_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    sessions_terminated: int = 0
    success: bool = True
    error_message: Optional[str] = None
    request_id: Optional[str] = None
    logout_time: datetime = field(default_factory=utcnow)


@dataclass
class RevocationEntry:
    """A revoked token id. Dead once ``expires_at`` has passed."""

    jti: str
    user_email: str
    token_type: str
    expires_at: datetime
    reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    recorded_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return as_utc(self.expires_at) < (now or utcnow())


@dataclass
class SubjectRevocation:
    """Cutoff revoking every token of a subject issued at or before ``revoked_before``.

    ``token_type`` is ``"access"``, ``"refresh"`` or :data:`ALL_TOKEN_TYPES`.
    The cutoff is only needed until the longest-lived token it could match
    has expired, which is ``expires_at``.
    """

    user_email: str
    token_type: str
    revoked_before: datetime
    expires_at: datetime
    reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def covers(self, token_type: str, issued_at: datetime) -> bool:
        if self.token_type not in (ALL_TOKEN_TYPES, token_type):
            return False
        return issued_at <= as_utc(self.revoked_before)


@dataclass
class OtpAttempt:
    """Result of the atomic attempt step on a stored OTP.

    ``status`` is ``"missing"`` (no live code), ``"exceeded"`` (cap passed,
    record purged) or ``"ok"`` (``digest`` holds the stored hash).
    """

    status: str
    attempts: int = 0
    digest: Optional[str] = None
