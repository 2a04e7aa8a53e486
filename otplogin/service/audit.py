from __future__ import annotations

import uuid
from typing import Optional, Protocol

from otplogin.logging import get_correlation_id, get_logger, redact_email
from otplogin.storage.models import LoginAttempt, LogoutAuditLog, User

logger = get_logger(__name__)

LOGOUT_SINGLE = "SINGLE"
LOGOUT_ALL_DEVICES = "ALL_DEVICES"
LOGOUT_REFRESH_INVALIDATION = "REFRESH_INVALIDATION"
LOGOUT_FORCED = "FORCED"


class AuditStore(Protocol):
    def record_login_attempt(self, attempt: LoginAttempt) -> None: ...

    def record_logout(self, entry: LogoutAuditLog) -> None: ...


class AuditService:
    """Append-only writer for login history and logout audit records."""

    def __init__(self, store: AuditStore):
        self.store = store

    def record_login(
        self,
        email: str,
        *,
        user: Optional[User],
        ip_address: Optional[str],
        user_agent: Optional[str],
        successful: bool,
        failure_reason: Optional[str] = None,
    ) -> LoginAttempt:
        attempt = LoginAttempt(
            id=str(uuid.uuid4()),
            email=email,
            user_id=user.id if user else None,
            ip_address=ip_address,
            user_agent=user_agent,
            successful=successful,
            failure_reason=failure_reason,
        )
        self.store.record_login_attempt(attempt)
        logger.info(
            "login_attempt_recorded",
            email=redact_email(email),
            successful=successful,
            failure_reason=failure_reason,
        )
        return attempt

    def record_logout(
        self,
        user_email: str,
        logout_type: str,
        *,
        reason: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
        sessions_terminated: int = 0,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> LogoutAuditLog:
        entry = LogoutAuditLog(
            id=str(uuid.uuid4()),
            user_email=user_email,
            logout_type=logout_type,
            logout_reason=reason,
            ip_address=ip_address,
            user_agent=user_agent,
            sessions_terminated=sessions_terminated,
            success=success,
            error_message=error_message,
            request_id=get_correlation_id(),
        )
        self.store.record_logout(entry)
        logger.info(
            "logout_recorded",
            email=redact_email(user_email),
            logout_type=logout_type,
            sessions_terminated=sessions_terminated,
            success=success,
        )
        return entry
