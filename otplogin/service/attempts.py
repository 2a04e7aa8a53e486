from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from otplogin.config import Settings
from otplogin.logging import get_logger
from otplogin.storage.models import utcnow

logger = get_logger(__name__)

SCOPE_ACCOUNT = "account"
SCOPE_IP = "ip"


class LoginHistoryReader(Protocol):
    def count_failed_logins(
        self,
        *,
        since: datetime,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int:
        ...


class AttemptTracker:
    """Sliding-window lockout derived from recorded verification failures.

    Two subject spaces are counted independently: user accounts (by user id)
    and source IPs. Unlike the token buckets this only reacts to failed
    outcomes, not request volume.
    """

    def __init__(
        self,
        history: LoginHistoryReader,
        *,
        account_max_failures: int = 5,
        account_window_minutes: int = 15,
        ip_max_failures: int = 10,
        ip_window_minutes: int = 15,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.history = history
        self.account_max_failures = account_max_failures
        self.account_window_minutes = account_window_minutes
        self.ip_max_failures = ip_max_failures
        self.ip_window_minutes = ip_window_minutes
        self._clock = clock

    @classmethod
    def from_settings(cls, history: LoginHistoryReader, settings: Settings) -> "AttemptTracker":
        return cls(
            history,
            account_max_failures=settings.account_lockout_max_failures,
            account_window_minutes=settings.account_lockout_window_minutes,
            ip_max_failures=settings.ip_lockout_max_failures,
            ip_window_minutes=settings.ip_lockout_window_minutes,
        )

    def count_failures_since(
        self, subject: str, window_minutes: int, *, scope: str = SCOPE_ACCOUNT
    ) -> int:
        since = self._clock() - timedelta(minutes=window_minutes)
        if scope == SCOPE_ACCOUNT:
            return self.history.count_failed_logins(since=since, user_id=subject)
        if scope == SCOPE_IP:
            return self.history.count_failed_logins(since=since, ip_address=subject)
        raise ValueError(f"unknown attempt scope: {scope}")

    def is_locked(
        self,
        subject: str,
        max_attempts: int,
        window_minutes: int,
        *,
        scope: str = SCOPE_ACCOUNT,
    ) -> bool:
        if not subject:
            return False
        failures = self.count_failures_since(subject, window_minutes, scope=scope)
        locked = failures >= max_attempts
        if locked:
            logger.info(
                "attempt_lockout_active",
                scope=scope,
                failures=failures,
                max_attempts=max_attempts,
                window_minutes=window_minutes,
            )
        return locked

    def is_account_locked(self, user_id: str) -> bool:
        return self.is_locked(
            user_id,
            self.account_max_failures,
            self.account_window_minutes,
            scope=SCOPE_ACCOUNT,
        )

    def is_ip_locked(self, ip_address: Optional[str]) -> bool:
        return self.is_locked(
            ip_address or "",
            self.ip_max_failures,
            self.ip_window_minutes,
            scope=SCOPE_IP,
        )
