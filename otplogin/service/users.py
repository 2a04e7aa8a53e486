from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from otplogin.logging import get_logger, redact_email
from otplogin.service.attempts import SCOPE_ACCOUNT, AttemptTracker
from otplogin.service.email import EmailDispatcher
from otplogin.service.errors import ConflictError, NotFoundError
from otplogin.service.otp import normalize_email
from otplogin.storage.errors import ConstraintViolation
from otplogin.storage.models import User

logger = get_logger(__name__)


class UserStore(Protocol):
    def create_user(
        self, email: str, name: str, *, role: str = "user", is_active: bool = True
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def update_user_name(self, user_id: str, name: str) -> Optional[User]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...


@dataclass(frozen=True)
class UserStats:
    email: str
    account_status: str
    failed_attempts_last_24_hours: int
    failed_attempts_last_hour: int
    member_since: datetime


class UserService:
    def __init__(
        self,
        store: UserStore,
        attempts: AttemptTracker,
        mailer: Optional[EmailDispatcher] = None,
    ):
        self.store = store
        self.attempts = attempts
        self.mailer = mailer

    def find_by_email(self, email: str) -> Optional[User]:
        return self.store.get_user_by_email(normalize_email(email))

    def signup(self, email: str, name: str) -> User:
        email = normalize_email(email)
        try:
            user = self.store.create_user(email, name.strip())
        except ConstraintViolation:
            raise ConflictError(
                "User with this email already exists", detail={"field": "email"}
            )
        logger.info("user_signed_up", email=redact_email(email), user_id=user.id)
        if self.mailer is not None:
            self.mailer.send_welcome(user.email, user.name)
        return user

    def _require(self, user_id: str, updated: Optional[User]) -> User:
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return updated

    def update_profile(self, user: User, name: str) -> User:
        updated = self._require(user.id, self.store.update_user_name(user.id, name.strip()))
        logger.info("user_profile_updated", user_id=user.id)
        return updated

    def deactivate(self, user: User) -> User:
        updated = self._require(user.id, self.store.set_user_active(user.id, False))
        logger.info("user_deactivated", user_id=user.id)
        return updated

    def stats(self, user: User) -> UserStats:
        return UserStats(
            email=user.email,
            account_status="Active" if user.is_active else "Inactive",
            failed_attempts_last_24_hours=self.attempts.count_failures_since(
                user.id, 24 * 60, scope=SCOPE_ACCOUNT
            ),
            failed_attempts_last_hour=self.attempts.count_failures_since(
                user.id, 60, scope=SCOPE_ACCOUNT
            ),
            member_since=user.created_at,
        )
