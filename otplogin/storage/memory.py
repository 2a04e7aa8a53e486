from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from otplogin.logging import get_logger
from otplogin.storage.errors import ConstraintViolation, StorageError
from otplogin.storage.models import (
    LoginAttempt,
    LogoutAuditLog,
    RevocationEntry,
    SubjectRevocation,
    User,
    as_utc,
    utcnow,
)

_DATETIME_FIELDS = {
    "created_at",
    "updated_at",
    "logout_time",
    "expires_at",
    "recorded_at",
    "revoked_before",
}


class MemoryStore:
    """In-process durable store, snapshotted to JSON after every write.

    Suitable for development and tests; production deployments use
    :class:`otplogin.storage.postgres.PostgresStore`.
    """

    def __init__(self, fs_root: str = "/tmp/otplogin", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.logout_audit: List[LogoutAuditLog] = []
        self.revocations: Dict[str, RevocationEntry] = {}
        self.subject_revocations: Dict[tuple[str, str], SubjectRevocation] = {}
        # RLock so helpers can re-enter while a write holds the lock
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # -- users -------------------------------------------------------------

    def create_user(
        self, email: str, name: str, *, role: str = "user", is_active: bool = True
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(email, name, role=role)
            user.is_active = is_active
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def _update_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, updated_at=utcnow(), **changes)
            self.users[user_id] = updated
            self._persist_state()
            return updated

    def update_user_name(self, user_id: str, name: str) -> Optional[User]:
        return self._update_user(user_id, name=name)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, is_active=is_active)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(user_id, role=role)

    # -- login history -----------------------------------------------------

    def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._data_lock:
            self.login_attempts.append(attempt)
            self._persist_state()

    def count_failed_logins(
        self,
        *,
        since: datetime,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for attempt in self.login_attempts
                if not attempt.successful
                and as_utc(attempt.created_at) > since
                and (user_id is None or attempt.user_id == user_id)
                and (ip_address is None or attempt.ip_address == ip_address)
            )

    # -- logout audit ------------------------------------------------------

    def record_logout(self, entry: LogoutAuditLog) -> None:
        with self._data_lock:
            self.logout_audit.append(entry)
            self._persist_state()

    def list_logouts(self, user_email: str, limit: int = 50) -> List[LogoutAuditLog]:
        with self._data_lock:
            rows = [e for e in self.logout_audit if e.user_email == user_email]
            return sorted(rows, key=lambda e: e.logout_time, reverse=True)[:limit]

    # -- revocations -------------------------------------------------------

    def add_revocation(self, entry: RevocationEntry) -> bool:
        with self._data_lock:
            if entry.jti in self.revocations:
                return False
            self.revocations[entry.jti] = entry
            self._persist_state()
            return True

    def get_revocation(self, jti: str) -> Optional[RevocationEntry]:
        with self._data_lock:
            return self.revocations.get(jti)

    def delete_revocation(self, jti: str) -> bool:
        with self._data_lock:
            removed = self.revocations.pop(jti, None) is not None
            if removed:
                self._persist_state()
            return removed

    def update_revocations_for_subject(
        self,
        user_email: str,
        *,
        reason: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
        now: datetime,
    ) -> int:
        with self._data_lock:
            updated = 0
            for jti, entry in self.revocations.items():
                if entry.user_email != user_email or entry.is_expired(now):
                    continue
                self.revocations[jti] = replace(
                    entry,
                    reason=reason,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    recorded_at=now,
                )
                updated += 1
            if updated:
                self._persist_state()
            return updated

    def delete_revocations_for_subject_and_type(
        self, user_email: str, token_type: str
    ) -> int:
        with self._data_lock:
            doomed = [
                jti
                for jti, entry in self.revocations.items()
                if entry.user_email == user_email and entry.token_type == token_type
            ]
            for jti in doomed:
                del self.revocations[jti]
            if doomed:
                self._persist_state()
            return len(doomed)

    def delete_expired_revocations(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [jti for jti, e in self.revocations.items() if e.is_expired(now)]
            for jti in doomed:
                del self.revocations[jti]
            if doomed:
                self._persist_state()
            return len(doomed)

    def upsert_subject_revocation(self, cutoff: SubjectRevocation) -> None:
        with self._data_lock:
            key = (cutoff.user_email, cutoff.token_type)
            existing = self.subject_revocations.get(key)
            if existing is not None:
                cutoff = replace(
                    cutoff,
                    revoked_before=max(
                        as_utc(existing.revoked_before), as_utc(cutoff.revoked_before)
                    ),
                    expires_at=max(as_utc(existing.expires_at), as_utc(cutoff.expires_at)),
                )
            self.subject_revocations[key] = cutoff
            self._persist_state()

    def list_subject_revocations(self, user_email: str) -> List[SubjectRevocation]:
        with self._data_lock:
            return [
                c for (email, _), c in self.subject_revocations.items() if email == user_email
            ]

    def delete_expired_subject_revocations(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [
                key
                for key, cutoff in self.subject_revocations.items()
                if as_utc(cutoff.expires_at) < now
            ]
            for key in doomed:
                del self.subject_revocations[key]
            if doomed:
                self._persist_state()
            return len(doomed)

    # -- health ------------------------------------------------------------

    def verify_connection(self) -> None:
        if self.persist and not os.access(self.fs_root, os.W_OK):
            raise StorageError("memory store directory is not writable")

    def close(self) -> None:
        return None

    # -- snapshot ----------------------------------------------------------

    @staticmethod
    def _serialize(record) -> dict:
        data = asdict(record)
        for key in _DATETIME_FIELDS & data.keys():
            data[key] = data[key].isoformat()
        return data

    @staticmethod
    def _deserialize(model, data: dict):
        values = dict(data)
        for key in _DATETIME_FIELDS & values.keys():
            values[key] = as_utc(datetime.fromisoformat(values[key]))
        return model(**values)

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "login_attempts": [self._serialize(a) for a in self.login_attempts],
            "logout_audit": [self._serialize(e) for e in self.logout_audit],
            "revocations": [self._serialize(r) for r in self.revocations.values()],
            "subject_revocations": [
                self._serialize(c) for c in self.subject_revocations.values()
            ],
        }
        path = self._state_path()
        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StorageError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            self.logger.error("memory_store_load_failed", path=str(path), error=str(exc))
            return False
        self.users = {
            u["id"]: self._deserialize(User, u) for u in data.get("users", [])
        }
        self.login_attempts = [
            self._deserialize(LoginAttempt, a) for a in data.get("login_attempts", [])
        ]
        self.logout_audit = [
            self._deserialize(LogoutAuditLog, e) for e in data.get("logout_audit", [])
        ]
        self.revocations = {
            r["jti"]: self._deserialize(RevocationEntry, r)
            for r in data.get("revocations", [])
        }
        self.subject_revocations = {}
        for raw in data.get("subject_revocations", []):
            cutoff = self._deserialize(SubjectRevocation, raw)
            self.subject_revocations[(cutoff.user_email, cutoff.token_type)] = cutoff
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True
