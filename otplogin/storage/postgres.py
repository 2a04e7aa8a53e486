from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from otplogin.logging import get_logger
from otplogin.storage.errors import ConstraintViolation
from otplogin.storage.models import (
    LoginAttempt,
    LogoutAuditLog,
    RevocationEntry,
    SubjectRevocation,
    User,
    as_utc,
    utcnow,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_history (
        id TEXT PRIMARY KEY,
        user_id TEXT REFERENCES app_user(id) ON DELETE SET NULL,
        email TEXT NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        successful BOOLEAN NOT NULL,
        failure_reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_history_user_idx ON login_history (user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS login_history_ip_idx ON login_history (ip_address, created_at)",
    """
    CREATE TABLE IF NOT EXISTS logout_audit_log (
        id TEXT PRIMARY KEY,
        user_email TEXT NOT NULL,
        logout_type TEXT NOT NULL,
        logout_reason TEXT,
        ip_address TEXT,
        user_agent TEXT,
        sessions_terminated INTEGER NOT NULL DEFAULT 0,
        success BOOLEAN NOT NULL DEFAULT TRUE,
        error_message TEXT,
        request_id TEXT,
        logout_time TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS revoked_token (
        jti TEXT PRIMARY KEY,
        user_email TEXT NOT NULL,
        token_type TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        reason TEXT,
        ip_address TEXT,
        user_agent TEXT,
        recorded_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS revoked_token_subject_idx ON revoked_token (user_email, token_type)",
    "CREATE INDEX IF NOT EXISTS revoked_token_expiry_idx ON revoked_token (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS subject_revocation (
        user_email TEXT NOT NULL,
        token_type TEXT NOT NULL,
        revoked_before TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        reason TEXT,
        ip_address TEXT,
        user_agent TEXT,
        PRIMARY KEY (user_email, token_type)
    )
    """,
    "ALTER TABLE subject_revocation ADD COLUMN IF NOT EXISTS ip_address TEXT",
    "ALTER TABLE subject_revocation ADD COLUMN IF NOT EXISTS user_agent TEXT",
]


class PostgresStore:
    """Postgres-backed durable store for users, audit trails and revocations."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=5)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- users -------------------------------------------------------------

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            role=row.get("role", "user"),
            is_active=row.get("is_active", True),
            created_at=as_utc(row.get("created_at") or utcnow()),
            updated_at=as_utc(row.get("updated_at") or utcnow()),
        )

    def create_user(
        self, email: str, name: str, *, role: str = "user", is_active: bool = True
    ) -> User:
        user = User.new(email, name, role=role)
        user.is_active = is_active
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, role, is_active, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.name,
                        user.role,
                        user.is_active,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def _update_user(self, user_id: str, column: str, value) -> Optional[User]:
        # column names come from the fixed set below, never from callers
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {column} = %s, updated_at = now() WHERE id = %s RETURNING *",
                (value, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_name(self, user_id: str, name: str) -> Optional[User]:
        return self._update_user(user_id, "name", name)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, "is_active", is_active)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(user_id, "role", role)

    # -- login history -----------------------------------------------------

    def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_history
                    (id, user_id, email, ip_address, user_agent, successful, failure_reason, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.user_id,
                    attempt.email,
                    attempt.ip_address,
                    attempt.user_agent,
                    attempt.successful,
                    attempt.failure_reason,
                    attempt.created_at,
                ),
            )

    def count_failed_logins(
        self,
        *,
        since: datetime,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int:
        clauses = ["successful = FALSE", "created_at > %s"]
        params: list = [since]
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if ip_address is not None:
            clauses.append("ip_address = %s")
            params.append(ip_address)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS failures FROM login_history WHERE {' AND '.join(clauses)}",
                tuple(params),
            ).fetchone()
        return int(row["failures"]) if row else 0

    # -- logout audit ------------------------------------------------------

    def record_logout(self, entry: LogoutAuditLog) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO logout_audit_log
                    (id, user_email, logout_type, logout_reason, ip_address, user_agent,
                     sessions_terminated, success, error_message, request_id, logout_time)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_email,
                    entry.logout_type,
                    entry.logout_reason,
                    entry.ip_address,
                    entry.user_agent,
                    entry.sessions_terminated,
                    entry.success,
                    entry.error_message,
                    entry.request_id,
                    entry.logout_time,
                ),
            )

    def list_logouts(self, user_email: str, limit: int = 50) -> List[LogoutAuditLog]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM logout_audit_log WHERE user_email = %s
                ORDER BY logout_time DESC LIMIT %s
                """,
                (user_email, limit),
            ).fetchall()
        return [LogoutAuditLog(**row) for row in rows]

    # -- revocations -------------------------------------------------------

    def add_revocation(self, entry: RevocationEntry) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO revoked_token
                    (jti, user_email, token_type, expires_at, reason, ip_address, user_agent, recorded_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (jti) DO NOTHING
                """,
                (
                    entry.jti,
                    entry.user_email,
                    entry.token_type,
                    entry.expires_at,
                    entry.reason,
                    entry.ip_address,
                    entry.user_agent,
                    entry.recorded_at,
                ),
            )
            return cur.rowcount == 1

    def get_revocation(self, jti: str) -> Optional[RevocationEntry]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM revoked_token WHERE jti = %s", (jti,)
            ).fetchone()
        return RevocationEntry(**row) if row else None

    def delete_revocation(self, jti: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM revoked_token WHERE jti = %s", (jti,))
            return cur.rowcount > 0

    def update_revocations_for_subject(
        self,
        user_email: str,
        *,
        reason: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
        now: datetime,
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE revoked_token
                SET reason = %s, ip_address = %s, user_agent = %s, recorded_at = %s
                WHERE user_email = %s AND expires_at >= %s
                """,
                (reason, ip_address, user_agent, now, user_email, now),
            )
            return cur.rowcount

    def delete_revocations_for_subject_and_type(
        self, user_email: str, token_type: str
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM revoked_token WHERE user_email = %s AND token_type = %s",
                (user_email, token_type),
            )
            return cur.rowcount

    def delete_expired_revocations(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM revoked_token WHERE expires_at < %s", (now,))
            return cur.rowcount

    def upsert_subject_revocation(self, cutoff: SubjectRevocation) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO subject_revocation (
                    user_email, token_type, revoked_before, expires_at, reason, ip_address, user_agent
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_email, token_type) DO UPDATE SET
                    revoked_before = GREATEST(subject_revocation.revoked_before, EXCLUDED.revoked_before),
                    expires_at = GREATEST(subject_revocation.expires_at, EXCLUDED.expires_at),
                    reason = EXCLUDED.reason,
                    ip_address = EXCLUDED.ip_address,
                    user_agent = EXCLUDED.user_agent
                """,
                (
                    cutoff.user_email,
                    cutoff.token_type,
                    cutoff.revoked_before,
                    cutoff.expires_at,
                    cutoff.reason,
                    cutoff.ip_address,
                    cutoff.user_agent,
                ),
            )

    def list_subject_revocations(self, user_email: str) -> List[SubjectRevocation]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM subject_revocation WHERE user_email = %s", (user_email,)
            ).fetchall()
        return [SubjectRevocation(**row) for row in rows]

    def delete_expired_subject_revocations(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM subject_revocation WHERE expires_at < %s", (now,)
            )
            return cur.rowcount
