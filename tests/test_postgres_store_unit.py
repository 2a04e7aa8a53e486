from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from otplogin.storage.errors import ConstraintViolation
from otplogin.storage.models import RevocationEntry, SubjectRevocation
from otplogin.storage.postgres import PostgresStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.pool.statements.append((" ".join(sql.split()), params))
        if self.pool.error is not None:
            raise self.pool.error
        return self.pool.results.pop(0) if self.pool.results else FakeCursor()


class FakePool:
    """Records SQL instead of talking to a database."""

    def __init__(self):
        self.statements = []
        self.results = []
        self.error = None

    def connection(self):
        return FakeConnection(self)


@pytest.fixture
def pg():
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool()
    store.dsn = "postgresql://unit"
    from otplogin.logging import get_logger

    store.logger = get_logger("test")
    return store


def test_unique_violation_becomes_constraint_violation(pg):
    pg.pool.error = errors.UniqueViolation("duplicate key")
    with pytest.raises(ConstraintViolation):
        pg.create_user("dup@example.com", "Dup")


def test_user_row_mapping(pg):
    pg.pool.results.append(
        FakeCursor(
            rows=[
                {
                    "id": "u1",
                    "email": "a@example.com",
                    "name": "Alice",
                    "role": "admin",
                    "is_active": True,
                    "created_at": NOW,
                    "updated_at": NOW,
                }
            ]
        )
    )
    user = pg.get_user_by_email("a@example.com")
    assert user.is_admin
    assert pg.pool.statements[0][1] == ("a@example.com",)


def test_add_revocation_reports_conflict(pg):
    """ON CONFLICT DO NOTHING yields rowcount 0 for an existing jti."""
    entry = RevocationEntry(
        jti="j1", user_email="a@example.com", token_type="access", expires_at=NOW
    )
    pg.pool.results.extend([FakeCursor(rowcount=1), FakeCursor(rowcount=0)])
    assert pg.add_revocation(entry)
    assert not pg.add_revocation(entry)
    assert "ON CONFLICT (jti) DO NOTHING" in pg.pool.statements[0][0]


def test_count_failed_logins_builds_filters(pg):
    pg.pool.results.append(FakeCursor(rows=[{"failures": 3}]))
    since = NOW - timedelta(minutes=15)
    assert pg.count_failed_logins(since=since, ip_address="10.0.0.1") == 3
    sql, params = pg.pool.statements[0]
    assert "ip_address = %s" in sql
    assert "user_id" not in sql
    assert params == (since, "10.0.0.1")


def test_cutoff_upsert_uses_greatest(pg):
    pg.upsert_subject_revocation(
        SubjectRevocation(
            "a@example.com", "*", NOW, NOW + timedelta(days=7), "admin", "10.0.0.7", "Admin System"
        )
    )
    sql, params = pg.pool.statements[0]
    assert "GREATEST(subject_revocation.revoked_before, EXCLUDED.revoked_before)" in sql
    assert "user_agent = EXCLUDED.user_agent" in sql
    assert params[-2:] == ("10.0.0.7", "Admin System")


def test_sweep_deletes_by_expiry(pg):
    pg.pool.results.extend([FakeCursor(rowcount=4), FakeCursor(rowcount=1)])
    assert pg.delete_expired_revocations(NOW) == 4
    assert pg.delete_expired_subject_revocations(NOW) == 1
    assert [params for _, params in pg.pool.statements] == [(NOW,), (NOW,)]
