from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from aegisid.storage.errors import StoreUnavailable
from aegisid.storage.models import LoginAttempt
from aegisid.storage.postgres import PostgresStore, _constraint_field

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
KEY = "test-mfa-encryption-key-not-for-production"


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Replays queued results and records every statement."""

    def __init__(self, results):
        self.results = results
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return self.results.pop(0) if self.results else FakeResult()

    @contextmanager
    def transaction(self):
        yield


class FakePool:
    def __init__(self, results=None):
        self.conn = FakeConnection(list(results or []))

    @contextmanager
    def connection(self):
        yield self.conn


class UnreachablePool:
    def connection(self):
        raise errors.OperationalError("connection refused")


def _bare_store(pool):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.logger = SimpleNamespace(error=lambda *a, **k: None)
    return store


def test_row_mappers_coerce_types():
    user = PostgresStore._user_from_row(
        {
            "id": 42,
            "username": "alice",
            "email": "alice@example.com",
            "role": "admin",
            "created_at": NOW,
            "email_mfa_enabled": None,
        }
    )
    assert user.id == "42"
    assert user.role == "admin"
    assert user.is_active is True
    assert user.email_mfa_enabled is False

    session = PostgresStore._session_from_row(
        {
            "id": "s1",
            "user_id": 42,
            "refresh_token_hash": "abc",
            "created_at": NOW,
            "expires_at": NOW + timedelta(days=7),
            "absolute_expires_at": NOW + timedelta(days=7),
            "last_activity_at": NOW,
            "ip_address": "198.51.100.7",
        }
    )
    assert session.user_id == "42"
    assert session.remember_me is False

    policy = PostgresStore._policy_from_row({"role": "user", "allowed_methods": None})
    assert policy.allowed_methods == []


def test_constraint_field_from_constraint_name():
    def violation(name):
        return SimpleNamespace(diag=SimpleNamespace(constraint_name=name))

    assert _constraint_field(violation("users_username_lower_key")) == "username"
    assert _constraint_field(violation("auth_session_refresh_token_hash_key")) == "refresh_token"
    assert _constraint_field(violation("users_email_key")) == "email"
    assert _constraint_field(SimpleNamespace()) == "email"


def test_unreachable_database_raises_store_unavailable():
    with pytest.raises(StoreUnavailable):
        PostgresStore("postgresql://nowhere/db", mfa_encryption_key=KEY, pool=UnreachablePool())


def test_missing_tables_are_reported():
    rows = [FakeResult([{"oid": "users"}])] + [FakeResult([{"oid": None}])] * 9
    with pytest.raises(RuntimeError) as exc:
        PostgresStore("postgresql://db/aegis", mfa_encryption_key=KEY, pool=FakePool(rows))
    assert "auth_session" in str(exc.value)
    assert "schema.sql" in str(exc.value)


def test_missing_encryption_key_is_fatal():
    with pytest.raises(RuntimeError):
        PostgresStore("postgresql://db/aegis", mfa_encryption_key=None, pool=DummyPool())


def test_ping_reports_operational_errors():
    assert _bare_store(UnreachablePool()).ping() is False
    assert _bare_store(FakePool()).ping() is True


def test_mfa_failure_locks_at_threshold():
    pool = FakePool([FakeResult([{"failed_attempts": 5}]), FakeResult()])
    store = _bare_store(pool)
    until = NOW + timedelta(minutes=15)

    attempts, locked_until = store.record_mfa_failure("u1", max_attempts=5, lockout_until=until)

    assert (attempts, locked_until) == (5, until)
    assert "locked_until" in pool.conn.statements[1][0]
    assert pool.conn.statements[1][1] == (until, "u1")


def test_mfa_failure_below_threshold_does_not_lock():
    pool = FakePool([FakeResult([{"failed_attempts": 2}])])
    store = _bare_store(pool)
    assert store.record_mfa_failure("u1", max_attempts=5, lockout_until=NOW) == (2, None)
    assert len(pool.conn.statements) == 1


def test_totp_step_consumption_is_conditional():
    pool = FakePool([FakeResult([])])
    store = _bare_store(pool)
    assert store.consume_totp_step("u1", 100, now=NOW) is False
    sql, params = pool.conn.statements[0]
    assert "last_used_step < %s" in sql
    assert params == (100, NOW, "u1", 100)


def test_expired_session_cleanup_buckets_in_order():
    pool = FakePool(
        [FakeResult(rowcount=1), FakeResult(rowcount=2), FakeResult(rowcount=0)]
    )
    store = _bare_store(pool)
    counts = store.delete_expired_sessions(now=NOW, inactive_before=NOW - timedelta(minutes=30))
    assert counts == {"absolute": 1, "inactivity": 2, "refresh": 0}
    assert [s[0].split(" WHERE ")[1] for s in pool.conn.statements] == [
        "absolute_expires_at <= %s",
        "last_activity_at <= %s",
        "expires_at <= %s",
    ]


def test_login_attempt_email_is_normalized():
    pool = FakePool()
    store = _bare_store(pool)
    store.record_login_attempt(
        LoginAttempt(id="a1", email=" Alice@Example.COM ", success=False, created_at=NOW)
    )
    assert pool.conn.statements[0][1][2] == "alice@example.com"
