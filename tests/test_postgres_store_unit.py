from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from korella.logging import get_logger
from korella.storage.errors import ConstraintViolation, RecordNotFound, StoreUnavailable
from korella.storage.models import AccountStatus, SubscriptionTier, TokenPurpose, User
from korella.storage.postgres import PostgresStore, _row_to_user

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, row=None, rows=None, rowcount=0):
        self.row = row
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.row

    def fetchall(self):
        return self.rows


class FakeConnection:
    """Replays scripted cursors and records every statement."""

    def __init__(self, *results):
        self.results = list(results)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger("tests.postgres")
    return store


def _user_row(**overrides):
    row = {
        "id": "0b8e8a4c-6f0e-4b8c-9d62-3f0f8f3a1b11",
        "email": "agent@example.com",
        "full_name": "Agent",
        "password_hash": None,
        "email_verified": True,
        "verified_at": NOW,
        "account_status": "active",
        "subscription_tier": "pro",
        "trial_expires_at": None,
        "failed_login_count": 0,
        "locked_until": None,
        "last_login_at": None,
        "last_login_ip": None,
        "is_deleted": False,
        "deleted_at": None,
        "tokens_valid_after": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_row_to_user_parses_enums():
    user = _row_to_user(_user_row(failed_login_count=None))
    assert user.account_status == AccountStatus.ACTIVE
    assert user.subscription_tier == SubscriptionTier.PRO
    assert user.failed_login_count == 0


def test_update_user_rejects_unknown_columns_before_querying():
    store = _store(DummyPool())
    with pytest.raises(ValueError):
        store.update_user("user-1", **{"email_verified = true; --": 1})


def test_update_user_normalizes_email_and_converts_enums():
    conn = FakeConnection(FakeCursor(row=_user_row(email="new@example.com")))
    store = _store(FakePool(conn))
    store.update_user(
        "user-1", email=" New@Example.com", account_status=AccountStatus.SUSPENDED
    )
    sql, params = conn.statements[0]
    assert sql.startswith("UPDATE app_user SET email = %s, account_status = %s")
    assert params == ("new@example.com", "suspended", "user-1")


def test_update_missing_user():
    store = _store(FakePool(FakeConnection(FakeCursor(row=None))))
    with pytest.raises(RecordNotFound):
        store.update_user("missing", full_name="Nobody")


def test_duplicate_email_maps_to_constraint_violation():
    store = _store(FakePool(FakeConnection(errors.UniqueViolation("duplicate key"))))
    with pytest.raises(ConstraintViolation):
        store.create_user(User.new("agent@example.com"))


def test_increment_failed_login_locks_row_and_writes_new_count():
    lock_until = NOW + timedelta(minutes=30)
    conn = FakeConnection(
        FakeCursor(row={"failed_login_count": 4, "locked_until": None}),
        FakeCursor(row=_user_row(failed_login_count=5, locked_until=lock_until)),
    )
    store = _store(FakePool(conn))
    user, newly_locked = store.increment_failed_login(
        "user-1", threshold=5, lock_until=lock_until, now=NOW
    )
    assert newly_locked is True
    assert user.locked_until == lock_until
    assert conn.statements[0][0].endswith("FOR UPDATE")
    assert conn.statements[1][1] == (5, lock_until, NOW, "user-1")


def test_consume_token_is_a_single_conditional_update():
    conn = FakeConnection(FakeCursor(row=None))
    store = _store(FakePool(conn))
    assert store.consume_token("digest", TokenPurpose.PASSWORD_RESET, now=NOW) is None
    sql, params = conn.statements[0]
    assert "used = FALSE AND expires_at > %s" in sql
    assert params == (NOW, "digest", "password_reset", NOW)


def test_pool_timeout_is_reported_as_unavailable():
    class TimeoutPool:
        @contextmanager
        def connection(self):
            raise PoolTimeout("pool exhausted")
            yield

    store = _store(TimeoutPool())
    with pytest.raises(StoreUnavailable):
        store.get_user("user-1")
