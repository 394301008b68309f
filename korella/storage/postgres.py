from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from korella.logging import get_logger
from korella.storage.common import (
    apply_failed_login,
    check_user_changes,
    normalize_email,
)
from korella.storage.errors import ConstraintViolation, RecordNotFound, StoreUnavailable
from korella.storage.models import (
    AccountStatus,
    AuthEventType,
    AuthLog,
    OAuthLink,
    OAuthProvider,
    SingleUseToken,
    SubscriptionTier,
    TokenPurpose,
    User,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        full_name TEXT,
        password_hash TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        verified_at TIMESTAMPTZ,
        account_status TEXT NOT NULL DEFAULT 'pending',
        subscription_tier TEXT NOT NULL DEFAULT 'trial',
        trial_expires_at TIMESTAMPTZ,
        failed_login_count INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        last_login_ip TEXT,
        is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
        deleted_at TIMESTAMPTZ,
        tokens_valid_after TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_link (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_user_id TEXT NOT NULL,
        provider_email TEXT,
        tokens JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, provider_user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS single_use_token (
        id UUID PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        purpose TEXT NOT NULL,
        email TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ,
        request_ip TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_log (
        id UUID PRIMARY KEY,
        user_id UUID,
        event_type TEXT NOT NULL,
        success BOOLEAN NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        failure_reason TEXT,
        target_email TEXT,
        event_details JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_single_use_token_user ON single_use_token (user_id, purpose)",
    "CREATE INDEX IF NOT EXISTS idx_auth_log_created ON auth_log (created_at)",
    "CREATE INDEX IF NOT EXISTS idx_auth_log_user ON auth_log (user_id, created_at)",
)


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _jsonb(value: Optional[dict]) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _row_to_user(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        full_name=row.get("full_name"),
        password_hash=row.get("password_hash"),
        email_verified=bool(row.get("email_verified")),
        verified_at=row.get("verified_at"),
        account_status=AccountStatus(row.get("account_status", "pending")),
        subscription_tier=SubscriptionTier(row.get("subscription_tier", "trial")),
        trial_expires_at=row.get("trial_expires_at"),
        failed_login_count=row.get("failed_login_count") or 0,
        locked_until=row.get("locked_until"),
        last_login_at=row.get("last_login_at"),
        last_login_ip=row.get("last_login_ip"),
        is_deleted=bool(row.get("is_deleted")),
        deleted_at=row.get("deleted_at"),
        tokens_valid_after=row.get("tokens_valid_after"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_link(row: dict) -> OAuthLink:
    return OAuthLink(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        provider=OAuthProvider(row["provider"]),
        provider_user_id=row["provider_user_id"],
        provider_email=row.get("provider_email"),
        tokens=row.get("tokens"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_token(row: dict) -> SingleUseToken:
    return SingleUseToken(
        id=str(row["id"]),
        token_hash=row["token_hash"],
        user_id=str(row["user_id"]),
        purpose=TokenPurpose(row["purpose"]),
        email=row.get("email"),
        expires_at=row["expires_at"],
        used=bool(row.get("used")),
        used_at=row.get("used_at"),
        request_ip=row.get("request_ip"),
        user_agent=row.get("user_agent"),
        created_at=row["created_at"],
    )


def _row_to_log(row: dict) -> AuthLog:
    return AuthLog(
        id=str(row["id"]),
        user_id=str(row["user_id"]) if row.get("user_id") else None,
        event_type=AuthEventType(row["event_type"]),
        success=bool(row["success"]),
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        failure_reason=row.get("failure_reason"),
        target_email=row.get("target_email"),
        event_details=row.get("event_details"),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed AuthStore.

    Counter and token updates are single statements or row-locked
    transactions, so concurrent requests on the same account serialize in the
    database rather than in this process.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, errors.OperationalError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(self, user: User) -> User:
        email = normalize_email(user.email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (
                        id, email, full_name, password_hash, email_verified, verified_at,
                        account_status, subscription_tier, trial_expires_at,
                        created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user.id,
                        email,
                        user.full_name,
                        user.password_hash,
                        user.email_verified,
                        user.verified_at,
                        _db_value(user.account_status),
                        _db_value(user.subscription_tier),
                        user.trial_expires_at,
                        user.created_at,
                        user.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return _row_to_user(row) if row else None

    def update_user(self, user_id: str, **changes: Any) -> User:
        check_user_changes(changes)
        if "email" in changes:
            changes["email"] = normalize_email(changes["email"])
        # Column names come from the allow-list checked above
        assignments = [f"{name} = %s" for name in changes]
        params = [_db_value(value) for value in changes.values()]
        assignments.append("updated_at = now()")
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                    (*params, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if not row:
            raise RecordNotFound("user not found", {"user_id": user_id})
        return _row_to_user(row)

    def increment_failed_login(
        self, user_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> Tuple[User, bool]:
        with self._connect() as conn:
            current = conn.execute(
                "SELECT failed_login_count, locked_until FROM app_user WHERE id = %s FOR UPDATE",
                (user_id,),
            ).fetchone()
            if not current:
                raise RecordNotFound("user not found", {"user_id": user_id})
            count, locked_until, newly_locked = apply_failed_login(
                current["failed_login_count"] or 0,
                current["locked_until"],
                threshold=threshold,
                lock_until=lock_until,
                now=now,
            )
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_count = %s, locked_until = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (count, locked_until, now, user_id),
            ).fetchone()
        return _row_to_user(row), newly_locked

    def reset_failed_logins(self, user_id: str) -> User:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET failed_login_count = 0, locked_until = NULL
                WHERE id = %s RETURNING *
                """,
                (user_id,),
            ).fetchone()
        if not row:
            raise RecordNotFound("user not found", {"user_id": user_id})
        return _row_to_user(row)

    def record_login_success(
        self, user_id: str, *, at: datetime, ip_address: Optional[str]
    ) -> User:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_count = 0, locked_until = NULL,
                    last_login_at = %s, last_login_ip = %s, updated_at = %s
                WHERE id = %s RETURNING *
                """,
                (at, ip_address, at, user_id),
            ).fetchone()
        if not row:
            raise RecordNotFound("user not found", {"user_id": user_id})
        return _row_to_user(row)

    # oauth links
    def create_oauth_link(self, link: OAuthLink) -> OAuthLink:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO oauth_link (
                        id, user_id, provider, provider_user_id, provider_email, tokens,
                        created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        link.id,
                        link.user_id,
                        _db_value(link.provider),
                        link.provider_user_id,
                        link.provider_email,
                        _jsonb(link.tokens),
                        link.created_at,
                        link.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "oauth identity already linked",
                {"field": "provider_user_id", "provider": _db_value(link.provider)},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for oauth link", {"user_id": link.user_id}
            )
        return _row_to_link(row)

    def get_oauth_link(
        self, provider: OAuthProvider, provider_user_id: str
    ) -> Optional[OAuthLink]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_link WHERE provider = %s AND provider_user_id = %s",
                (_db_value(provider), provider_user_id),
            ).fetchone()
        return _row_to_link(row) if row else None

    def list_oauth_links(self, user_id: str) -> List[OAuthLink]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM oauth_link WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [_row_to_link(row) for row in rows]

    def delete_oauth_link(self, user_id: str, provider: OAuthProvider) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM oauth_link WHERE user_id = %s AND provider = %s",
                (user_id, _db_value(provider)),
            )
            return cur.rowcount > 0

    # single-use tokens
    def save_token(self, token: SingleUseToken) -> SingleUseToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO single_use_token (
                        id, token_hash, user_id, purpose, email, expires_at, used,
                        used_at, request_ip, user_agent, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        token.id,
                        token.token_hash,
                        token.user_id,
                        _db_value(token.purpose),
                        token.email,
                        token.expires_at,
                        token.used,
                        token.used_at,
                        token.request_ip,
                        token.user_agent,
                        token.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token"})
        return _row_to_token(row)

    def supersede_tokens(
        self, user_id: str, purpose: TokenPurpose, *, now: datetime
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE single_use_token SET used = TRUE, used_at = %s
                WHERE user_id = %s AND purpose = %s AND used = FALSE
                """,
                (now, user_id, _db_value(purpose)),
            )
            return cur.rowcount

    def consume_token(
        self, token_hash: str, purpose: TokenPurpose, *, now: datetime
    ) -> Optional[SingleUseToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE single_use_token SET used = TRUE, used_at = %s
                WHERE token_hash = %s AND purpose = %s AND used = FALSE AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, _db_value(purpose), now),
            ).fetchone()
        return _row_to_token(row) if row else None

    def purge_tokens(self, *, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM single_use_token WHERE expires_at < %s OR used_at < %s",
                (before, before),
            )
            return cur.rowcount

    # audit log
    def append_auth_log(self, entry: AuthLog) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_log (
                    id, user_id, event_type, success, ip_address, user_agent,
                    failure_reason, target_email, event_details, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    _db_value(entry.event_type),
                    entry.success,
                    entry.ip_address,
                    entry.user_agent,
                    entry.failure_reason,
                    entry.target_email,
                    _jsonb(entry.event_details),
                    entry.created_at,
                ),
            )

    def list_auth_logs(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuthLog]:
        with self._connect() as conn:
            if user_id is None:
                rows = conn.execute(
                    "SELECT * FROM auth_log ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM auth_log WHERE user_id = %s ORDER BY created_at DESC LIMIT %s",
                    (user_id, limit),
                ).fetchall()
        return [_row_to_log(row) for row in rows]

    def purge_auth_logs(self, *, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_log WHERE created_at < %s", (before,))
            return cur.rowcount
