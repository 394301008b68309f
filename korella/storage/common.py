"""Shared storage contract and helpers for the memory and postgres backends.

Both backends must give identical answers for the counter and token
operations below; the pure helpers here define those answers once.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any, List, Optional, Protocol, Tuple

from korella.storage.models import (
    AuthLog,
    OAuthLink,
    OAuthProvider,
    SingleUseToken,
    TokenPurpose,
    User,
)

# Columns callers may change through ``update_user``. Login attempts move the
# counter only through ``increment_failed_login`` and ``record_login_success``.
MUTABLE_USER_FIELDS = frozenset(
    {
        "email",
        "full_name",
        "password_hash",
        "email_verified",
        "verified_at",
        "account_status",
        "subscription_tier",
        "trial_expires_at",
        "is_deleted",
        "deleted_at",
        "tokens_valid_after",
        "locked_until",
        "failed_login_count",
    }
)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_token(raw_token: str) -> str:
    """Digest stored in place of an emailed single-use token."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def apply_failed_login(
    failed_login_count: int,
    locked_until: Optional[datetime],
    *,
    threshold: int,
    lock_until: datetime,
    now: datetime,
) -> Tuple[int, Optional[datetime], bool]:
    """Compute the counter and lock after one failed attempt.

    A lock that has already expired is treated as if it never happened, so the
    counter restarts from zero. An attempt made while still locked is counted
    but does not extend the lock.

    Returns:
        (new_count, new_locked_until, newly_locked)
    """
    if locked_until is not None and locked_until <= now:
        failed_login_count = 0
        locked_until = None
    failed_login_count += 1
    if locked_until is None and failed_login_count >= threshold:
        return failed_login_count, lock_until, True
    return failed_login_count, locked_until, False


def check_user_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - MUTABLE_USER_FIELDS
    if unknown:
        raise ValueError(f"unsupported user fields: {', '.join(sorted(unknown))}")


class AuthStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **changes: Any) -> User: ...

    def increment_failed_login(
        self, user_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> Tuple[User, bool]: ...

    def reset_failed_logins(self, user_id: str) -> User: ...

    def record_login_success(
        self, user_id: str, *, at: datetime, ip_address: Optional[str]
    ) -> User: ...

    def create_oauth_link(self, link: OAuthLink) -> OAuthLink: ...

    def get_oauth_link(
        self, provider: OAuthProvider, provider_user_id: str
    ) -> Optional[OAuthLink]: ...

    def list_oauth_links(self, user_id: str) -> List[OAuthLink]: ...

    def delete_oauth_link(self, user_id: str, provider: OAuthProvider) -> bool: ...

    def save_token(self, token: SingleUseToken) -> SingleUseToken: ...

    def supersede_tokens(
        self, user_id: str, purpose: TokenPurpose, *, now: datetime
    ) -> int: ...

    def consume_token(
        self, token_hash: str, purpose: TokenPurpose, *, now: datetime
    ) -> Optional[SingleUseToken]: ...

    def purge_tokens(self, *, before: datetime) -> int: ...

    def append_auth_log(self, entry: AuthLog) -> None: ...

    def list_auth_logs(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuthLog]: ...

    def purge_auth_logs(self, *, before: datetime) -> int: ...
